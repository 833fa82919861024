"""Tests for the matrixci command line"""
import json

import pytest
from typer.testing import CliRunner

import matrixci.config as config_module
from matrixci.cli import app, main
from matrixci.data import SqliteData, list_runs

runner = CliRunner()

PASSING = """
on: [push]
jobs:
  check:
    matrix:
      toolchain: [stable, beta]
    steps:
      - name: build
        run: echo building ${{ matrix.toolchain }}
"""

FAILING = """
on: [push]
jobs:
  check:
    matrix:
      toolchain: [stable, beta]
    steps:
      - name: test
        run: test "${{ matrix.toolchain }}" != beta
"""


@pytest.fixture(autouse=True)
def isolated(temp_dir, monkeypatch):
    """Run every command from temp_dir with a private global config"""
    monkeypatch.setattr(config_module, "GLOBAL_CONFIG_PATH", temp_dir / "global.yaml")
    monkeypatch.chdir(temp_dir)
    monkeypatch.delenv("MATRIXCI_LOG_LEVEL", raising=False)
    return temp_dir


def write(path, text):
    path.write_text(text)
    return str(path)


class TestValidateAndExpand:
    """Test validate and expand commands"""

    def test_validate_ok(self, temp_dir):
        result = runner.invoke(app, ["validate", write(temp_dir / "p.yaml", PASSING)])
        assert result.exit_code == 0
        assert "Valid: 1 job(s), 2 instance(s)." in result.output

    def test_validate_invalid(self, temp_dir):
        bad = "jobs:\n  j:\n    steps:\n      - run: echo ${{ matrix.os }}\n"
        result = runner.invoke(app, ["validate", write(temp_dir / "p.yaml", bad)])
        assert result.exit_code == 2
        assert "Invalid:" in result.output

    def test_expand_json(self, temp_dir):
        result = runner.invoke(app, ["expand", write(temp_dir / "p.yaml", PASSING), "--json"])
        assert result.exit_code == 0
        instances = json.loads(result.output)
        assert [i["bindings"] for i in instances] == [{"toolchain": "stable"}, {"toolchain": "beta"}]


class TestRun:
    """Test the run command"""

    def test_success_exit_code(self, temp_dir):
        result = runner.invoke(app, ["run", write(temp_dir / "p.yaml", PASSING), "--no-history"])
        assert result.exit_code == 0
        assert "Overall: success" in result.output

    def test_failure_exit_code_and_json(self, temp_dir):
        result = runner.invoke(app, ["run", write(temp_dir / "p.yaml", FAILING), "--no-history", "--json"])
        assert result.exit_code == 1
        report = json.loads(result.output)
        assert report["overall"] == "failure"
        assert [j["verdict"] for j in report["jobs"]] == ["success", "failed_at(test)"]

    def test_configuration_error_exit_code(self, temp_dir):
        result = runner.invoke(app, ["run", str(temp_dir / "missing.yaml"), "--no-history"])
        assert result.exit_code == 2

    def test_bad_env_option(self, temp_dir):
        result = runner.invoke(app, ["run", write(temp_dir / "p.yaml", PASSING), "--no-history", "-e", "NOEQUALS"])
        assert result.exit_code == 2

    def test_malformed_config_exit_code(self, temp_dir):
        (temp_dir / "global.yaml").write_text("- not\n- a mapping\n")
        result = runner.invoke(app, ["run", write(temp_dir / "p.yaml", PASSING), "--no-history"])
        assert result.exit_code == 2
        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert "Error:" in result.output

    def test_skipped_event(self, temp_dir):
        result = runner.invoke(
            app, ["run", write(temp_dir / "p.yaml", PASSING), "--event", "pull_request", "--no-history", "--json"]
        )
        assert result.exit_code == 0
        assert json.loads(result.output)["status"] == "skipped"

    def test_run_records_history(self, matrixci_project):
        (matrixci_project / ".matrixci" / "pipeline.yaml").write_text(FAILING)

        result = runner.invoke(app, ["run"])
        assert result.exit_code == 1
        assert (matrixci_project / ".matrixci" / "history.db").exists()

        data = SqliteData(db_path=str(matrixci_project / ".matrixci" / "history.db"))
        try:
            runs = list_runs(data)
        finally:
            data.close()
        assert [r["status"] for r in runs] == ["failure"]

        result = runner.invoke(app, ["history"])
        assert result.exit_code == 0
        assert "Run history" in result.output

    def test_history_without_database(self):
        result = runner.invoke(app, ["history"])
        assert result.exit_code == 2


class TestInitAndConfig:
    """Test init and config commands"""

    def test_init_creates_starter_pipeline(self, temp_dir):
        result = runner.invoke(app, ["init", str(temp_dir)])
        assert result.exit_code == 0
        decl = temp_dir / ".matrixci" / "pipeline.yaml"
        assert decl.exists()
        assert (temp_dir / ".matrixci" / "config").exists()

        result = runner.invoke(app, ["validate", str(decl)])
        assert result.exit_code == 0
        assert "3 instance(s)" in result.output

    def test_init_keeps_existing_without_force(self, temp_dir):
        decl = temp_dir / ".matrixci" / "pipeline.yaml"
        decl.parent.mkdir()
        decl.write_text(PASSING)

        runner.invoke(app, ["init", str(temp_dir)])
        assert decl.read_text() == PASSING

        runner.invoke(app, ["init", str(temp_dir), "--force"])
        assert decl.read_text() != PASSING

    def test_config_set_and_get(self, temp_dir):
        result = runner.invoke(app, ["config", "max_workers", "3"])
        assert result.exit_code == 0

        result = runner.invoke(app, ["config", "max_workers"])
        assert "max_workers = 3" in result.output

    def test_config_unknown_key(self):
        result = runner.invoke(app, ["config", "colour", "blue"])
        assert result.exit_code == 2


class TestMain:
    """Test the programmatic entry point"""

    def test_main_returns_exit_code(self, temp_dir):
        assert main(["validate", write(temp_dir / "p.yaml", PASSING)]) == 0
        assert main(["run", str(temp_dir / "missing.yaml"), "--no-history"]) == 2
