"""Tests for Config hierarchy and paths module"""
import pytest

import matrixci.config as config_module
from matrixci.config import Config
from matrixci.paths import (
    find_repo_root,
    get_repo_config_path,
    get_repo_db_path,
    get_repo_dir,
    resolve_declaration,
)


@pytest.fixture
def global_config_path(temp_dir, monkeypatch):
    """Point the global config at a temp file"""
    path = temp_dir / "global.yaml"
    monkeypatch.setattr(config_module, "GLOBAL_CONFIG_PATH", path)
    return path


class TestRepoRootFinder:
    """Test find_repo_root() function"""

    def test_find_repo_root_in_repo_root(self, matrixci_project):
        """Test finding repo root when at the root"""
        assert find_repo_root(matrixci_project) == matrixci_project.resolve()

    def test_find_repo_root_from_subdirectory(self, matrixci_project):
        """Test finding repo root from a subdirectory"""
        subdir = matrixci_project / "src" / "foo" / "bar"
        subdir.mkdir(parents=True)

        assert find_repo_root(subdir) == matrixci_project.resolve()

    def test_find_repo_root_no_matrixci_folder(self, temp_dir):
        """Test when not in a matrixci repo"""
        assert find_repo_root(temp_dir) is None

    def test_find_repo_root_requires_git_folder(self, temp_dir):
        """Test that .matrixci requires .git at same level"""
        (temp_dir / ".matrixci").mkdir()
        assert find_repo_root(temp_dir) is None

    def test_repo_file_paths(self, matrixci_project):
        root = matrixci_project.resolve()
        assert get_repo_dir(matrixci_project) == root / ".matrixci"
        assert get_repo_config_path(matrixci_project) == root / ".matrixci" / "config"
        assert get_repo_db_path(matrixci_project) == root / ".matrixci" / "history.db"

    def test_repo_file_paths_outside_repo(self, temp_dir):
        assert get_repo_config_path(temp_dir) is None
        assert get_repo_db_path(temp_dir) is None


class TestResolveDeclaration:
    """Test resolve_declaration()"""

    def test_existing_path(self, temp_dir):
        path = temp_dir / "ci.yaml"
        path.write_text("jobs: {}")
        assert resolve_declaration(str(path), base=temp_dir) == path.resolve()

    def test_default_under_matrixci_dir(self, matrixci_project):
        decl = matrixci_project / ".matrixci" / "pipeline.yaml"
        decl.write_text("jobs: {}")
        assert resolve_declaration(None, base=matrixci_project) == decl.resolve()

    def test_name_without_extension(self, matrixci_project):
        decl = matrixci_project / ".matrixci" / "nightly.yml"
        decl.write_text("jobs: {}")
        assert resolve_declaration("nightly", base=matrixci_project) == decl.resolve()

    def test_unresolved_falls_back_to_base(self, temp_dir):
        assert resolve_declaration("missing.yaml", base=temp_dir) == (temp_dir / "missing.yaml").resolve()


class TestConfigHierarchy:
    """Test Config with hierarchical lookup"""

    def test_save_and_reload(self, temp_dir):
        """Test values survive a save/load cycle"""
        config = Config(config_path=temp_dir / "config.yaml", enable_hierarchy=False)
        config.set("max_workers", 4)
        config.set("fail_fast", True)
        config.save()

        loaded = Config(config_path=temp_dir / "config.yaml", enable_hierarchy=False)
        assert loaded.max_workers == 4
        assert loaded.fail_fast is True

    def test_local_overrides_global(self, temp_dir, global_config_path):
        """Test that local config values override global"""
        global_config = Config(config_path=global_config_path, enable_hierarchy=False)
        global_config.set("max_workers", 8)
        global_config.set("step_timeout", 600)
        global_config.save()

        local_path = temp_dir / "local.yaml"
        local_config = Config(config_path=local_path, enable_hierarchy=False)
        local_config.set("max_workers", 2)
        local_config.save()

        config = Config(config_path=local_path, enable_hierarchy=True)

        assert config.max_workers == 2
        assert config.step_timeout == 600.0
        assert config.as_dict() == {"max_workers": 2, "step_timeout": 600}

    def test_defaults(self, temp_dir):
        config = Config(config_path=temp_dir / "none.yaml", enable_hierarchy=False)
        assert config.max_workers is None
        assert config.step_timeout is None
        assert config.job_timeout is None
        assert config.fail_fast is False
        assert config.show_output is False
        assert config.log_level == "WARNING"

    @pytest.mark.parametrize("raw, expected", [("yes", True), ("true", True), ("0", False), ("off", False)])
    def test_string_booleans(self, temp_dir, raw, expected):
        config = Config(config_path=temp_dir / "c.yaml", enable_hierarchy=False)
        config.set("fail_fast", raw)
        assert config.fail_fast is expected

    def test_invalid_file_raises(self, temp_dir):
        path = temp_dir / "bad.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(RuntimeError, match="must contain a mapping"):
            Config(config_path=path, enable_hierarchy=False)


class TestConfigWithRepoContext:
    """Test Config.load_with_repo_context()"""

    def test_in_repo(self, matrixci_project, global_config_path):
        """Test loading config when in a repo"""
        local_path = matrixci_project / ".matrixci" / "config"
        local = Config(config_path=local_path, enable_hierarchy=False)
        local.set("job_timeout", 1800)
        local.save()

        config = Config.load_with_repo_context(start_path=matrixci_project)

        assert config.config_path == local_path.resolve()
        assert config.enable_hierarchy is True
        assert config.job_timeout == 1800.0

    def test_outside_repo(self, temp_dir, global_config_path):
        """Test loading config when not in a repo"""
        config = Config.load_with_repo_context(start_path=temp_dir)
        assert config.config_path == global_config_path
        assert config.enable_hierarchy is False
