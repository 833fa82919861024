from __future__ import annotations

import json
import logging
import os
import signal
import threading
from pathlib import Path
from typing import List, Optional

import click
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import KNOWN_KEYS, Config
from .data import SqliteData, get_run_jobs, list_runs
from .declaration import load_declaration
from .errors import ConfigurationError
from .hook import PrintHook
from .paths import (
    CONFIG_FILENAME,
    DEFAULT_DECLARATION,
    MATRIXCI_DIRNAME,
    find_repo_root,
    get_repo_db_path,
    resolve_declaration,
)
from .runner import Executor
from .step import CancellationToken
from .trigger import PipelineEvent

app = typer.Typer(name="matrixci", help="matrixci: run matrix CI pipelines locally.", no_args_is_help=True)
console = Console()

STARTER_DECLARATION = """on: [push, pull_request]

env:
  CARGO_TERM_COLOR: always

jobs:
  build_and_test:
    name: Rust project - latest
    matrix:
      toolchain: [stable, beta, nightly]
    steps:
      - name: toolchain
        run: rustup update ${{ matrix.toolchain }} && rustup default ${{ matrix.toolchain }} && rustup component add rustfmt clippy
      - name: build
        run: cargo build --all --verbose
        env:
          RUSTFLAGS: "-Dwarnings"
      - name: test
        run: cargo test --all --verbose
        env:
          RUSTFLAGS: "-Dwarnings"
      - name: fmt-check
        run: cargo fmt --all --check --verbose
        env:
          RUSTFLAGS: "-Dwarnings"
      - name: lint
        run: cargo clippy --all --verbose
        env:
          RUSTFLAGS: "-Dwarnings"
"""


def _configure_logging(verbose: bool, config: Optional[Config] = None) -> None:
    default = "INFO" if verbose else (config.log_level if config else "WARNING")
    log_level = os.getenv("MATRIXCI_LOG_LEVEL", default)
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(name)s: %(message)s",
    )


def _parse_env_options(pairs: Optional[List[str]]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ConfigurationError(f"Invalid --env value '{pair}', expected KEY=VALUE")
        key, value = pair.split("=", 1)
        env[key] = value
    return env


def _open_history(db: Optional[Path], config: Config, start: Path) -> Optional[SqliteData]:
    db_path = db or (Path(config.db_path) if config.db_path else get_repo_db_path(start))
    if db_path is None:
        return None
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return SqliteData(db_path=str(db_path))


def cmd_run(
    declaration: Optional[str],
    event: str,
    ref: Optional[str],
    workers: Optional[int],
    step_timeout: Optional[float],
    job_timeout: Optional[float],
    fail_fast: Optional[bool],
    show: bool,
    env: Optional[List[str]],
    workspace: Optional[Path],
    as_json: bool,
    db: Optional[Path],
    no_history: bool,
    hooks: bool,
) -> int:
    cwd = Path.cwd()
    try:
        config = Config.load_with_repo_context(cwd)
    except RuntimeError as e:
        typer.echo(f"Error: {e}", err=True)
        return 2
    data: Optional[SqliteData] = None
    try:
        path = resolve_declaration(declaration, cwd)
        data = None if no_history else _open_history(db, config, cwd)
        pipeline = load_declaration(path, data=data, hook=PrintHook() if hooks else None)

        executor = Executor(
            max_workers=workers or config.max_workers,
            step_timeout=step_timeout if step_timeout is not None else config.step_timeout,
            job_timeout=job_timeout if job_timeout is not None else config.job_timeout,
            fail_fast=config.fail_fast if fail_fast is None else fail_fast,
            base_env=_parse_env_options(env),
            workspace=workspace or find_repo_root(cwd) or cwd,
            show=show or config.show_output,
        )

        token = CancellationToken()
        previous = None
        if threading.current_thread() is threading.main_thread():
            previous = signal.signal(signal.SIGTERM, lambda signum, frame: token.cancel())
        try:
            report = pipeline.execute(PipelineEvent(kind=event, ref=ref), executor=executor, token=token)
        finally:
            if previous is not None:
                signal.signal(signal.SIGTERM, previous)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        return 2
    finally:
        if data is not None:
            data.close()

    if report is None:
        if as_json:
            typer.echo(json.dumps({"status": "skipped", "event": event}, indent=2))
        else:
            console.print(f"[yellow]Skipped:[/yellow] event '{escape(event)}' does not trigger this pipeline")
        return 0

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        report.render(console)
    return report.exit_code


def cmd_validate(declaration: Optional[str]) -> int:
    try:
        path = resolve_declaration(declaration)
        pipeline = load_declaration(path)
        instances = pipeline.expand()
    except ConfigurationError as e:
        typer.echo(f"Invalid: {e}")
        return 2
    typer.echo(f"Valid: {len(pipeline.templates)} job(s), {len(instances)} instance(s).")
    return 0


def cmd_expand(declaration: Optional[str], as_json: bool) -> int:
    try:
        pipeline = load_declaration(resolve_declaration(declaration))
        instances = pipeline.expand()
    except ConfigurationError as e:
        typer.echo(f"Invalid: {e}", err=True)
        return 2

    if as_json:
        typer.echo(json.dumps([i.to_dict() for i in instances], indent=2))
        return 0

    table = Table(title="Job instances")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Instance", style="cyan")
    table.add_column("Bindings")
    table.add_column("Steps")
    for inst in instances:
        table.add_row(
            str(inst.index),
            escape(inst.display_name),
            escape(", ".join(f"{k}={v}" for k, v in inst.bindings.items())),
            escape(", ".join(s.label for s in inst.steps)),
        )
    console.print(table)
    return 0


def cmd_history(db: Optional[Path], limit: int, run_id: Optional[str]) -> int:
    cwd = Path.cwd()
    config = Config.load_with_repo_context(cwd)
    db_path = db or (Path(config.db_path) if config.db_path else get_repo_db_path(cwd))
    if db_path is None or not db_path.exists():
        typer.echo(f"Error: history database not found: {db_path}", err=True)
        return 2

    data = SqliteData(db_path=str(db_path))
    try:
        if run_id:
            jobs = get_run_jobs(data, run_id)
            table = Table(title=f"Run {run_id}")
            table.add_column("#", justify="right", style="dim")
            table.add_column("Instance", style="cyan")
            table.add_column("Status")
            table.add_column("Failed at", justify="right")
            for job in jobs:
                table.add_row(
                    str(job["execution_order"]),
                    escape(job["instance_id"]),
                    job["status"],
                    "" if job["failed_at"] is None else str(job["failed_at"]),
                )
        else:
            runs = list_runs(data, limit=limit)
            table = Table(title="Run history")
            table.add_column("Run", style="cyan")
            table.add_column("Event")
            table.add_column("Started")
            table.add_column("Status")
            for run in runs:
                event = run["event_kind"] + (f" ({run['event_ref']})" if run["event_ref"] else "")
                table.add_row(run["run_id"], escape(event), str(run["start_timestamp"]), run["status"] or "")
        console.print(table)
    finally:
        data.close()
    return 0


def cmd_init(path: Optional[Path], force: bool) -> int:
    target = Path(path or ".").resolve()
    repo_dir = target / MATRIXCI_DIRNAME
    repo_dir.mkdir(parents=True, exist_ok=True)

    cfg = repo_dir / CONFIG_FILENAME
    if not cfg.exists():
        cfg.write_text("")

    decl = repo_dir / DEFAULT_DECLARATION
    if decl.exists() and not force:
        typer.echo(f"Keeping existing {decl}. Use --force to overwrite.")
    else:
        decl.write_text(STARTER_DECLARATION)

    typer.echo(f"Initialized matrixci project at {repo_dir}")
    return 0


def cmd_config_set(key: str, value: str) -> int:
    if key not in KNOWN_KEYS:
        typer.echo(f"Error: Unknown key '{key}'. Known keys: {', '.join(KNOWN_KEYS)}", err=True)
        return 2
    try:
        config = Config.load_with_repo_context()
        config.set(key, value)
        config.save()
    except RuntimeError as e:
        typer.echo(f"Error: {e}", err=True)
        return 2
    typer.echo(f"✓ Set {key} = {value}")
    return 0


def cmd_config_get(key: Optional[str]) -> int:
    try:
        config = Config.load_with_repo_context()
    except RuntimeError as e:
        typer.echo(f"Error: {e}", err=True)
        return 2
    if key:
        value = config.get(key)
        typer.echo(f"{key} = {'(not set)' if value is None else value}")
    else:
        typer.echo("Configuration:")
        for k, v in sorted(config.as_dict().items()):
            typer.echo(f"  {k}: {v}")
    return 0


# Typer command bindings


@app.command("run", help="Run a pipeline declaration for a repository event")
def run_command(
    declaration: Optional[str] = typer.Argument(None, help="Declaration file or name under .matrixci/ (default: pipeline.yaml)"),
    event: str = typer.Option("push", "--event", help="Event kind that triggered the run (push, pull_request, ...)"),
    ref: Optional[str] = typer.Option(None, "--ref", help="Branch the event refers to, for branch filters"),
    workers: Optional[int] = typer.Option(None, "--workers", "-j", min=1, help="Maximum instances running at once"),
    step_timeout: Optional[float] = typer.Option(None, "--step-timeout", help="Default per-step timeout in seconds"),
    job_timeout: Optional[float] = typer.Option(None, "--job-timeout", help="Per-instance timeout in seconds"),
    fail_fast: Optional[bool] = typer.Option(None, "--fail-fast/--no-fail-fast", help="Cancel other instances after the first failure"),
    show: bool = typer.Option(False, "--show", help="Echo step output while running"),
    env: Optional[List[str]] = typer.Option(None, "--env", "-e", help="Extra KEY=VALUE applied to every step"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", help="Directory step working directories resolve against"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    db: Optional[Path] = typer.Option(None, "--db", help="Run history database (default .matrixci/history.db)"),
    no_history: bool = typer.Option(False, "--no-history", help="Do not record the run"),
    hooks: bool = typer.Option(False, "--hooks", help="Print lifecycle events"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info logging"),
):
    try:
        config = Config.load_with_repo_context()
    except RuntimeError:
        # cmd_run reports the broken config
        config = None
    _configure_logging(verbose, config)
    code = cmd_run(
        declaration=declaration,
        event=event,
        ref=ref,
        workers=workers,
        step_timeout=step_timeout,
        job_timeout=job_timeout,
        fail_fast=fail_fast,
        show=show,
        env=env,
        workspace=workspace,
        as_json=as_json,
        db=db,
        no_history=no_history,
        hooks=hooks,
    )
    raise typer.Exit(code)


@app.command("validate", help="Validate a declaration without running it")
def validate_command(
    declaration: Optional[str] = typer.Argument(None, help="Declaration file or name under .matrixci/"),
):
    raise typer.Exit(cmd_validate(declaration))


@app.command("expand", help="List the job instances a declaration expands to")
def expand_command(
    declaration: Optional[str] = typer.Argument(None, help="Declaration file or name under .matrixci/"),
    as_json: bool = typer.Option(False, "--json", help="Print instances as JSON"),
):
    raise typer.Exit(cmd_expand(declaration, as_json))


@app.command("history", help="Show recorded runs")
def history_command(
    run_id: Optional[str] = typer.Argument(None, help="Show the jobs of one run"),
    db: Optional[Path] = typer.Option(None, "--db", help="Run history database"),
    limit: int = typer.Option(20, "--limit", help="Number of runs to list"),
):
    raise typer.Exit(cmd_history(db=db, limit=limit, run_id=run_id))


@app.command("init", help="Create a .matrixci project structure with a starter pipeline")
def init_command(
    path: Optional[Path] = typer.Argument(None, help="Directory to initialize"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing pipeline.yaml"),
):
    raise typer.Exit(cmd_init(path=path, force=force))


@app.command("config", help="Get or set configuration values")
def config_command(
    key: Optional[str] = typer.Argument(None, help="Configuration key"),
    value: Optional[str] = typer.Argument(None, help="Value to set (omit to get current value)"),
):
    if key and value is not None:
        code = cmd_config_set(key, value)
    else:
        code = cmd_config_get(key)
    raise typer.Exit(code)


def main(argv: list[str] | None = None) -> int:
    """Programmatic entry point returning the exit code."""
    try:
        result = app(args=argv, prog_name="matrixci", standalone_mode=False)
    except typer.Exit as e:
        return int(e.exit_code or 0)
    except click.ClickException as e:
        e.show()
        return e.exit_code
    return int(result or 0)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
