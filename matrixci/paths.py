"""Path utilities for finding the matrixci repo root and its files."""
from __future__ import annotations

from pathlib import Path
from typing import Optional


MATRIXCI_DIRNAME = ".matrixci"
GIT_DIRNAME = ".git"
CONFIG_FILENAME = "config"
DB_FILENAME = "history.db"
DEFAULT_DECLARATION = "pipeline.yaml"


def find_repo_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """Find the repository root by walking up the directory tree.

    The root is the first directory holding both a .matrixci and a .git
    folder, so a stray .matrixci outside a repository is ignored.

    Args:
        start_path: Starting directory (defaults to current working directory)

    Returns:
        Path to repo root, or None if not found
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    for parent in [current] + list(current.parents):
        if (parent / MATRIXCI_DIRNAME).is_dir() and (parent / GIT_DIRNAME).is_dir():
            return parent
    return None


def get_repo_dir(start_path: Optional[Path] = None) -> Optional[Path]:
    root = find_repo_root(start_path)
    if root:
        return root / MATRIXCI_DIRNAME
    return None


def get_repo_config_path(start_path: Optional[Path] = None) -> Optional[Path]:
    """Path to .matrixci/config for the current repo, or None outside a repo."""
    repo_dir = get_repo_dir(start_path)
    if repo_dir:
        return repo_dir / CONFIG_FILENAME
    return None


def get_repo_db_path(start_path: Optional[Path] = None) -> Optional[Path]:
    """Path to .matrixci/history.db for the current repo, or None outside a repo."""
    repo_dir = get_repo_dir(start_path)
    if repo_dir:
        return repo_dir / DB_FILENAME
    return None


def resolve_declaration(arg: Optional[str], base: Optional[Path] = None) -> Path:
    """Resolve a declaration argument to a file path.

    Tries the argument as a path, then as a name under .matrixci/, and
    defaults to .matrixci/pipeline.yaml when no argument is given.
    """
    base = base or Path.cwd()
    if arg:
        p = Path(arg)
        if p.exists():
            return p.resolve()
    repo_dir = get_repo_dir(base) or base / MATRIXCI_DIRNAME
    name = arg or DEFAULT_DECLARATION
    for cand in (repo_dir / name, repo_dir / f"{name}.yaml", repo_dir / f"{name}.yml"):
        if cand.exists():
            return cand.resolve()
    return (base / name).resolve()
