"""
Declaration loading.

Reads a YAML pipeline declaration, validates its shape against the bundled
JSON schema and builds a Pipeline. Every problem found here is reported as a
ConfigurationError, before any job instance runs.

Example::

    on: [push, pull_request]
    env:
      CARGO_TERM_COLOR: always
    jobs:
      build_and_test:
        name: Rust project - latest
        matrix:
          toolchain: [stable, beta, nightly]
        steps:
          - run: rustup default ${{ matrix.toolchain }}
          - name: build
            run: cargo build --all --verbose
            working-directory: bft
            env:
              RUSTFLAGS: "-Dwarnings"
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
import yaml

from .data import Data
from .errors import ConfigurationError
from .hook import Hook
from .matrix import validate_template
from .pipeline import Pipeline
from .step import Step
from .template import JobTemplate, MatrixAxis
from .trigger import DEFAULT_KINDS, TriggerEvaluator

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schemas" / "pipeline.json"
RESERVED_MATRIX_KEYS = ("include", "exclude")


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _env(mapping: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {str(k): _scalar(v) for k, v in (mapping or {}).items()}


def _validate_schema(doc: Dict[str, Any]) -> None:
    with open(SCHEMA_PATH, "r") as f:
        schema = json.load(f)
    try:
        jsonschema.validate(doc, schema)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid declaration at {location}: {e.message}") from e


def _parse_trigger(on: Any) -> TriggerEvaluator:
    if on is None:
        return TriggerEvaluator(kinds=list(DEFAULT_KINDS))
    if isinstance(on, str):
        return TriggerEvaluator(kinds=[on])
    if isinstance(on, list):
        return TriggerEvaluator(kinds=[str(k) for k in on])
    branches: Dict[str, List[str]] = {}
    for kind, spec in on.items():
        if spec and spec.get("branches"):
            branches[kind] = [str(b) for b in spec["branches"]]
    return TriggerEvaluator(kinds=list(on.keys()), branches=branches)


def _parse_matrix(job_id: str, matrix: Optional[Dict[str, Any]]) -> Tuple[List[MatrixAxis], List[Dict[str, str]], List[Dict[str, str]]]:
    if matrix is None:
        return [], [], []
    if not matrix:
        raise ConfigurationError(f"Job '{job_id}' declares an empty matrix")

    axes: List[MatrixAxis] = []
    for name, spec in matrix.items():
        if name in RESERVED_MATRIX_KEYS:
            continue
        if isinstance(spec, dict):
            values = tuple(_scalar(v) for v in spec.get("values") or [])
            overlays = {_scalar(v): _env(env) for v, env in (spec.get("env") or {}).items()}
            unknown = set(overlays) - set(values)
            if unknown:
                raise ConfigurationError(
                    f"Matrix axis '{name}' of job '{job_id}' has env for undeclared values",
                    {"values": sorted(unknown)},
                )
            axes.append(MatrixAxis(name=name, values=values, env=overlays))
        else:
            axes.append(MatrixAxis(name=name, values=tuple(_scalar(v) for v in spec)))

    include = [_env(entry) for entry in matrix.get("include") or []]
    exclude = [_env(entry) for entry in matrix.get("exclude") or []]
    return axes, include, exclude


def _parse_step(spec: Dict[str, Any]) -> Step:
    run = spec["run"]
    timeout_minutes = spec.get("timeout-minutes")
    return Step(
        command=run if isinstance(run, str) else tuple(str(a) for a in run),
        name=spec.get("name", ""),
        working_directory=spec.get("working-directory"),
        env=_env(spec.get("env")),
        timeout=float(timeout_minutes) * 60 if timeout_minutes is not None else None,
    )


def _parse_job(job_id: str, spec: Dict[str, Any]) -> JobTemplate:
    axes, include, exclude = _parse_matrix(job_id, spec.get("matrix"))
    template = JobTemplate(
        id=job_id,
        name=spec.get("name", ""),
        steps=[_parse_step(s) for s in spec.get("steps") or []],
        axes=axes,
        env=_env(spec.get("env")),
        include=include,
        exclude=exclude,
    )
    validate_template(template)
    return template


def parse_declaration(doc: Any, data: Optional[Data] = None, hook: Optional[Hook] = None) -> Pipeline:
    """Build a Pipeline from an already-decoded declaration mapping."""
    if not isinstance(doc, dict):
        raise ConfigurationError("Declaration must be a mapping")
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in doc:
        doc = dict(doc)
        doc["on"] = doc.pop(True)

    _validate_schema(doc)

    templates = [_parse_job(job_id, spec) for job_id, spec in doc["jobs"].items()]
    pipeline = Pipeline(
        templates=templates,
        trigger=_parse_trigger(doc.get("on")),
        env=_env(doc.get("env")),
        data=data,
        hook=hook,
    )
    logger.debug(f"Parsed declaration with {len(templates)} job(s)")
    return pipeline


def load_declaration(path: Path | str, data: Optional[Data] = None, hook: Optional[Hook] = None) -> Pipeline:
    """Load and validate a YAML declaration file.

    Raises:
        ConfigurationError: file missing, YAML invalid, schema or semantic errors.
    """
    decl_path = Path(path).expanduser()
    if not decl_path.exists():
        raise ConfigurationError(f"Declaration file not found: {decl_path}")
    try:
        with open(decl_path) as f:
            doc = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {decl_path}: {e}") from e
    return parse_declaration(doc, data=data, hook=hook)
