"""
matrixci: a single-machine executor for matrix CI pipelines.

This package provides core primitives:
- Step / StepContext: an opaque command and the explicit env/cwd it runs in.
- JobTemplate / MatrixAxis: an ordered step sequence parameterized by axes.
- expand: turns a template into one JobInstance per axis combination.
- TriggerEvaluator: decides whether a repository event schedules a run.
- Executor: runs instances on a bounded pool with per-instance fail-fast.
- aggregate / RunReport: the pass/fail verdict and per-instance summary.
- Pipeline / load_declaration: a YAML declaration wired end to end.
"""

from .errors import MatrixCIError, ConfigurationError, StepFailure, CancellationError
from .step import Step, StepContext, StepResult, CancellationToken, SUCCESS, FAILURE, CANCELLED
from .template import MatrixAxis, JobTemplate, JobInstance
from .matrix import expand, expand_all
from .trigger import PipelineEvent, TriggerEvaluator
from .runner import Executor, JobResult, RunResult
from .report import JobSummary, RunReport, aggregate
from .hook import Hook, PrintHook
from .data import Data, SqliteData
from .pipeline import Pipeline
from .declaration import load_declaration, parse_declaration
from .config import Config

__all__ = [
    # Errors
    "MatrixCIError",
    "ConfigurationError",
    "StepFailure",
    "CancellationError",
    # Steps
    "Step",
    "StepContext",
    "StepResult",
    "CancellationToken",
    "SUCCESS",
    "FAILURE",
    "CANCELLED",
    # Templates & expansion
    "MatrixAxis",
    "JobTemplate",
    "JobInstance",
    "expand",
    "expand_all",
    # Triggers
    "PipelineEvent",
    "TriggerEvaluator",
    # Execution & reporting
    "Executor",
    "JobResult",
    "RunResult",
    "JobSummary",
    "RunReport",
    "aggregate",
    # Hooks
    "Hook",
    "PrintHook",
    # History
    "Data",
    "SqliteData",
    # Pipeline
    "Pipeline",
    "load_declaration",
    "parse_declaration",
    "Config",
]
