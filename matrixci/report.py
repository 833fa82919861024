"""
Result reporting.

Aggregates a RunResult into a single verdict plus a per-instance summary,
ordered by the instances' declaration order rather than by completion order.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .runner import RunResult
from .step import CANCELLED, FAILURE, SUCCESS

_STATUS_STYLE = {SUCCESS: "green", FAILURE: "red", CANCELLED: "yellow"}


@dataclass(frozen=True)
class JobSummary:
    instance_id: str
    name: str
    index: int
    bindings: Dict[str, str]
    status: str
    outcome: str
    failed_at: Optional[int] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    steps_run: int = 0
    steps_total: int = 0
    duration: float = 0.0

    @property
    def verdict(self) -> str:
        """Outcome with the failing step named, e.g. failed_at(test)."""
        if self.status == FAILURE and self.failed_step:
            return f"failed_at({self.failed_step})"
        return self.outcome

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance": self.instance_id,
            "name": self.name,
            "bindings": self.bindings,
            "status": self.status,
            "outcome": self.outcome,
            "verdict": self.verdict,
            "failed_at": self.failed_at,
            "failed_step": self.failed_step,
            "error": self.error,
            "steps_run": self.steps_run,
            "steps_total": self.steps_total,
            "duration": round(self.duration, 3),
        }


@dataclass(frozen=True)
class RunReport:
    overall: str
    jobs: List[JobSummary] = field(default_factory=list)
    cancelled: bool = False

    @property
    def exit_code(self) -> int:
        return 0 if self.overall == SUCCESS else 1

    def job(self, instance_id: str) -> Optional[JobSummary]:
        for j in self.jobs:
            if j.instance_id == instance_id:
                return j
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall,
            "cancelled": self.cancelled,
            "jobs": [j.to_dict() for j in self.jobs],
        }

    def render(self, console: Optional[Console] = None) -> None:
        console = console or Console()
        table = Table(title="Pipeline run")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Instance", style="cyan")
        table.add_column("Outcome")
        table.add_column("Steps", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Error", style="dim")
        for j in self.jobs:
            style = _STATUS_STYLE.get(j.status, "white")
            table.add_row(
                str(j.index),
                escape(j.name),
                f"[{style}]{escape(j.verdict)}[/{style}]",
                f"{j.steps_run}/{j.steps_total}",
                f"{j.duration:.1f}s",
                escape(j.error or ""),
            )
        console.print(table)
        style = _STATUS_STYLE.get(self.overall, "white")
        console.print(f"Overall: [{style}]{self.overall}[/{style}]")


def aggregate(run: RunResult) -> RunReport:
    """Collapse a RunResult into a RunReport.

    Overall is failure iff at least one job is not a success.
    """
    summaries: List[JobSummary] = []
    for result in sorted(run.job_results, key=lambda r: r.instance.index):
        failed = result.step_results[-1] if result.status == FAILURE and result.step_results else None
        summaries.append(
            JobSummary(
                instance_id=result.instance.id,
                name=result.instance.display_name,
                index=result.instance.index,
                bindings=dict(result.instance.bindings),
                status=result.status,
                outcome=result.outcome,
                failed_at=result.failed_at,
                failed_step=result.failed_step.label if result.failed_step else None,
                error=(failed.error or f"exit {failed.returncode}") if failed else None,
                steps_run=len(result.step_results),
                steps_total=len(result.instance.steps),
                duration=sum(r.duration for r in result.step_results),
            )
        )
    return RunReport(overall=run.outcome, jobs=summaries, cancelled=run.cancelled)
