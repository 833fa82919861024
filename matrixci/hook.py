from __future__ import annotations

import logging
import sys
from abc import ABC
from typing import Any, Optional

logger = logging.getLogger(__name__)


class Hook(ABC):
    """Base Hook with no-op defaults.

    Hooks observe run, job and step lifecycle. Callers invoke them through
    safe_call(), so an exception raised by a hook is logged and never
    breaks the run.
    """

    def on_run_start(self, instances: Any) -> None:  # noqa: D401
        return None

    def on_run_end(self, report: Any) -> None:  # noqa: D401
        return None

    def on_job_start(self, instance: Any) -> None:  # noqa: D401
        return None

    def on_job_end(self, instance: Any, result: Any) -> None:  # noqa: D401
        return None

    def on_step_start(self, instance: Any, step: Any, index: int) -> None:  # noqa: D401
        return None

    def on_step_end(self, instance: Any, result: Any) -> None:  # noqa: D401
        return None


class PrintHook(Hook):
    """Simple stdout hook for local visibility."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout

    def on_run_start(self, instances: Any) -> None:
        print(f"[hook] run_start: instances={len(instances)}", file=self.stream)

    def on_run_end(self, report: Any) -> None:
        print(f"[hook] run_end: overall={getattr(report, 'overall', '?')}", file=self.stream)

    def on_job_start(self, instance: Any) -> None:
        print(f"[hook] job_start: {getattr(instance, 'id', '?')}", file=self.stream)

    def on_job_end(self, instance: Any, result: Any) -> None:
        print(f"[hook] job_end: {getattr(instance, 'id', '?')} -> {getattr(result, 'outcome', '?')}", file=self.stream)

    def on_step_start(self, instance: Any, step: Any, index: int) -> None:
        print(f"[hook] step_start: {getattr(instance, 'id', '?')} #{index} {getattr(step, 'label', '?')}", file=self.stream)

    def on_step_end(self, instance: Any, result: Any) -> None:
        print(
            f"[hook] step_end: {getattr(instance, 'id', '?')} #{getattr(result, 'index', '?')} -> {getattr(result, 'status', '?')}",
            file=self.stream,
        )


def safe_call(hook: Optional[Hook], method: str, *args: Any) -> None:
    """Invoke a hook method, logging instead of raising on error."""
    if hook is None:
        return
    try:
        getattr(hook, method)(*args)
    except Exception as e:  # noqa: BLE001
        logger.error(f"Error in hook {type(hook).__name__}.{method}: {e}")
