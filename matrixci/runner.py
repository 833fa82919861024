from __future__ import annotations

import copy
import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import CancellationError, StepFailure
from .hook import Hook, safe_call
from .step import (
    CANCELLED,
    FAILURE,
    SUCCESS,
    CancellationToken,
    Step,
    StepContext,
    StepResult,
    spawn_step,
)
from .template import JobInstance

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """Outcome of one JobInstance.

    status is success, failure or cancelled. failed_at is the index of the
    first failing step and is set only when status is failure.
    """

    instance: JobInstance
    step_results: List[StepResult] = field(default_factory=list)
    status: str = SUCCESS
    failed_at: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    @property
    def outcome(self) -> str:
        if self.status == FAILURE:
            return f"failed_at({self.failed_at})"
        return self.status

    @property
    def failed_step(self) -> Optional[Step]:
        if self.failed_at is None:
            return None
        return self.instance.steps[self.failed_at]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance": self.instance.id,
            "bindings": dict(self.instance.bindings),
            "status": self.status,
            "outcome": self.outcome,
            "failed_at": self.failed_at,
            "steps": [r.to_dict() for r in self.step_results],
        }


@dataclass
class RunResult:
    job_results: List[JobResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def outcome(self) -> str:
        return SUCCESS if all(j.ok for j in self.job_results) else FAILURE

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS


class Executor:
    """Runs JobInstances: steps sequential within an instance, instances in parallel.

    Config:
    - max_workers: int – pool size (default: one worker per instance).
    - step_timeout: float – seconds per step, unless the step sets its own.
    - job_timeout: float – seconds for a whole instance.
    - fail_fast: bool (default False) – cancel sibling instances after the
      first failing instance.
    - base_env: dict – default overlay applied to every step before the
      instance and step overlays.
    - workspace: path – directory step working directories resolve against.
    - show: bool – echo step output while running.

    The ambient process environment is snapshotted once at construction and
    each step receives its own StepContext; os.environ and the process cwd are
    never modified.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        step_timeout: Optional[float] = None,
        job_timeout: Optional[float] = None,
        fail_fast: bool = False,
        base_env: Optional[Mapping[str, str]] = None,
        workspace: Optional[Path | str] = None,
        show: bool = False,
        hook: Optional[Hook] = None,
        ambient_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.max_workers = max_workers
        self.step_timeout = step_timeout
        self.job_timeout = job_timeout
        self.fail_fast = fail_fast
        self.base_env: Dict[str, str] = dict(base_env or {})
        self.workspace = Path(workspace or Path.cwd()).resolve()
        self.show = show
        self.hook = hook
        self.ambient_env: Dict[str, str] = dict(os.environ if ambient_env is None else ambient_env)

    def with_defaults(self, env: Mapping[str, str], hook: Optional[Hook] = None) -> "Executor":
        """Copy of this executor for one run.

        env goes under base_env, so overlays the caller configured still win.
        hook is used only when the executor has none. self is left unchanged.
        """
        bound = copy.copy(self)
        bound.base_env = {**env, **self.base_env}
        bound.hook = self.hook if self.hook is not None else hook
        return bound

    def context_for(self, instance: JobInstance, step: Step) -> StepContext:
        cwd = self.workspace / step.working_directory if step.working_directory else self.workspace
        return StepContext.build(self.ambient_env, self.base_env, instance.env, step.env, cwd=cwd)

    def _timeout_for(self, step: Step, deadline: Optional[float]) -> Optional[float]:
        timeout = step.timeout if step.timeout is not None else self.step_timeout
        if deadline is None:
            return timeout
        remaining = deadline - time.monotonic()
        return remaining if timeout is None else min(timeout, remaining)

    def _run_step(
        self,
        instance: JobInstance,
        step: Step,
        index: int,
        timeout: Optional[float],
        token: CancellationToken,
    ) -> StepResult:
        context = self.context_for(instance, step)
        try:
            out = spawn_step(step, context, timeout=timeout, token=token, show=self.show)
        except StepFailure as e:
            logger.warning(f"[{instance.id}] {e}")
            return StepResult(
                step=step,
                index=index,
                status=FAILURE,
                returncode=e.returncode,
                error=e.error,
                stdout=e.output.get("stdout", ""),
                stderr=e.output.get("stderr", ""),
                duration=e.output.get("duration", 0.0),
                timed_out=e.timed_out,
            )
        except CancellationError:
            logger.info(f"[{instance.id}] step '{step.label}' cancelled")
            return StepResult(step=step, index=index, status=CANCELLED, error="cancelled")
        return StepResult(
            step=step,
            index=index,
            status=SUCCESS,
            returncode=out["returncode"],
            stdout=out["stdout"],
            stderr=out["stderr"],
            duration=out["duration"],
        )

    def run(self, instance: JobInstance, token: Optional[CancellationToken] = None) -> JobResult:
        """Run one instance's steps in order, stopping at the first failure."""
        token = token or CancellationToken()
        result = JobResult(instance=instance)
        deadline = time.monotonic() + self.job_timeout if self.job_timeout else None

        safe_call(self.hook, "on_job_start", instance)
        logger.info(f"[{instance.id}] starting ({len(instance.steps)} steps)")
        for index, step in enumerate(instance.steps):
            if token.cancelled:
                result.status = CANCELLED
                break
            timeout = self._timeout_for(step, deadline)
            if timeout is not None and timeout <= 0:
                step_result = StepResult(
                    step=step,
                    index=index,
                    status=FAILURE,
                    error=f"job timeout of {self.job_timeout}s exhausted",
                    timed_out=True,
                )
            else:
                safe_call(self.hook, "on_step_start", instance, step, index)
                step_result = self._run_step(instance, step, index, timeout, token)
            result.step_results.append(step_result)
            safe_call(self.hook, "on_step_end", instance, step_result)

            if step_result.status == CANCELLED:
                result.status = CANCELLED
                break
            if not step_result.ok:
                result.status = FAILURE
                result.failed_at = index
                break

        logger.info(f"[{instance.id}] {result.outcome}")
        safe_call(self.hook, "on_job_end", instance, result)
        return result

    def _run_guarded(self, instance: JobInstance, token: CancellationToken) -> JobResult:
        if token.cancelled:
            logger.info(f"[{instance.id}] cancelled before start")
            return JobResult(instance=instance, status=CANCELLED)
        return self.run(instance, token)

    def _collect(
        self,
        futures: Dict[Future, int],
        results: Dict[int, JobResult],
        token: CancellationToken,
    ) -> None:
        for fut in as_completed(futures):
            pos = futures[fut]
            try:
                job_result = fut.result()
            except Exception:
                # Infrastructure fault inside a worker: stop the others, then surface it
                token.cancel()
                raise
            results[pos] = job_result
            if self.fail_fast and job_result.status == FAILURE and not token.cancelled:
                logger.warning(f"[{job_result.instance.id}] failed; cancelling remaining instances (fail_fast)")
                token.cancel()

    def run_all(self, instances: Iterable[JobInstance], token: Optional[CancellationToken] = None) -> RunResult:
        """Run every instance on a bounded worker pool.

        Results keep the order of `instances`, not completion order.
        """
        instances = list(instances)
        token = token or CancellationToken()
        if not instances:
            return RunResult()

        workers = max(1, self.max_workers or len(instances))
        results: Dict[int, JobResult] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="matrixci") as pool:
            futures = {pool.submit(self._run_guarded, inst, token): pos for pos, inst in enumerate(instances)}
            try:
                self._collect(futures, results, token)
            except KeyboardInterrupt:
                logger.warning("Interrupted; cancelling in-flight instances")
                token.cancel()
                remaining = {f: p for f, p in futures.items() if p not in results}
                self._collect(remaining, results, token)

        return RunResult(
            job_results=[results[pos] for pos in range(len(instances))],
            cancelled=token.cancelled,
        )
