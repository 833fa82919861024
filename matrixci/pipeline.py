from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional

from .data import Data, finish_run, start_run
from .hook import Hook, safe_call
from .matrix import expand_all
from .report import RunReport, aggregate
from .runner import Executor
from .step import CancellationToken
from .template import JobInstance, JobTemplate
from .trigger import PipelineEvent, TriggerEvaluator

logger = logging.getLogger(__name__)


class Pipeline:
    """A declared pipeline: triggers, job templates and a global env overlay.

    execute() wires the stages together: the trigger gates entry, templates
    are expanded (all of them, before any process starts), the executor runs
    the instances and the reporter aggregates the outcome.
    """

    def __init__(
        self,
        templates: List[JobTemplate],
        trigger: Optional[TriggerEvaluator] = None,
        env: Optional[Dict[str, str]] = None,
        data: Optional[Data] = None,
        hook: Optional[Hook] = None,
    ) -> None:
        self.templates = templates
        self.trigger = trigger or TriggerEvaluator()
        self.env = env or {}
        self.data = data
        self.hook = hook

    def expand(self) -> List[JobInstance]:
        """Expand every template; raises ConfigurationError on a bad declaration."""
        return expand_all(self.templates)

    def execute(
        self,
        event: PipelineEvent,
        executor: Optional[Executor] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[RunReport]:
        """Run the pipeline for an event.

        Returns None when the event does not trigger a run; nothing is expanded
        or executed in that case.
        """
        if not self.trigger.should_run(event):
            logger.info(f"Skipping run for event '{event.kind}'")
            return None

        instances = self.expand()

        executor = (executor or Executor()).with_defaults(self.env, self.hook)

        run_id = str(uuid.uuid4())
        self._record(start_run, run_id, event)
        safe_call(self.hook, "on_run_start", instances)
        logger.info(f"Run {run_id}: {len(instances)} instance(s) for event '{event.kind}'")

        result = executor.run_all(instances, token=token)
        report = aggregate(result)

        self._record(finish_run, run_id, result, report)
        safe_call(self.hook, "on_run_end", report)
        return report

    def _record(self, fn, *args) -> None:
        if self.data is None:
            return
        try:
            fn(self.data, *args)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to record run history: {e}")
