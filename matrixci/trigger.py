from __future__ import annotations

import logging
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

PUSH = "push"
PULL_REQUEST = "pull_request"
DEFAULT_KINDS = (PUSH, PULL_REQUEST)


@dataclass(frozen=True)
class PipelineEvent:
    """A repository event delivered by the version-control hook.

    ref is the branch name, when the caller knows it.
    """

    kind: str
    ref: Optional[str] = None


@dataclass
class TriggerEvaluator:
    """Decides whether an event schedules a pipeline run.

    Attributes:
        kinds: Event kinds that trigger a run
        branches: Optional glob patterns per kind; a kind without patterns
            triggers for every ref
    """

    kinds: List[str] = field(default_factory=lambda: list(DEFAULT_KINDS))
    branches: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_kinds(cls, kinds: Iterable[str]) -> "TriggerEvaluator":
        return cls(kinds=list(kinds))

    def should_run(self, event: PipelineEvent) -> bool:
        if event.kind not in self.kinds:
            logger.info(f"Event '{event.kind}' is not a declared trigger {self.kinds}")
            return False
        patterns = self.branches.get(event.kind)
        if not patterns or event.ref is None:
            return True
        ref = event.ref
        if ref.startswith("refs/heads/"):
            ref = ref[len("refs/heads/"):]
        if any(fnmatch(ref, p) for p in patterns):
            return True
        logger.info(f"Ref '{event.ref}' matches no branch filter for '{event.kind}'")
        return False
