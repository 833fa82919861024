from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .step import Step


@dataclass(frozen=True)
class MatrixAxis:
    """A named dimension of parameterization.

    env maps an axis value to the overlay applied when that value is bound.
    """

    name: str
    values: Tuple[str, ...]
    env: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def overlay_for(self, value: str) -> Mapping[str, str]:
        return self.env.get(value, {})


@dataclass
class JobTemplate:
    """An ordered step sequence parameterized by matrix axes.

    Attributes:
        id: Job key in the declaration
        name: Display name (may contain matrix placeholders)
        steps: Steps in execution order
        axes: Matrix axes in declaration order
        env: Base environment overlay for every instance
        include: Extra binding combinations to add
        exclude: Binding combinations to drop
    """

    id: str
    steps: List[Step]
    axes: List[MatrixAxis] = field(default_factory=list)
    name: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    include: List[Dict[str, str]] = field(default_factory=list)
    exclude: List[Dict[str, str]] = field(default_factory=list)

    @property
    def axis_names(self) -> List[str]:
        return [a.name for a in self.axes]

    def axis(self, name: str) -> Optional[MatrixAxis]:
        for a in self.axes:
            if a.name == name:
                return a
        return None


@dataclass(frozen=True)
class JobInstance:
    """One fully bound run of a template's steps for one matrix combination."""

    template_id: str
    index: int
    bindings: Mapping[str, str]
    steps: Tuple[Step, ...]
    env: Mapping[str, str]
    name: str = ""

    @property
    def id(self) -> str:
        if not self.bindings:
            return self.template_id
        bound = ", ".join(f"{k}={v}" for k, v in self.bindings.items())
        return f"{self.template_id} ({bound})"

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "index": self.index,
            "name": self.display_name,
            "bindings": dict(self.bindings),
            "env": dict(self.env),
            "steps": [s.label for s in self.steps],
        }
