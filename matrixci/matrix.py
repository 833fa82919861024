"""
Matrix expansion.

Turns a JobTemplate into concrete JobInstances, one per combination of axis
values. Pure data transformation: nothing here touches the filesystem, the
environment or processes.

Placeholders use the workflow syntax ``${{ matrix.<axis> }}`` and may appear in
step commands, step names, working directories and environment values.
"""
from __future__ import annotations

import itertools
import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .errors import ConfigurationError
from .step import Step
from .template import JobInstance, JobTemplate

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\$\{\{\s*matrix\.([A-Za-z_][A-Za-z0-9_\-]*)\s*\}\}")


def referenced_axes(text: Optional[str]) -> Set[str]:
    """Return the axis names referenced by placeholders in text."""
    if not text:
        return set()
    return set(PLACEHOLDER_RE.findall(text))


def substitute(text: str, bindings: Mapping[str, str]) -> str:
    def _replace(m: re.Match) -> str:
        axis = m.group(1)
        if axis not in bindings:
            raise ConfigurationError(f"Reference to undeclared matrix axis '{axis}'", {"text": text})
        return bindings[axis]

    return PLACEHOLDER_RE.sub(_replace, text)


def _step_texts(step: Step) -> Iterable[str]:
    if isinstance(step.command, str):
        yield step.command
    else:
        yield from step.command
    yield step.name
    if step.working_directory:
        yield step.working_directory
    yield from step.env.values()


def validate_template(template: JobTemplate) -> None:
    """Check a template for the inconsistencies that make expansion impossible.

    Raises:
        ConfigurationError: empty step list, axis without values, duplicate
            axis names, or a placeholder/include/exclude naming an unknown axis.
    """
    if not template.steps:
        raise ConfigurationError(f"Job '{template.id}' declares no steps")

    declared = template.axis_names
    if len(set(declared)) != len(declared):
        raise ConfigurationError(f"Job '{template.id}' declares duplicate matrix axes", {"axes": declared})
    for axis in template.axes:
        if not axis.values:
            raise ConfigurationError(f"Matrix axis '{axis.name}' of job '{template.id}' has no values")

    known = set(declared)
    for entry in template.include:
        known.update(entry.keys())
    for entry in template.exclude:
        unknown = set(entry) - set(declared)
        if unknown:
            raise ConfigurationError(
                f"Job '{template.id}' excludes on undeclared matrix axes",
                {"axes": sorted(unknown)},
            )

    texts = list(itertools.chain.from_iterable(_step_texts(s) for s in template.steps))
    texts.append(template.name)
    texts.extend(template.env.values())
    for text in texts:
        missing = referenced_axes(text) - known
        if missing:
            raise ConfigurationError(
                f"Job '{template.id}' references undeclared matrix axis '{sorted(missing)[0]}'",
                {"declared": declared},
            )


def _matches(bindings: Mapping[str, str], entry: Mapping[str, str]) -> bool:
    return all(bindings.get(k) == str(v) for k, v in entry.items())


def combinations(template: JobTemplate) -> List[Dict[str, str]]:
    """Axis bindings in declaration order, first axis varying slowest."""
    names = template.axis_names
    combos: List[Dict[str, str]] = []
    if template.axes:
        combos = [dict(zip(names, values)) for values in itertools.product(*(a.values for a in template.axes))]

    if template.exclude:
        combos = [c for c in combos if not any(_matches(c, e) for e in template.exclude)]

    for entry in template.include:
        entry = {k: str(v) for k, v in entry.items()}
        extended = False
        for combo in combos:
            # Extra keys extend an existing combination when its declared axes match
            declared_part = {k: v for k, v in entry.items() if k in names}
            if declared_part and len(declared_part) < len(entry) and _matches(combo, declared_part):
                for k, v in entry.items():
                    combo.setdefault(k, v)
                extended = True
        if not extended and not any(c == entry for c in combos):
            combos.append(dict(entry))

    if not combos:
        raise ConfigurationError(f"Job '{template.id}' matrix expands to no combinations")
    return combos


def _bind_step(step: Step, bindings: Mapping[str, str]) -> Step:
    if isinstance(step.command, str):
        command = substitute(step.command, bindings)
    else:
        command = tuple(substitute(arg, bindings) for arg in step.command)
    return Step(
        command=command,
        name=substitute(step.name, bindings),
        working_directory=substitute(step.working_directory, bindings) if step.working_directory else None,
        env={k: substitute(v, bindings) for k, v in step.env.items()},
        timeout=step.timeout,
    )


def _instance_name(template: JobTemplate, bindings: Mapping[str, str]) -> str:
    if not template.name:
        return ""
    if referenced_axes(template.name) or not bindings:
        return substitute(template.name, bindings)
    return f"{template.name} ({', '.join(bindings.values())})"


def expand(template: JobTemplate, start_index: int = 0) -> List[JobInstance]:
    """Expand a template into one JobInstance per matrix combination.

    Args:
        template: The job template to expand
        start_index: Declaration index of the first produced instance, so
            several templates can share one reporting order

    Returns:
        Instances in declaration order. A template without axes yields exactly
        one instance whose steps are the template's own.

    Raises:
        ConfigurationError: if the template fails validate_template().
    """
    validate_template(template)

    if not template.axes and not template.include:
        return [
            JobInstance(
                template_id=template.id,
                index=start_index,
                bindings={},
                steps=tuple(template.steps),
                env=dict(template.env),
                name=template.name,
            )
        ]

    instances: List[JobInstance] = []
    for offset, bindings in enumerate(combinations(template)):
        env: Dict[str, str] = {k: substitute(v, bindings) for k, v in template.env.items()}
        for axis in template.axes:
            if axis.name in bindings:
                env.update(axis.overlay_for(bindings[axis.name]))
        instances.append(
            JobInstance(
                template_id=template.id,
                index=start_index + offset,
                bindings=bindings,
                steps=tuple(_bind_step(s, bindings) for s in template.steps),
                env=env,
                name=_instance_name(template, bindings),
            )
        )
    logger.debug(f"Expanded job '{template.id}' into {len(instances)} instance(s)")
    return instances


def expand_all(templates: Iterable[JobTemplate]) -> List[JobInstance]:
    """Expand several templates, numbering instances across all of them."""
    instances: List[JobInstance] = []
    for template in templates:
        instances.extend(expand(template, start_index=len(instances)))
    return instances
