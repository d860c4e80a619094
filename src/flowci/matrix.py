# matrix.py
from __future__ import annotations

from dataclasses import replace
from itertools import product
from typing import Any, Callable, Dict, Iterable, List, Mapping

from .errors import WorkflowError
from .expressions import to_string
from .model import Job


# ---------------------------------------------------------------------
# Matrix expansion
# ---------------------------------------------------------------------
# strategy.matrix:
#   os: [a, b]            -> dimensions, expanded as a cartesian product
#   py: [x, y]
#   exclude: [{os: a, py: y}]   -> drop combos that match every given key
#   include: [{os: c, py: z}]   -> extend matching combos, or add new ones
# ---------------------------------------------------------------------


def _matches(combo: Mapping[str, Any], partial: Mapping[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in partial.items())


def combinations(spec: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Return the list of matrix combinations declared by a strategy.matrix block."""
    if not isinstance(spec, Mapping):
        raise WorkflowError("strategy.matrix must be a mapping")

    include = spec.get("include") or []
    exclude = spec.get("exclude") or []
    if not isinstance(include, list) or not isinstance(exclude, list):
        raise WorkflowError("matrix include/exclude must be lists")

    dims = {k: v for k, v in spec.items() if k not in ("include", "exclude")}
    for key, values in dims.items():
        if not isinstance(values, list):
            raise WorkflowError(f"matrix dimension '{key}' must be a list", dimension=key)
        if not values:
            raise WorkflowError(f"matrix dimension '{key}' is empty", dimension=key)

    keys = list(dims)
    combos: List[Dict[str, Any]] = []
    if keys:
        for values in product(*(dims[k] for k in keys)):
            combos.append(dict(zip(keys, values)))

    combos = [c for c in combos if not any(_matches(c, ex) for ex in exclude)]

    originals = [dict(c) for c in combos]
    for extra in include:
        if not isinstance(extra, Mapping):
            raise WorkflowError("matrix include entries must be mappings")
        # an include entry extends every original combo it does not contradict
        # on original dimensions; otherwise it becomes a new combo
        base_keys = [k for k in extra if k in dims]
        attached = False
        for i, orig in enumerate(originals):
            if all(orig.get(k) == extra[k] for k in base_keys):
                combos[i].update(extra)
                attached = True
        if not attached:
            combos.append(dict(extra))

    if not combos:
        raise WorkflowError("matrix expands to zero combinations")
    return combos


def instance_name(template: str, combo: Mapping[str, Any]) -> str:
    """`test (ubuntu, 3.11)` -- matches how the host runner labels instances."""
    return f"{template} ({', '.join(to_string(v) for v in combo.values())})"


def expand_job(job: Job, spec: Mapping[str, Any]) -> List[Job]:
    """Expand one template job into one Job per combination; each keeps the template's needs."""
    out: List[Job] = []
    for combo in combinations(spec):
        out.append(
            replace(
                job,
                name=instance_name(job.name, combo),
                matrix=dict(combo),
                template=job.name,
            )
        )
    return out


def resolve_needs(jobs: Iterable[Job]) -> List[Job]:
    """
    Rewrite `needs` that point at a matrix template so they point at every
    instance of it. Plain job names are left untouched.
    """
    jobs = list(jobs)
    by_template: Dict[str, List[str]] = {}
    for j in jobs:
        if j.template is not None:
            by_template.setdefault(j.template, []).append(j.name)

    if not by_template:
        return jobs

    resolved: List[Job] = []
    for j in jobs:
        needs: List[str] = []
        for dep in j.needs:
            for name in by_template.get(dep, [dep]):
                if name not in needs:
                    needs.append(name)
        resolved.append(j.with_needs(tuple(needs)))
    return resolved


class Matrix:
    """
    DSL matrix expander over one or more dimensions.

    Example:
        matrix(os=["ubuntu", "macos"], py=["3.10", "3.11"]).jobs(
            lambda m: job(f"test-{m['os']}-{m['py']}", sh(...))
        )
    """
    def __init__(self, **dims: Iterable[Any]):
        self.spec: Dict[str, Any] = {k: list(v) for k, v in dims.items()}

    def combinations(self) -> List[Dict[str, Any]]:
        return combinations(self.spec)

    def jobs(self, builder: Callable[[Dict[str, Any]], Job]) -> List[Job]:
        return [builder(combo) for combo in self.combinations()]

    def expand(self, template: Job) -> List[Job]:
        return expand_job(template, self.spec)


def matrix(**dims: Iterable[Any]) -> Matrix:
    return Matrix(**dims)
