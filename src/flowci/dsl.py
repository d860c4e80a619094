# src/flowci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .matrix import Matrix, matrix
from .model import DEFAULT_TIMEOUT_MINUTES, HealthCheck, Job, Service, Step

__all__ = ["sh", "uses", "service", "job", "JobBuilder", "build", "Matrix", "matrix", "wf"]


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: Optional[str] = None,
    id: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    if_: Optional[str] = None,
    shell: Optional[str] = None,
    continue_on_error: bool = False,
    timeout_minutes: Optional[float] = None,
) -> Step:
    """Create a shell (`run:`) step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        env=dict(env or {}),
        if_=if_,
        shell=shell,
        working_directory=cwd,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


def uses(
    action: str,
    *,
    name: Optional[str] = None,
    id: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    if_: Optional[str] = None,
    continue_on_error: bool = False,
    timeout_minutes: Optional[float] = None,
    with_: Optional[Dict[str, Any]] = None,
    **inputs: Any,
) -> Step:
    """
    Create an action (`uses:`) step. Keyword inputs become `with:` values;
    dashes are spelled as underscores (if_no_files_found -> if-no-files-found).
    Inputs whose names clash with the keyword arguments (`name`, `id`, ...)
    go in `with_`.
    """
    with_inputs = dict(with_ or {})
    with_inputs.update({k.replace("_", "-"): v for k, v in inputs.items()})
    return Step(
        name=name or f"Run {action}",
        uses=action,
        id=id,
        with_=with_inputs,
        env=dict(env or {}),
        if_=if_,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


def service(
    name: str,
    image: str,
    *,
    env: Optional[Dict[str, str]] = None,
    ports: Sequence[str] = (),
    health_cmd: Optional[str] = None,
    health_interval: float = 10.0,
    health_timeout: float = 5.0,
    health_retries: int = 3,
) -> Service:
    health = None
    if health_cmd:
        health = HealthCheck(
            cmd=health_cmd,
            interval=health_interval,
            timeout=health_timeout,
            retries=health_retries,
        )
    return Service(name=name, image=image, env=dict(env or {}), ports=tuple(ports), health=health)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,
    steps_list: Optional[List[Step]] = None,
    needs: Optional[Iterable[str]] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    services: Sequence[Service] = (),
    cwd: Optional[str] = None,
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
    continue_on_error: bool = False,
    display_name: Optional[str] = None,
    runs_on: Optional[str] = None,
) -> Job:
    """
    Create a job. Steps may be passed positionally, as `steps_list`, or
    both (list first). `cwd` becomes the working directory of every step
    that does not set its own.
    """
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.working_directory is not None else replace(s, working_directory=cwd)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        if_=if_,
        env=dict(env or {}),
        outputs=dict(outputs or {}),
        services=tuple(services),
        timeout_minutes=timeout_minutes,
        continue_on_error=continue_on_error,
        display_name=display_name,
        runs_on=runs_on,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: List[str] = []
        self._steps: List[Step] = []
        self._env: Dict[str, str] = {}
        self._outputs: Dict[str, str] = {}
        self._if: Optional[str] = None
        self._timeout: float = DEFAULT_TIMEOUT_MINUTES
        self._continue_on_error = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def step(self, name: str, run: str, cwd: Optional[str] = None, **kw: Any):
        self._steps.append(sh(name, run, cwd=cwd, **kw))
        return self

    def action(self, ref: str, **kw: Any):
        self._steps.append(uses(ref, **kw))
        return self

    def with_env(self, **env: Any):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def output(self, name: str, expression: str):
        self._outputs[name] = expression
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def timeout(self, minutes: float):
        self._timeout = minutes
        return self

    def allow_failure(self, allowed: bool = True):
        self._continue_on_error = allowed
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            if_=self._if,
            env=self._env,
            outputs=self._outputs,
            timeout_minutes=self._timeout,
            continue_on_error=self._continue_on_error,
        )


def build(name: str) -> JobBuilder:
    """build("test").step("unit", "pytest").build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(*items: Union[Job, Iterable[Job]]) -> List[Job]:
    """
    Workflow definition helper. Matrix expansions can be passed as-is:

        from flowci import wf, job, sh, matrix

        def workflow():
            return wf(
                job("lint", sh("ruff", "ruff check .")),
                matrix(py=["3.11", "3.12"]).expand(
                    job("test", sh("pytest", "pytest"), needs=["lint"])
                ),
            )
    """
    jobs: List[Job] = []
    for item in items:
        if isinstance(item, Job):
            jobs.append(item)
        else:
            jobs.extend(item)
    return jobs
