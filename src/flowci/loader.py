# loader.py
from __future__ import annotations

import logging
import runpy
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from .dag import topo_order
from .errors import UnsupportedExpression, WorkflowError
from .expressions import ExprContext, TEMPLATE_RE, evaluate_value, parse, parse_condition, to_string, truthy
from .matrix import expand_job, resolve_needs
from .model import DEFAULT_TIMEOUT_MINUTES, Job, Step, Trigger, Workflow
from .services import parse_service
from .triggers import parse_triggers

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# Scalars
# ----------------------------------------------------------------------

def _condition(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _bool(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "false"):
        return text == "true"
    raise WorkflowError(f"{where} must be true or false, got {value!r}")


def _minutes(value: Any, where: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise WorkflowError(f"{where} must be a number, got {value!r}")
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        raise WorkflowError(f"{where} must be a number, got {value!r}")
    if minutes <= 0:
        raise WorkflowError(f"{where} must be positive, got {value!r}")
    return minutes


def _env(raw: Any, where: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise WorkflowError(f"{where} must be a mapping")
    return {str(k): to_string(v) for k, v in raw.items()}


def _needs(raw: Any, job_id: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if isinstance(raw, list):
        return tuple(str(n) for n in raw)
    raise WorkflowError(f"jobs.{job_id}.needs must be a string or a list", job=job_id)


# ----------------------------------------------------------------------
# Steps and jobs
# ----------------------------------------------------------------------

def parse_step(raw: Any, index: int, job_id: str) -> Step:
    where = f"jobs.{job_id}.steps[{index}]"
    if not isinstance(raw, Mapping):
        raise WorkflowError(f"{where} must be a mapping", job=job_id)

    run, uses = raw.get("run"), raw.get("uses")
    if (run is None) == (uses is None):
        raise WorkflowError(f"{where} must have exactly one of 'uses' or 'run'", job=job_id)

    name = raw.get("name")
    if not name:
        if uses is not None:
            name = f"Run {uses}"
        else:
            first = str(run).strip().splitlines()
            name = f"Run {first[0]}" if first else "Run"

    with_ = raw.get("with") or {}
    if not isinstance(with_, Mapping):
        raise WorkflowError(f"{where}.with must be a mapping", job=job_id)

    return Step(
        name=str(name),
        run=str(run) if run is not None else None,
        uses=str(uses) if uses is not None else None,
        id=str(raw["id"]) if raw.get("id") is not None else None,
        with_=dict(with_),
        env=_env(raw.get("env"), f"{where}.env"),
        if_=_condition(raw.get("if")),
        continue_on_error=_bool(raw.get("continue-on-error", False), f"{where}.continue-on-error"),
        timeout_minutes=_minutes(raw.get("timeout-minutes"), f"{where}.timeout-minutes"),
        working_directory=raw.get("working-directory"),
        shell=raw.get("shell"),
    )


def _instance_flag(raw: Any, job: Job, where: str) -> bool:
    # `continue-on-error: ${{ matrix.experimental }}` is decided per instance
    if isinstance(raw, str) and "${{" in raw:
        ctx = ExprContext(contexts={"matrix": dict(job.matrix)})
        return truthy(evaluate_value(raw, ctx))
    return _bool(raw, where)


def parse_job(
    job_id: str,
    raw: Any,
    *,
    default_timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
) -> List[Job]:
    """One `jobs.<id>` entry -> one Job, or one Job per matrix combination."""
    if not isinstance(raw, Mapping):
        raise WorkflowError(f"jobs.{job_id} must be a mapping", job=job_id)
    if "uses" in raw:
        raise WorkflowError(f"jobs.{job_id}: reusable workflows are not supported", job=job_id)

    steps_raw = raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise WorkflowError(f"jobs.{job_id} must declare at least one step", job=job_id)
    steps = tuple(parse_step(s, i, job_id) for i, s in enumerate(steps_raw))

    strategy = raw.get("strategy") or {}
    if not isinstance(strategy, Mapping):
        raise WorkflowError(f"jobs.{job_id}.strategy must be a mapping", job=job_id)
    max_parallel = strategy.get("max-parallel")
    if max_parallel is not None:
        try:
            max_parallel = int(max_parallel)
        except (TypeError, ValueError):
            raise WorkflowError(f"jobs.{job_id}.strategy.max-parallel must be an integer", job=job_id)
        if max_parallel < 1:
            raise WorkflowError(f"jobs.{job_id}.strategy.max-parallel must be >= 1", job=job_id)

    services_raw = raw.get("services") or {}
    if not isinstance(services_raw, Mapping):
        raise WorkflowError(f"jobs.{job_id}.services must be a mapping", job=job_id)

    outputs_raw = raw.get("outputs") or {}
    if not isinstance(outputs_raw, Mapping):
        raise WorkflowError(f"jobs.{job_id}.outputs must be a mapping", job=job_id)

    runs_on = raw.get("runs-on")
    if isinstance(runs_on, list):
        runs_on = ", ".join(str(r) for r in runs_on)

    timeout = _minutes(raw.get("timeout-minutes"), f"jobs.{job_id}.timeout-minutes")
    coe_raw = raw.get("continue-on-error", False)

    job = Job(
        name=job_id,
        steps=steps,
        needs=_needs(raw.get("needs"), job_id),
        display_name=str(raw["name"]) if raw.get("name") is not None else None,
        if_=_condition(raw.get("if")),
        runs_on=str(runs_on) if runs_on is not None else None,
        timeout_minutes=timeout if timeout is not None else default_timeout_minutes,
        env=_env(raw.get("env"), f"jobs.{job_id}.env"),
        outputs={str(k): str(v) for k, v in outputs_raw.items()},
        services=tuple(parse_service(str(n), s) for n, s in services_raw.items()),
        max_parallel=max_parallel,
        fail_fast=_bool(strategy.get("fail-fast", True), f"jobs.{job_id}.strategy.fail-fast"),
    )

    instances = [job]
    if "matrix" in strategy:
        instances = expand_job(job, strategy["matrix"])

    where = f"jobs.{job_id}.continue-on-error"
    return [
        j if coe_raw is False else replace(j, continue_on_error=_instance_flag(coe_raw, j, where))
        for j in instances
    ]


# ----------------------------------------------------------------------
# Workflows
# ----------------------------------------------------------------------

def build_workflow(
    jobs: Iterable[Job],
    *,
    name: str = "workflow",
    env: Optional[Dict[str, str]] = None,
    triggers: Tuple[Trigger, ...] = (),
    source: Optional[str] = None,
) -> Workflow:
    """Assemble and validate (duplicates, unknown needs, cycles) a Workflow."""
    jobs = resolve_needs(jobs)
    topo_order(jobs)
    return Workflow(
        name=name,
        jobs={j.name: j for j in jobs},
        triggers=tuple(triggers),
        env=dict(env or {}),
        source=source,
    )


def parse_workflow(
    data: Any,
    source: Optional[str] = None,
    *,
    default_timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
) -> Workflow:
    """Parsed workflow YAML (a mapping) -> Workflow."""
    if not isinstance(data, Mapping):
        raise WorkflowError("workflow file must contain a YAML mapping", source=source)

    # YAML 1.1 reads a bare `on` key as the boolean True
    on = data["on"] if "on" in data else data.get(True)
    triggers = parse_triggers(on)

    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, Mapping) or not jobs_raw:
        raise WorkflowError("workflow must declare at least one job under 'jobs'", source=source)

    jobs: List[Job] = []
    for job_id, raw in jobs_raw.items():
        jobs.extend(parse_job(str(job_id), raw, default_timeout_minutes=default_timeout_minutes))

    name = data.get("name") or (Path(source).stem if source else "workflow")
    return build_workflow(
        jobs,
        name=str(name),
        env=_env(data.get("env"), "env"),
        triggers=triggers,
        source=source,
    )


def _load_yaml(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise WorkflowError(f"Invalid YAML in {path}: {exc}", source=str(path)) from exc


def _load_python(path: Path) -> Workflow:
    """
    A Python workflow file defines either:
      - workflow() -> Workflow | List[Job]
      - JOBS = [Job, ...]
    and optionally NAME / ENV.
    """
    module_name = f"flowci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    result: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        result = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, Workflow):
        return result
    if not isinstance(result, list) or not all(isinstance(j, Job) for j in result):
        raise WorkflowError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...].",
            source=str(path),
        )
    return build_workflow(
        result,
        name=str(globals_dict.get("NAME") or path.stem),
        env={str(k): str(v) for k, v in (globals_dict.get("ENV") or {}).items()},
        triggers=(Trigger(event="workflow_dispatch"),),
        source=str(path),
    )


def load_workflow(
    path: Union[str, Path],
    *,
    default_timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
) -> Workflow:
    """Load a workflow from a YAML file or a Python DSL file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        data = _load_yaml(wf_path)
        workflow = parse_workflow(data, str(wf_path), default_timeout_minutes=default_timeout_minutes)
    elif wf_path.suffix == ".py":
        workflow = _load_python(wf_path)
    else:
        raise WorkflowError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    logger.debug("loaded workflow %r from %s: %d job(s)", workflow.name, wf_path, len(workflow.jobs))
    return workflow


# ----------------------------------------------------------------------
# Static checks
# ----------------------------------------------------------------------

def _template_problems(text: Any, where: str) -> List[str]:
    if not isinstance(text, str):
        return []
    problems = []
    for m in TEMPLATE_RE.finditer(text):
        try:
            parse(m.group(1))
        except UnsupportedExpression as e:
            problems.append(f"{where}: {e.message}")
    return problems


def check_expressions(workflow: Workflow) -> List[str]:
    """
    Parse every condition and `${{ }}` template without running anything.
    Returns human-readable problems; an empty list means all expressions parse.
    """
    problems: List[str] = []
    for job in workflow.job_list:
        try:
            parse_condition(job.if_)
        except UnsupportedExpression as e:
            problems.append(f"jobs.{job.name}.if: {e.message}")
        for key, value in job.outputs.items():
            problems.extend(_template_problems(value, f"jobs.{job.name}.outputs.{key}"))
        for step in job.steps:
            where = f"jobs.{job.name}.steps[{step.name}]"
            try:
                parse_condition(step.if_)
            except UnsupportedExpression as e:
                problems.append(f"{where}.if: {e.message}")
            for field_name, value in (("run", step.run), ("uses", step.uses), ("name", step.name)):
                problems.extend(_template_problems(value, f"{where}.{field_name}"))
            for key, value in {**step.with_, **step.env}.items():
                problems.extend(_template_problems(value, f"{where}.{key}"))
    return problems
