# triggers.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from fnmatch import fnmatch
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from croniter import croniter

from .errors import InvalidInput, WorkflowError
from .model import Trigger, Workflow

logger = logging.getLogger(__name__)


INPUT_TYPES = ("string", "boolean", "number", "choice", "environment")

_TRUE = ("true", "yes", "1", "on")
_FALSE = ("false", "no", "0", "off")


# ----------------------------------------------------------------------
# `on:` parsing
# ----------------------------------------------------------------------

def parse_triggers(raw: Any) -> Tuple[Trigger, ...]:
    """
    `on:` accepts three shapes:
        on: push
        on: [push, pull_request]
        on: {pull_request: {branches: [main]}, schedule: [{cron: ...}]}
    """
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (Trigger(event=raw),)
    if isinstance(raw, list):
        return tuple(Trigger(event=str(e)) for e in raw)
    if not isinstance(raw, dict):
        raise WorkflowError(f"'on' must be a string, list or mapping, got {type(raw).__name__}")

    triggers: List[Trigger] = []
    for event, config in raw.items():
        event = str(event)
        if event == "schedule":
            # a list of {cron: ...} entries, kept under one key
            if not isinstance(config, list):
                raise WorkflowError("'on.schedule' must be a list of {cron: ...} entries")
            config = {"crons": [str(c.get("cron", "")) if isinstance(c, dict) else "" for c in config]}
        elif config is None:
            config = {}
        elif not isinstance(config, dict):
            raise WorkflowError(f"'on.{event}' must be a mapping", event=event)
        triggers.append(Trigger(event=event, config=dict(config)))

    out = tuple(triggers)
    for t in out:
        if t.event == "schedule":
            validate_schedule(t)
        if t.event == "workflow_dispatch":
            _check_input_declarations(t)
    return out


# ----------------------------------------------------------------------
# workflow_dispatch inputs
# ----------------------------------------------------------------------

def _check_input_declarations(trigger: Trigger) -> None:
    inputs = trigger.config.get("inputs") or {}
    if not isinstance(inputs, dict):
        raise WorkflowError("'workflow_dispatch.inputs' must be a mapping")
    for name, decl in inputs.items():
        decl = decl or {}
        kind = decl.get("type", "string")
        if kind not in INPUT_TYPES:
            raise WorkflowError(f"input '{name}' has unknown type '{kind}'", input=name)
        if kind == "choice" and not decl.get("options"):
            raise WorkflowError(f"choice input '{name}' declares no options", input=name)


def _coerce(name: str, decl: Mapping[str, Any], value: Any) -> Any:
    kind = decl.get("type", "string")
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise InvalidInput(f"input '{name}' expects a boolean, got {value!r}", input=name)
    if kind == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        try:
            number = float(str(value).strip())
        except ValueError:
            raise InvalidInput(f"input '{name}' expects a number, got {value!r}", input=name)
        return int(number) if number.is_integer() else number
    if kind == "choice":
        options = [str(o) for o in decl.get("options") or []]
        if str(value) not in options:
            raise InvalidInput(
                f"input '{name}' must be one of {options}, got {value!r}",
                input=name,
                options=options,
            )
        return str(value)
    return str(value)


def validate_dispatch_inputs(workflow: Workflow, provided: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Check caller-provided inputs against the workflow_dispatch declaration:
    unknown names, missing required values and bad types raise InvalidInput;
    defaults fill the gaps. Returns the typed `inputs` context.
    """
    provided = dict(provided or {})
    trigger = workflow.trigger("workflow_dispatch")
    declared: Dict[str, Any] = dict((trigger.config.get("inputs") or {}) if trigger else {})

    unknown = sorted(set(provided) - set(declared))
    if unknown:
        raise InvalidInput(f"unknown input(s): {', '.join(unknown)}", declared=sorted(declared))

    values: Dict[str, Any] = {}
    for name, decl in declared.items():
        decl = decl or {}
        if name in provided:
            values[name] = _coerce(name, decl, provided[name])
        elif "default" in decl:
            values[name] = _coerce(name, decl, decl["default"])
        elif decl.get("required"):
            raise InvalidInput(f"missing required input '{name}'", input=name)
        elif decl.get("type") == "boolean":
            values[name] = False
        else:
            values[name] = ""
    return values


# ----------------------------------------------------------------------
# push / pull_request filters
# ----------------------------------------------------------------------

def _matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def _filter(value: str, include: Optional[List[str]], ignore: Optional[List[str]]) -> bool:
    if include is not None:
        # a leading "!" re-excludes; later patterns win, as in the host runner
        matched = False
        for pattern in include:
            if pattern.startswith("!"):
                if fnmatch(value, pattern[1:]):
                    matched = False
            elif fnmatch(value, pattern):
                matched = True
        return matched
    if ignore is not None:
        return not _matches_any(value, ignore)
    return True


def branch_matches(trigger: Trigger, branch: Optional[str]) -> bool:
    include = trigger.config.get("branches")
    ignore = trigger.config.get("branches-ignore")
    if include is None and ignore is None:
        return True
    if branch is None:
        return False
    return _filter(branch, include, ignore)


def paths_match(trigger: Trigger, changed_files: Optional[Iterable[str]]) -> bool:
    """
    True if the change set touches the trigger's `paths` (and not only
    `paths-ignore`). No path filter, or an unknown change set, always matches.
    """
    include = trigger.config.get("paths")
    ignore = trigger.config.get("paths-ignore")
    if include is None and ignore is None:
        return True
    if changed_files is None:
        return True
    return any(_filter(f, include, ignore) for f in changed_files)


def should_run(
    workflow: Workflow,
    event: str,
    *,
    branch: Optional[str] = None,
    changed_files: Optional[Iterable[str]] = None,
) -> bool:
    """Does `event` (on `branch`, touching `changed_files`) trigger this workflow?"""
    trigger = workflow.trigger(event)
    if trigger is None:
        return False
    if event in ("push", "pull_request", "pull_request_target"):
        files = list(changed_files) if changed_files is not None else None
        ok = branch_matches(trigger, branch) and paths_match(trigger, files)
        logger.debug("trigger %s branch=%s files=%s -> %s", event, branch, files, ok)
        return ok
    return True


# ----------------------------------------------------------------------
# schedule
# ----------------------------------------------------------------------

def validate_schedule(trigger: Trigger) -> None:
    crons = trigger.config.get("crons") or []
    if not crons:
        raise WorkflowError("'on.schedule' declares no cron entries")
    for cron in crons:
        if not croniter.is_valid(cron):
            raise WorkflowError(f"invalid cron expression: {cron!r}", cron=cron)


def next_scheduled_run(workflow: Workflow, after: Optional[datetime] = None) -> Optional[datetime]:
    """Earliest time any of the workflow's cron entries fires after `after` (UTC)."""
    trigger = workflow.trigger("schedule")
    if trigger is None:
        return None
    start = after or datetime.now(timezone.utc)
    times = [croniter(cron, start).get_next(datetime) for cron in trigger.config.get("crons") or []]
    return min(times) if times else None
