from datetime import datetime, timezone

import pytest

from flowci.dsl import job, sh
from flowci.errors import InvalidInput, WorkflowError
from flowci.loader import build_workflow
from flowci.model import Trigger
from flowci.triggers import (
    branch_matches,
    next_scheduled_run,
    parse_triggers,
    paths_match,
    should_run,
    validate_dispatch_inputs,
)


def _workflow(on):
    return build_workflow([job("build", sh("noop", "true"))], triggers=parse_triggers(on))


def test_trigger_shapes():
    assert parse_triggers(None) == ()
    assert parse_triggers("push") == (Trigger("push"),)
    assert [t.event for t in parse_triggers(["push", "pull_request"])] == ["push", "pull_request"]

    (pr,) = parse_triggers({"pull_request": None})
    assert pr.config == {}


def test_schedule_collects_cron_entries():
    (sched,) = parse_triggers({"schedule": [{"cron": "0 2 * * *"}, {"cron": "30 4 * * 1"}]})
    assert sched.config == {"crons": ["0 2 * * *", "30 4 * * 1"]}


@pytest.mark.parametrize("on", [
    {"schedule": [{"cron": "not a cron"}]},
    {"schedule": []},
    {"schedule": "0 2 * * *"},
    {"push": ["main"]},
    {"workflow_dispatch": {"inputs": {"level": {"type": "color"}}}},
    {"workflow_dispatch": {"inputs": {"level": {"type": "choice"}}}},
    42,
])
def test_invalid_triggers(on):
    with pytest.raises(WorkflowError):
        parse_triggers(on)


def test_next_scheduled_run():
    wf = _workflow({"schedule": [{"cron": "0 0 * * 1"}, {"cron": "0 12 * * 5"}]})
    after = datetime(2024, 1, 3, 9, 30, tzinfo=timezone.utc)  # a Wednesday

    nxt = next_scheduled_run(wf, after)
    assert nxt.replace(tzinfo=None) == datetime(2024, 1, 5, 12, 0)
    assert next_scheduled_run(_workflow("push")) is None


def test_weekly_schedule():
    wf = _workflow({"schedule": [{"cron": "0 0 * * 1"}]})
    nxt = next_scheduled_run(wf, datetime(2024, 1, 3, tzinfo=timezone.utc))
    assert nxt.replace(tzinfo=None) == datetime(2024, 1, 8)


DISPATCH = {
    "workflow_dispatch": {
        "inputs": {
            "environment": {"type": "choice", "options": ["staging", "production"], "required": True},
            "dry-run": {"type": "boolean", "default": True},
            "replicas": {"type": "number", "default": "2"},
            "notes": {"type": "string"},
            "verbose": {"type": "boolean"},
        }
    }
}


def test_dispatch_inputs_are_typed_and_defaulted():
    wf = _workflow(DISPATCH)
    values = validate_dispatch_inputs(wf, {"environment": "production", "replicas": "3.5"})
    assert values == {
        "environment": "production",
        "dry-run": True,
        "replicas": 3.5,
        "notes": "",
        "verbose": False,
    }

    values = validate_dispatch_inputs(wf, {"environment": "staging", "dry-run": "false"})
    assert values["dry-run"] is False
    assert values["replicas"] == 2


@pytest.mark.parametrize("provided", [
    {},
    {"environment": "qa"},
    {"environment": "staging", "dry-run": "maybe"},
    {"environment": "staging", "replicas": "many"},
    {"environment": "staging", "unknown": "x"},
])
def test_bad_dispatch_inputs(provided):
    with pytest.raises(InvalidInput):
        validate_dispatch_inputs(_workflow(DISPATCH), provided)


def test_workflow_without_dispatch_accepts_no_inputs():
    wf = _workflow("push")
    assert validate_dispatch_inputs(wf) == {}
    with pytest.raises(InvalidInput):
        validate_dispatch_inputs(wf, {"x": "1"})


def test_branch_filters():
    (t,) = parse_triggers({"push": {"branches": ["main", "release/**", "!release/old"]}})
    assert branch_matches(t, "main")
    assert branch_matches(t, "release/1.2")
    assert not branch_matches(t, "release/old")
    assert not branch_matches(t, "feature/x")
    assert not branch_matches(t, None)

    (ignore,) = parse_triggers({"push": {"branches-ignore": ["dependabot/*"]}})
    assert branch_matches(ignore, "main")
    assert not branch_matches(ignore, "dependabot/pip")


def test_path_filters():
    (t,) = parse_triggers({"pull_request": {"paths": ["src/**", "pyproject.toml"]}})
    assert paths_match(t, ["src/pkg/mod.py"])
    assert paths_match(t, ["README.md", "pyproject.toml"])
    assert not paths_match(t, ["README.md"])
    assert paths_match(t, None)

    (ignore,) = parse_triggers({"push": {"paths-ignore": ["docs/**"]}})
    assert not paths_match(ignore, ["docs/index.md"])
    assert paths_match(ignore, ["docs/index.md", "src/app.py"])


def test_should_run():
    wf = _workflow({
        "pull_request": {"branches": ["main"], "paths": ["src/**"]},
        "workflow_dispatch": None,
    })
    assert should_run(wf, "pull_request", branch="main", changed_files=["src/a.py"])
    assert not should_run(wf, "pull_request", branch="main", changed_files=["docs/a.md"])
    assert not should_run(wf, "pull_request", branch="develop", changed_files=["src/a.py"])
    assert should_run(wf, "workflow_dispatch")
    assert not should_run(wf, "push", branch="main")
