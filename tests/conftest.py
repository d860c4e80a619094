import threading

import pytest

from flowci.actions import ActionRegistry, sleep_action
from flowci.config import RunConfig
from flowci.errors import StepFailed
from flowci.loader import build_workflow
from flowci.runner import run_workflow
from flowci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    return console


def _fail(ctx):
    raise StepFailed(ctx.job.name, ctx.step.name, "boom", exit_code=1)


class ConcurrencyProbe:
    """Fake action that records how many calls overlap."""

    def __init__(self, seconds=0.05):
        self.seconds = seconds
        self.current = 0
        self.peak = 0
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, ctx):
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
            self.calls.append(ctx.job.name)
        try:
            ctx.token.wait(self.seconds)
        finally:
            with self._lock:
                self.current -= 1


@pytest.fixture
def registry():
    reg = ActionRegistry()
    reg.register("test/ok", lambda ctx: None)
    reg.register("test/fail", _fail)
    reg.register("test/echo", lambda ctx: dict(ctx.inputs))
    reg.register("test/sleep", sleep_action)
    return reg


@pytest.fixture
def run_jobs(tmp_path):
    """run_jobs(jobs, registry, max_workers=None, timeout=None, **run_workflow_kwargs) -> RunResult"""

    def _run(jobs, registry, *, max_workers=None, timeout=None, **kwargs):
        workflow = build_workflow(jobs, name="test")
        config = RunConfig(max_workers=max_workers, workspace=tmp_path, services=False, run_timeout=timeout)
        return run_workflow(workflow, config, registry=registry, **kwargs)

    return _run


@pytest.fixture
def probe(registry):
    p = ConcurrencyProbe()
    registry.register("test/probe", p)
    return p
