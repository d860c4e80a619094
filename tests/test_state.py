import threading

import pytest

from flowci.errors import InvalidTransition
from flowci.model import JobStatus, StepResult, StepStatus
from flowci.state import RunStateStore


def test_new_records_are_pending():
    store = RunStateStore(["a", "b"])
    assert len(store) == 2
    assert "a" in store and "c" not in store
    assert store.status("a") is JobStatus.PENDING
    assert not store.all_terminal()


def test_happy_path_sets_timestamps():
    store = RunStateStore(["a"])
    store.transition("a", JobStatus.READY)
    running = store.transition("a", JobStatus.RUNNING)
    assert running.started_at is not None and running.finished_at is None

    done = store.transition("a", JobStatus.SUCCEEDED)
    assert done.finished_at >= done.started_at
    assert done.duration is not None
    assert store.all_terminal()


def test_cannot_skip_running():
    store = RunStateStore(["a"])
    with pytest.raises(InvalidTransition):
        store.transition("a", JobStatus.SUCCEEDED)


def test_terminal_states_are_final():
    store = RunStateStore(["a"])
    store.transition("a", JobStatus.SKIPPED)
    with pytest.raises(InvalidTransition):
        store.transition("a", JobStatus.READY)
    with pytest.raises(InvalidTransition):
        store.set_outputs("a", {"x": "1"})
    with pytest.raises(InvalidTransition):
        store.add_step_result("a", StepResult(name="s", status=StepStatus.SUCCEEDED))


def test_failure_records_error_kind():
    store = RunStateStore(["a"])
    store.transition("a", JobStatus.READY)
    store.transition("a", JobStatus.RUNNING)
    rec = store.transition("a", JobStatus.FAILED, error_kind="StepFailed", error="exit 1")
    assert (rec.error_kind, rec.error) == ("StepFailed", "exit 1")


def test_try_cancel_only_touches_waiting_jobs():
    store = RunStateStore(["waiting", "running"])
    store.transition("running", JobStatus.READY)
    store.transition("running", JobStatus.RUNNING)

    assert store.try_cancel("waiting", "stop") is True
    assert store.try_cancel("running") is False
    assert store.try_cancel("waiting") is False

    rec = store.get("waiting")
    assert rec.status is JobStatus.CANCELLED
    assert rec.error_kind == "Cancelled" and rec.error == "stop"
    assert store.status("running") is JobStatus.RUNNING


def test_snapshots_are_copies():
    store = RunStateStore(["a"])
    store.transition("a", JobStatus.READY)
    store.transition("a", JobStatus.RUNNING)
    store.set_outputs("a", {"version": 3})

    snap = store.snapshot()
    snap["a"].outputs["version"] = "tampered"
    assert store.get("a").outputs == {"version": "3"}


def test_wait_terminal_wakes_on_transition():
    store = RunStateStore(["a"])
    store.transition("a", JobStatus.READY)
    store.transition("a", JobStatus.RUNNING)

    timer = threading.Timer(0.05, store.transition, args=("a", JobStatus.SUCCEEDED))
    timer.start()
    try:
        assert store.wait_terminal(["a"], timeout=5) is True
    finally:
        timer.cancel()


def test_wait_terminal_times_out():
    store = RunStateStore(["a"])
    assert store.wait_terminal(["a"], timeout=0.01) is False


def test_concurrent_writers_on_different_jobs():
    names = [f"job{i}" for i in range(20)]
    store = RunStateStore(names)

    def work(name):
        store.transition(name, JobStatus.READY)
        store.transition(name, JobStatus.RUNNING)
        for i in range(50):
            store.add_step_result(name, StepResult(name=f"s{i}", status=StepStatus.SUCCEEDED))
        store.transition(name, JobStatus.SUCCEEDED)

    threads = [threading.Thread(target=work, args=(n,)) for n in names]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(len(r.steps) == 50 for r in store.records())
    assert store.all_terminal()
