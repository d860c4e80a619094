import time

import pytest

from flowci.cancel import CancelToken
from flowci.errors import Cancelled, Timeout


def test_parent_cancel_reaches_children():
    run = CancelToken()
    job = run.child()
    step = job.child()

    run.cancel("interrupted")
    assert step.is_set() and job.is_set()
    assert not step.fired
    with pytest.raises(Cancelled, match="interrupted"):
        step.raise_if_set(job="build", step="test")


def test_child_cancel_leaves_parent_alone():
    run = CancelToken()
    job = run.child()
    job.cancel("fail-fast")
    assert job.fired
    assert not run.is_set()


def test_timeout_kind():
    run = CancelToken()
    job = run.child(timeout=0.05, reason="job exceeded 1 minute(s)")
    step = job.child()

    assert step.wait(5) is True
    assert step.timed_out
    with pytest.raises(Timeout) as exc:
        step.raise_if_set(job="build")
    assert exc.value.message == "job exceeded 1 minute(s)"
    assert exc.value.job == "build"
    assert not run.is_set()


def test_dispose_stops_the_timer():
    token = CancelToken().child(timeout=0.05)
    token.dispose()
    time.sleep(0.1)
    assert not token.is_set()


def test_first_cancel_wins():
    token = CancelToken()
    token.cancel("first")
    token.cancel("second", kind="Timeout")
    assert (token.reason, token.kind) == ("first", "Cancelled")


def test_wait_returns_false_when_not_cancelled():
    assert CancelToken().wait(0.01) is False
    assert CancelToken().child().wait(0.01) is False
