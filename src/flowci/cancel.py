# cancel.py
from __future__ import annotations

import threading
from typing import Optional

from .errors import Cancelled, Timeout


class CancelToken:
    """
    Cooperative cancellation flag.

    A child token is cancelled when its parent is. Cancelling a child never
    touches the parent. `kind` records why: "Cancelled" or "Timeout".
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._parent = parent
        self._timer: Optional[threading.Timer] = None
        self.kind: Optional[str] = None
        self.reason: Optional[str] = None

    def child(self, timeout: Optional[float] = None, reason: str = "timed out") -> "CancelToken":
        token = CancelToken(parent=self)
        if timeout is not None:
            token.cancel_after(timeout, reason)
        return token

    def cancel(self, reason: str = "cancelled", kind: str = "Cancelled") -> None:
        if self._event.is_set():
            return
        self.kind = kind
        self.reason = reason
        self._event.set()

    def cancel_after(self, seconds: float, reason: str = "timed out") -> None:
        self._timer = threading.Timer(seconds, self.cancel, kwargs={"reason": reason, "kind": "Timeout"})
        self._timer.daemon = True
        self._timer.start()

    def dispose(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _origin(self) -> Optional["CancelToken"]:
        # the nearest token (self, then ancestors) that has fired
        node: Optional[CancelToken] = self
        while node is not None:
            if node._event.is_set():
                return node
            node = node._parent
        return None

    def is_set(self) -> bool:
        return self._origin() is not None

    @property
    def fired(self) -> bool:
        """True if this token itself was cancelled (not just an ancestor)."""
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        origin = self._origin()
        return origin is not None and origin.kind == "Timeout"

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True early if cancelled."""
        if self._parent is None:
            return self._event.wait(seconds)
        # wake at least every 100ms so parent cancellation is noticed
        remaining = seconds
        while remaining > 0:
            if self.is_set():
                return True
            step = min(0.1, remaining)
            self._event.wait(step)
            remaining -= step
        return self.is_set()

    def raise_if_set(self, *, job: Optional[str] = None, step: Optional[str] = None) -> None:
        origin = self._origin()
        if origin is None:
            return
        if origin.kind == "Timeout":
            raise Timeout(origin.reason or "timed out", job=job, step=step)
        raise Cancelled(origin.reason or "cancelled", job=job, step=step)
