# state.py
from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import InvalidTransition
from .model import JobStatus, RunRecord, StepResult

logger = logging.getLogger(__name__)


# states a job can be cancelled from without a worker owning it
WAITING_STATES = frozenset({JobStatus.PENDING, JobStatus.BLOCKED, JobStatus.READY})

# state machine: current -> allowed next states
TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.BLOCKED, JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.BLOCKED: frozenset({JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.READY: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.SKIPPED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class RunStateStore:
    """
    Thread-safe mapping job name -> RunRecord for ONE run.

    - one lock per job serializes writers of that record
    - writers of different jobs proceed concurrently
    - readers always get copies taken under the record's lock, so they
      never observe a record mid-transition
    - terminal records are frozen: every later write raises
    """

    def __init__(self, job_names: Iterable[str]):
        names = list(job_names)
        self._records: Dict[str, RunRecord] = {n: RunRecord(job=n) for n in names}
        self._locks: Dict[str, threading.Lock] = {n: threading.Lock() for n in names}
        # notified on every terminal transition
        self._terminal = threading.Condition()

    # ---------------- writes ----------------

    def transition(
        self,
        job: str,
        status: JobStatus,
        *,
        error_kind: Optional[str] = None,
        error: Optional[str] = None,
    ) -> RunRecord:
        with self._locks[job]:
            rec = self._records[job]
            if status not in TRANSITIONS[rec.status]:
                raise InvalidTransition(job, rec.status.value, status.value)
            rec.status = status
            now = time.time()
            if status is JobStatus.RUNNING:
                rec.started_at = now
            if status.terminal:
                rec.finished_at = now
                if error_kind is not None:
                    rec.error_kind = error_kind
                if error is not None:
                    rec.error = error
            snapshot = rec.copy()

        logger.debug("job %s -> %s", job, status.value)
        if status.terminal:
            with self._terminal:
                self._terminal.notify_all()
        return snapshot

    def try_cancel(self, job: str, reason: str = "run cancelled") -> bool:
        """
        Cancel a job that is still waiting to run. Running jobs are left to
        their worker, which observes the cancel token. Returns True if cancelled.
        """
        with self._locks[job]:
            rec = self._records[job]
            if rec.status not in WAITING_STATES:
                return False
            rec.status = JobStatus.CANCELLED
            rec.finished_at = time.time()
            rec.error_kind = "Cancelled"
            rec.error = reason
        with self._terminal:
            self._terminal.notify_all()
        return True

    def set_outputs(self, job: str, outputs: Mapping[str, str]) -> None:
        with self._locks[job]:
            rec = self._records[job]
            self._ensure_open(rec)
            rec.outputs.update({k: str(v) for k, v in outputs.items()})

    def add_artifact(self, job: str, name: str) -> None:
        with self._locks[job]:
            rec = self._records[job]
            self._ensure_open(rec)
            rec.artifacts.append(name)

    def add_step_result(self, job: str, result: StepResult) -> None:
        with self._locks[job]:
            rec = self._records[job]
            self._ensure_open(rec)
            rec.steps.append(result)

    @staticmethod
    def _ensure_open(rec: RunRecord) -> None:
        if rec.status.terminal:
            raise InvalidTransition(rec.job, rec.status.value, "update")

    # ---------------- reads ----------------

    def get(self, job: str) -> RunRecord:
        with self._locks[job]:
            return self._records[job].copy()

    def status(self, job: str) -> JobStatus:
        with self._locks[job]:
            return self._records[job].status

    def snapshot(self, jobs: Optional[Iterable[str]] = None) -> Dict[str, RunRecord]:
        names = list(jobs) if jobs is not None else list(self._records)
        return {n: self.get(n) for n in names}

    def records(self) -> List[RunRecord]:
        return list(self.snapshot().values())

    def all_terminal(self, jobs: Optional[Iterable[str]] = None) -> bool:
        names = list(jobs) if jobs is not None else list(self._records)
        return all(self.status(n).terminal for n in names)

    def wait_terminal(self, jobs: Iterable[str], timeout: Optional[float] = None) -> bool:
        """Block until every listed job is terminal (woken on each terminal transition)."""
        names = list(jobs)
        with self._terminal:
            return self._terminal.wait_for(lambda: self.all_terminal(names), timeout=timeout)

    def __contains__(self, job: str) -> bool:
        return job in self._records

    def __len__(self) -> int:
        return len(self._records)
