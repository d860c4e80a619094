# scheduler.py
from __future__ import annotations

import logging
import time
from collections import Counter, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Mapping, Optional

from .cancel import CancelToken
from .context import job_result
from .dag import build_dag, topo_order
from .errors import CIError, Cancelled, InvalidTransition, Timeout
from .executor import StepExecutor
from .expressions import ExprContext, evaluate
from .model import Job, JobStatus, RunRecord, Workflow
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


RUN_SUCCEEDED = "succeeded"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"


@dataclass
class RunResult:
    workflow: str
    status: str
    records: Dict[str, RunRecord] = field(default_factory=dict)
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == RUN_SUCCEEDED

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def by_status(self, status: JobStatus) -> List[str]:
        return [name for name, rec in self.records.items() if rec.status is status]


def overall_status(jobs: Mapping[str, Job], records: Mapping[str, RunRecord], cancelled: bool) -> str:
    """
    failed    - some job failed and was not allowed to (continue-on-error)
    cancelled - nothing failed but the run was cancelled
    succeeded - otherwise (skipped jobs do not fail a run)
    """
    for name, rec in records.items():
        if rec.status is JobStatus.FAILED and not jobs[name].continue_on_error:
            return RUN_FAILED
    if cancelled:
        return RUN_CANCELLED
    return RUN_SUCCEEDED


class Scheduler:
    """
    Event-driven DAG dispatcher.

    The main thread owns every PENDING/BLOCKED/READY decision; worker
    threads only ever move their own job out of RUNNING. The loop sleeps in
    `wait(FIRST_COMPLETED)` and wakes exactly when a job finishes (or the
    run deadline passes), so no job is dispatched before all of its
    dependencies are terminal.
    """

    def __init__(
        self,
        workflow: Workflow,
        executor: StepExecutor,
        *,
        max_workers: Optional[int] = None,
        token: Optional[CancelToken] = None,
        console: Optional[Console] = None,
    ):
        if max_workers is not None and max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.workflow = workflow
        self.jobs: Dict[str, Job] = dict(workflow.jobs)
        self.executor = executor
        self.store = executor.store
        self.max_workers = max_workers
        self.token = token or CancelToken()
        self.console = console or get_console()

        missing = [n for n in self.jobs if n not in self.store]
        if missing:
            raise ValueError(f"state store has no record for job(s): {', '.join(missing)}")

        # validates duplicates / unknown needs / cycles before anything runs
        self.order: List[str] = topo_order(self.jobs.values())
        self.adj, _ = build_dag(self.jobs.values())

        self._job_tokens: Dict[str, CancelToken] = {}
        self._ready: Deque[str] = deque()
        self._cancelled = False

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "run cancelled") -> None:
        """
        Cancel the run. Safe to call from any thread.

        Waiting jobs go straight to CANCELLED; running jobs see the run
        token and stop at their next cancellation point.
        """
        if self._cancelled:
            return
        self._cancelled = True
        logger.info("cancelling run: %s", reason)
        self.token.cancel(reason)
        for name in self.order:
            self.store.try_cancel(name, reason)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _sync_cancel(self) -> None:
        # the run token may be cancelled by its owner without going through cancel()
        if self.token.is_set() and not self._cancelled:
            self.cancel(self.token.reason or "run cancelled")

    def _fail_fast(self, failed: Job) -> None:
        # a failed matrix instance cancels its siblings
        reason = f"fail-fast: '{failed.name}' failed"
        for name, job in self.jobs.items():
            if name == failed.name or job.template != failed.template:
                continue
            if self.store.try_cancel(name, reason):
                continue
            token = self._job_tokens.get(name)
            if token is not None:
                token.cancel(reason)

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _resolve(self, name: str) -> None:
        """All dependencies of `name` are terminal: decide READY or SKIPPED."""
        job = self.jobs[name]
        records = self.store.snapshot(job.needs)

        try:
            ctx = ExprContext(
                contexts=self.executor.run.job_contexts(job, self.jobs, records),
                dependency_results=tuple(job_result(self.jobs[d], records[d]) for d in job.needs),
                cancelled=self.token.is_set(),
            )
            go = evaluate(job.if_, ctx)
        except CIError as e:
            # a bad condition fails this job only
            self._finish_waiting(name, JobStatus.FAILED, error_kind=e.kind, error=e.message)
            return

        if go:
            try:
                self.store.transition(name, JobStatus.READY)
            except InvalidTransition:
                # cancelled from another thread in the meantime
                return
            self._ready.append(name)
        else:
            self._finish_waiting(name, JobStatus.SKIPPED)

    def _finish_waiting(self, name: str, status: JobStatus, **kw) -> None:
        try:
            record = self.store.transition(name, status, **kw)
        except InvalidTransition:
            return
        self.console.print_job_finished(record)
        self._release(name)

    def _release(self, name: str) -> None:
        # dependents of a job that just became terminal
        for nxt in sorted(self.adj[name], key=self.order.index):
            if self.store.status(nxt) is not JobStatus.BLOCKED:
                continue
            if self.store.all_terminal(self.jobs[nxt].needs):
                self._resolve(nxt)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, str], per_template: Counter) -> None:
        deferred: List[str] = []
        ready = self._ready
        while ready and (self.max_workers is None or len(in_flight) < self.max_workers):
            if self.token.is_set():
                break
            name = ready.popleft()
            if self.store.status(name) is not JobStatus.READY:
                continue
            job = self.jobs[name]
            if job.max_parallel and per_template[job.template_name] >= job.max_parallel:
                deferred.append(name)
                continue

            token = self.token.child(
                timeout=job.timeout_minutes * 60 if job.timeout_minutes else None,
                reason=f"job '{name}' exceeded {job.timeout_minutes} minute(s)",
            )
            try:
                self.store.transition(name, JobStatus.RUNNING)
            except InvalidTransition:
                token.dispose()
                continue

            self._job_tokens[name] = token
            records = self.store.snapshot(job.needs)
            fut = pool.submit(self._run_job, job, token, records)
            in_flight[fut] = name
            per_template[job.template_name] += 1

        # keep declaration order for the ones held back by max-parallel
        ready.extendleft(reversed(deferred))

    def _run_job(self, job: Job, token: CancelToken, records: Dict[str, RunRecord]) -> RunRecord:
        """Worker thread: run one job and record its terminal state."""
        name = job.name
        try:
            self.executor.run_job(job, token, self.jobs, records)
        except Timeout as e:
            record = self.store.transition(name, JobStatus.FAILED, error_kind=e.kind, error=_describe(e))
        except Cancelled as e:
            record = self.store.transition(name, JobStatus.CANCELLED, error_kind=e.kind, error=_describe(e))
        except CIError as e:
            record = self.store.transition(name, JobStatus.FAILED, error_kind=e.kind, error=_describe(e))
        except Exception as e:
            logger.exception("job %s crashed", name)
            record = self.store.transition(name, JobStatus.FAILED, error_kind=type(e).__name__, error=str(e))
        else:
            record = self.store.transition(name, JobStatus.SUCCEEDED)
        finally:
            token.dispose()

        self.console.print_job_finished(record)
        return record

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, timeout: Optional[float] = None) -> RunResult:
        """
        Run every job to a terminal state and return the aggregated result.

        `timeout` bounds the whole run in seconds; when it passes the run is
        cancelled. KeyboardInterrupt cancels the run, waits for in-flight
        jobs to stop and re-raises.
        """
        started = time.time()
        deadline = time.monotonic() + timeout if timeout is not None else None
        self._ready.clear()

        for name in self.order:
            if self.jobs[name].needs:
                self.store.transition(name, JobStatus.BLOCKED)
        for name in self.order:
            if not self.jobs[name].needs:
                self._resolve(name)

        in_flight: Dict[Future, str] = {}
        per_template: Counter = Counter()
        pool_size = self.max_workers or max(1, len(self.jobs))

        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="flowci-job") as pool:
            try:
                while True:
                    self._sync_cancel()
                    self._dispatch(pool, in_flight, per_template)
                    if not in_flight:
                        break

                    remaining = None
                    if deadline is not None and not self._cancelled:
                        remaining = max(0.0, deadline - time.monotonic())

                    done, _ = wait(list(in_flight), timeout=remaining, return_when=FIRST_COMPLETED)
                    if not done:
                        self.cancel(f"run exceeded {timeout:g}s timeout")
                        continue

                    for fut in done:
                        self._collect(fut, in_flight.pop(fut), per_template)
            except KeyboardInterrupt:
                self.cancel("interrupted")
                wait(list(in_flight))
                raise

        # anything still waiting can no longer run (e.g. run cancelled mid-dispatch)
        for name in self.order:
            self.store.try_cancel(name, self.token.reason or "run cancelled")

        records = self.store.snapshot(self.order)
        return RunResult(
            workflow=self.workflow.name,
            status=overall_status(self.jobs, records, self._cancelled),
            records=records,
            started_at=started,
            finished_at=time.time(),
        )

    def _collect(self, fut: Future, name: str, per_template: Counter) -> None:
        self._sync_cancel()
        job = self.jobs[name]
        per_template[job.template_name] -= 1
        self._job_tokens.pop(name, None)

        exc = fut.exception()
        if exc is not None:
            # the worker itself broke (not the job); never leave it RUNNING
            logger.error("worker for job %s raised %r", name, exc)
            try:
                self.store.transition(name, JobStatus.FAILED, error_kind=type(exc).__name__, error=str(exc))
            except InvalidTransition:
                pass

        record = self.store.get(name)
        if (
            record.status is JobStatus.FAILED
            and job.template is not None
            and job.fail_fast
            and not job.continue_on_error
        ):
            self._fail_fast(job)
            for sibling in self.jobs.values():
                if sibling.template == job.template:
                    self._release(sibling.name)

        self._release(name)


def _describe(e: CIError) -> str:
    if e.step:
        return f"step '{e.step}': {e.message}"
    return e.message

