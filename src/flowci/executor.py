# executor.py
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .actions import ActionContext, ActionRegistry
from .artifacts import ArtifactStore
from .cancel import CancelToken
from .context import RunContext
from .errors import CIError, Cancelled, ExternalActionError, StepFailed, Timeout
from .expressions import ExprContext, evaluate, render, render_mapping, to_string
from .model import Job, RunRecord, StepResult, StepStatus
from .services import ServiceGate
from .state import RunStateStore
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

# errors continue-on-error may absorb; everything else fails the job at once
ABSORBABLE = (StepFailed, ExternalActionError, Timeout)


class StepExecutor:
    """
    Runs one job's steps strictly in order on the calling worker thread.

    - a failing step halts the remaining steps unless it is continue-on-error
    - steps whose `if` mentions failure()/always() still run after a halt
    - the job fails at the end unless every failed step was continue-on-error
    - the cancel token is checked before every step and passed to the action
    """

    def __init__(
        self,
        registry: ActionRegistry,
        store: RunStateStore,
        run: RunContext,
        *,
        artifacts: Optional[ArtifactStore] = None,
        services: Optional[ServiceGate] = None,
        shell: str = "bash",
        console: Optional[Console] = None,
    ):
        self.registry = registry
        self.store = store
        self.run = run
        self.artifacts = artifacts or ArtifactStore()
        self.services = services
        self.shell = shell
        self.console = console or get_console()

    @property
    def workspace(self) -> Path:
        return self.run.workspace

    def run_job(
        self,
        job: Job,
        token: CancelToken,
        jobs: Mapping[str, Job],
        records: Mapping[str, RunRecord],
    ) -> None:
        """
        Execute `job`. Returns normally on success; raises the first
        non-absorbed error otherwise (the scheduler records it).
        """
        contexts = self.run.job_contexts(job, jobs, records)
        logger.debug("job %s: %d step(s), matrix=%s", job.name, len(job.steps), job.matrix)
        self.console.print_job_start(job.name)

        started = []
        if job.services:
            if self.services is None:
                self.console.print_warning(f"[{job.name}] services ignored (service gating disabled)")
            else:
                started = self.services.start(job, token)
        try:
            self._run_steps(job, token, contexts)
        finally:
            if started:
                self.services.stop(started)

    def _run_steps(self, job: Job, token: CancelToken, contexts: Dict[str, Any]) -> None:
        first_error: Optional[CIError] = None
        job_failed = False

        for index, step in enumerate(job.steps):
            token.raise_if_set(job=job.name, step=step.name)

            step_id = step.id or f"__step{index}"
            contexts["job"] = {"status": "failure" if job_failed else "success"}
            step_env = dict(contexts["env"])
            step_env.update(step.env)
            ectx = ExprContext(
                contexts=dict(contexts, env=step_env),
                step_failed=job_failed,
                cancelled=token.is_set(),
            )

            name = render(step.name, ectx)
            if not evaluate(step.if_, ectx):
                self.console.print_step_skipped(job.name, name)
                self._record(job, StepResult(name=name, status=StepStatus.SKIPPED))
                contexts["steps"][step_id] = {"outcome": "skipped", "conclusion": "skipped", "outputs": {}}
                continue

            self.console.print_step(job.name, name)
            rendered = replace(
                step,
                name=name,
                uses=render(step.uses, ectx),
                working_directory=render(step.working_directory, ectx),
            )
            env = {k: to_string(v) for k, v in render_mapping(step_env, ectx).items()}
            step_token = token.child(
                timeout=step.timeout_minutes * 60 if step.timeout_minutes else None,
                reason=f"step '{name}' exceeded {step.timeout_minutes} minute(s)",
            )
            actx = ActionContext(
                job=job,
                step=rendered,
                inputs={k: render(to_string(v), ectx) for k, v in step.with_.items()},
                env=env,
                workspace=self.workspace,
                token=step_token,
                artifacts=self.artifacts,
                run=render(step.run, ectx),
                shell=self.shell,
                console=self.console,
            )

            try:
                result = self.registry.invoke(rendered.action, actx)
            except ABSORBABLE as e:
                if isinstance(e, Timeout) and not step_token.fired:
                    # the job (not the step) ran out of time
                    self._record(job, StepResult(name=name, status=StepStatus.CANCELLED, error=e.message))
                    raise
                e.job, e.step = job.name, name
                output = e.details.pop("output", None) if isinstance(e, StepFailed) else None
                self.console.print_step_failed(
                    job.name, name, e.message,
                    continue_on_error=step.continue_on_error,
                    output=output,
                )
                self._record(job, StepResult(
                    name=name,
                    status=StepStatus.FAILED,
                    error=str(e),
                    continue_on_error=step.continue_on_error,
                ))
                contexts["steps"][step_id] = {
                    "outcome": "failure",
                    "conclusion": "success" if step.continue_on_error else "failure",
                    "outputs": {},
                }
                if not step.continue_on_error:
                    job_failed = True
                    if first_error is None:
                        first_error = e
                continue
            except Cancelled as e:
                self._record(job, StepResult(name=name, status=StepStatus.CANCELLED, error=e.message))
                raise
            except CIError as e:
                e.job, e.step = job.name, name
                self.console.print_step_failed(job.name, name, e.message)
                self._record(job, StepResult(name=name, status=StepStatus.FAILED, error=str(e)))
                raise
            finally:
                step_token.dispose()

            self._record(job, StepResult(name=name, status=StepStatus.SUCCEEDED, outputs=dict(result.outputs)))
            for artifact in result.artifacts:
                self.store.add_artifact(job.name, artifact)
            contexts["steps"][step_id] = {
                "outcome": "success",
                "conclusion": "success",
                "outputs": dict(result.outputs),
            }

        self._set_job_outputs(job, contexts, job_failed)

        if first_error is not None:
            raise first_error

    def _set_job_outputs(self, job: Job, contexts: Dict[str, Any], job_failed: bool) -> None:
        if not job.outputs:
            return
        contexts["job"] = {"status": "failure" if job_failed else "success"}
        ectx = ExprContext(contexts=contexts, step_failed=job_failed)
        outputs = {k: str(render(v, ectx)) for k, v in job.outputs.items()}
        self.store.set_outputs(job.name, outputs)

    def _record(self, job: Job, result: StepResult) -> None:
        self.store.add_step_result(job.name, result)
