# context.py
from __future__ import annotations

import platform
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

from .model import Job, JobStatus, RunRecord, Workflow

# RunRecord status -> the `result` string expressions see
RESULTS = {
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.SKIPPED: "skipped",
    JobStatus.CANCELLED: "cancelled",
}

_RUNNER_OS = {"Linux": "Linux", "Darwin": "macOS", "Windows": "Windows"}


def job_result(job: Job, record: RunRecord) -> str:
    result = RESULTS.get(record.status, "")
    # a job allowed to fail does not fail its dependents
    if result == "failure" and job.continue_on_error:
        return "success"
    return result


def strategy_context(job: Job, jobs: Mapping[str, Job]) -> Dict[str, Any]:
    """`strategy.*` for a job; instances of one matrix template share job-total."""
    siblings = [n for n, j in jobs.items() if j.template_name == job.template_name]
    return {
        "job-index": siblings.index(job.name) if job.name in siblings else 0,
        "job-total": len(siblings) or 1,
        "fail-fast": job.fail_fast,
        "max-parallel": job.max_parallel,
    }


def aggregate_result(results: Iterable[str]) -> str:
    results = list(results)
    if any(r == "failure" for r in results):
        return "failure"
    if any(r == "cancelled" for r in results):
        return "cancelled"
    if results and all(r == "skipped" for r in results):
        return "skipped"
    return "success"


@dataclass
class RunContext:
    """Read-only, run-wide values every expression can see."""
    workflow: Workflow
    event: str = "workflow_dispatch"
    inputs: Dict[str, Any] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    github: Dict[str, Any] = field(default_factory=dict)
    vars: Dict[str, str] = field(default_factory=dict)
    workspace: Path = Path(".")
    run_id: str = field(default_factory=lambda: str(time.time_ns() // 1000))
    run_number: int = 1

    def github_context(self) -> Dict[str, Any]:
        ctx = {
            "event_name": self.event,
            "workflow": self.workflow.name,
            "workspace": str(self.workspace),
            "server_url": "https://github.com",
            "run_id": self.run_id,
            "run_number": self.run_number,
            "run_attempt": 1,
        }
        ctx.update(self.github)
        return ctx

    def runner_context(self, job: Job) -> Dict[str, Any]:
        return {
            "os": _RUNNER_OS.get(platform.system(), platform.system()),
            "arch": platform.machine(),
            "name": "flowci",
            "label": job.runs_on or "",
        }

    def needs_context(self, job: Job, jobs: Mapping[str, Job], records: Mapping[str, RunRecord]) -> Dict[str, Any]:
        """
        `needs.<id>.result` / `needs.<id>.outputs`. Matrix instances are
        visible under their own name and aggregated under the template id.
        """
        ctx: Dict[str, Any] = {}
        by_template: Dict[str, List[str]] = {}
        for dep in job.needs:
            dep_job = jobs[dep]
            rec = records[dep]
            ctx[dep] = {"result": job_result(dep_job, rec), "outputs": dict(rec.outputs)}
            if dep_job.template is not None:
                by_template.setdefault(dep_job.template, []).append(dep)

        for template, names in by_template.items():
            outputs: Dict[str, str] = {}
            for n in names:
                outputs.update(ctx[n]["outputs"])
            ctx[template] = {
                "result": aggregate_result(ctx[n]["result"] for n in names),
                "outputs": outputs,
            }
        return ctx

    def job_contexts(
        self,
        job: Job,
        jobs: Mapping[str, Job],
        records: Mapping[str, RunRecord],
    ) -> Dict[str, Any]:
        env = dict(self.workflow.env)
        env.update(job.env)
        return {
            "github": self.github_context(),
            "env": env,
            "vars": dict(self.vars),
            "inputs": dict(self.inputs),
            "secrets": dict(self.secrets),
            "matrix": dict(job.matrix),
            "strategy": strategy_context(job, jobs),
            "needs": self.needs_context(job, jobs, records),
            "runner": self.runner_context(job),
            "job": {"status": "success"},
            "steps": {},
        }
