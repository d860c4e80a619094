# report.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Union

from .errors import WorkflowError
from .model import JobStatus, RunRecord, StepResult, StepStatus
from .scheduler import RunResult

REPORT_VERSION = 1


def step_to_dict(step: StepResult) -> Dict[str, Any]:
    return {
        "name": step.name,
        "status": step.status.value,
        "outputs": dict(step.outputs),
        "error": step.error,
        "continue_on_error": step.continue_on_error,
    }


def record_to_dict(record: RunRecord) -> Dict[str, Any]:
    return {
        "job": record.job,
        "status": record.status.value,
        "started_at": record.started_at,
        "finished_at": record.finished_at,
        "duration": record.duration,
        "outputs": dict(record.outputs),
        "artifacts": list(record.artifacts),
        "error_kind": record.error_kind,
        "error": record.error,
        "steps": [step_to_dict(s) for s in record.steps],
    }


def to_dict(result: RunResult) -> Dict[str, Any]:
    return {
        "version": REPORT_VERSION,
        "workflow": result.workflow,
        "status": result.status,
        "started_at": result.started_at,
        "finished_at": result.finished_at,
        "jobs": [record_to_dict(r) for r in result.records.values()],
    }


def record_from_dict(data: Dict[str, Any]) -> RunRecord:
    return RunRecord(
        job=data["job"],
        status=JobStatus(data["status"]),
        started_at=data.get("started_at"),
        finished_at=data.get("finished_at"),
        outputs={str(k): str(v) for k, v in (data.get("outputs") or {}).items()},
        artifacts=list(data.get("artifacts") or []),
        error_kind=data.get("error_kind"),
        error=data.get("error"),
        steps=[
            StepResult(
                name=s["name"],
                status=StepStatus(s["status"]),
                outputs=dict(s.get("outputs") or {}),
                error=s.get("error"),
                continue_on_error=bool(s.get("continue_on_error", False)),
            )
            for s in data.get("steps") or []
        ],
    )


def from_dict(data: Dict[str, Any]) -> RunResult:
    try:
        records = [record_from_dict(j) for j in data["jobs"]]
        return RunResult(
            workflow=data["workflow"],
            status=data["status"],
            records={r.job: r for r in records},
            started_at=data.get("started_at") or 0.0,
            finished_at=data.get("finished_at") or 0.0,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise WorkflowError(f"malformed run report: {e!r}") from e


def dumps(result: RunResult) -> str:
    return json.dumps(to_dict(result), indent=2, sort_keys=True)


def parse_report(text: str) -> RunResult:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise WorkflowError(f"run report is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise WorkflowError("run report must be a JSON object")
    return from_dict(data)


def dump_report(result: RunResult, path: Union[str, Path]) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(dumps(result) + "\n", encoding="utf-8")
    return out


def load_report(path: Union[str, Path]) -> RunResult:
    return parse_report(Path(path).read_text(encoding="utf-8"))
