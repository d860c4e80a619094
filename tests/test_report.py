import json

import pytest

from flowci.errors import WorkflowError
from flowci.model import JobStatus, RunRecord, StepResult, StepStatus
from flowci.report import dump_report, dumps, load_report, parse_report
from flowci.scheduler import RunResult


def _result():
    build = RunRecord(
        job="build",
        status=JobStatus.SUCCEEDED,
        started_at=10.0,
        finished_at=12.5,
        outputs={"version": "1.2"},
        artifacts=["dist"],
        steps=[
            StepResult(name="lint", status=StepStatus.FAILED, error="StepFailed: exit 1", continue_on_error=True),
            StepResult(name="package", status=StepStatus.SUCCEEDED, outputs={"version": "1.2"}),
        ],
    )
    deploy = RunRecord(job="deploy", status=JobStatus.SKIPPED, finished_at=12.6)
    return RunResult(workflow="release", status="succeeded", records={"build": build, "deploy": deploy},
                     started_at=9.0, finished_at=13.0)


def test_report_layout():
    data = json.loads(dumps(_result()))
    assert data["version"] == 1
    assert data["status"] == "succeeded"
    assert [j["job"] for j in data["jobs"]] == ["build", "deploy"]

    build = data["jobs"][0]
    assert build["duration"] == 2.5
    assert build["steps"][0] == {
        "name": "lint",
        "status": "failed",
        "outputs": {},
        "error": "StepFailed: exit 1",
        "continue_on_error": True,
    }
    assert data["jobs"][1]["duration"] is None


def test_report_file_round_trip(tmp_path):
    out = dump_report(_result(), tmp_path / "reports" / "run.json")
    loaded = load_report(out)

    assert loaded.ok
    assert loaded.duration == 4.0
    assert loaded.records == _result().records


@pytest.mark.parametrize("text", ["not json", "[]", '{"workflow": "x"}', '{"workflow": "x", "status": "ok", "jobs": [{"job": "a", "status": "exploded"}]}'])
def test_malformed_reports(text):
    with pytest.raises(WorkflowError):
        parse_report(text)
