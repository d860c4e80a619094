import json
import textwrap

import pytest
from click.testing import CliRunner

from flowci.cli import cli

PASSING = textwrap.dedent("""
    name: local
    on: [push, workflow_dispatch]
    jobs:
      build:
        runs-on: ubuntu-latest
        outputs:
          version: ${{ steps.ver.outputs.version }}
        steps:
          - id: ver
            run: echo "version=1.0" >> "$GITHUB_OUTPUT"
      test:
        needs: build
        steps:
          - run: test "${{ needs.build.outputs.version }}" = "1.0"
""")

FAILING = textwrap.dedent("""
    on: workflow_dispatch
    jobs:
      build:
        steps:
          - run: exit 2
      deploy:
        needs: build
        steps:
          - run: echo never
""")


@pytest.fixture
def runner():
    return CliRunner()


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_run_success_writes_report(runner, tmp_path):
    wf = _write(tmp_path / "ci.yml", PASSING)
    report = tmp_path / "out" / "report.json"

    result = runner.invoke(cli, ["run", str(wf), "--no-services", "--workspace", str(tmp_path), "--report", str(report)])

    assert result.exit_code == 0, result.output
    assert "RUN SUCCEEDED" in result.output
    data = json.loads(report.read_text(encoding="utf-8"))
    assert data["status"] == "succeeded"
    assert {j["job"]: j["outputs"] for j in data["jobs"]}["build"] == {"version": "1.0"}


def test_run_failure_exits_non_zero(runner, tmp_path):
    wf = _write(tmp_path / "ci.yml", FAILING)

    result = runner.invoke(cli, ["run", str(wf), "--workspace", str(tmp_path)])

    assert result.exit_code == 1
    assert "RUN FAILED" in result.output
    assert "deploy: SKIPPED" in result.output


def test_run_rejects_unknown_inputs(runner, tmp_path):
    wf = _write(tmp_path / "ci.yml", FAILING)
    result = runner.invoke(cli, ["run", str(wf), "--workspace", str(tmp_path), "--input", "nope=1"])
    assert result.exit_code == 1
    assert "unknown input(s): nope" in result.output


def test_run_skips_when_branch_filter_does_not_match(runner, tmp_path):
    wf = _write(tmp_path / "ci.yml", "on:\n  push:\n    branches: [main]\njobs:\n  a:\n    steps:\n      - run: exit 1\n")
    result = runner.invoke(cli, ["run", str(wf), "--workspace", str(tmp_path), "--event", "push", "--branch", "feature/x"])
    assert result.exit_code == 0
    assert "filters do not match" in result.output


def test_run_discovers_the_only_workflow(runner, tmp_path, monkeypatch):
    _write(tmp_path / ".github" / "workflows" / "ci.yml", PASSING)
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(cli, ["-q", "run", "--workspace", str(tmp_path)])
    assert result.exit_code == 0, result.output

    by_name = runner.invoke(cli, ["-q", "run", "ci", "--workspace", str(tmp_path)])
    assert by_name.exit_code == 0, by_name.output


def test_run_with_several_workflows_needs_a_choice(runner, tmp_path, monkeypatch):
    _write(tmp_path / ".github" / "workflows" / "a.yml", PASSING)
    _write(tmp_path / ".github" / "workflows" / "b.yaml", PASSING)
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "Multiple workflow files found" in result.output


def test_missing_workflow(runner, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert runner.invoke(cli, ["run"]).exit_code == 1
    assert runner.invoke(cli, ["run", "nowhere.yml"]).exit_code == 1


def test_invalid_worker_count(runner, tmp_path):
    wf = _write(tmp_path / "ci.yml", PASSING)
    result = runner.invoke(cli, ["run", str(wf), "--workers", "0", "--workspace", str(tmp_path)])
    assert result.exit_code == 1


def test_cycle_is_reported(runner, tmp_path):
    wf = _write(tmp_path / "ci.yml", textwrap.dedent("""
        jobs:
          a: {needs: b, steps: [{run: ls}]}
          b: {needs: a, steps: [{run: ls}]}
    """))
    result = runner.invoke(cli, ["validate", str(wf)])
    assert result.exit_code == 1
    assert "CycleDetected" in result.output


def test_validate(runner, tmp_path):
    good = _write(tmp_path / "good.yml", PASSING)
    bad = _write(tmp_path / "bad.yml", "jobs:\n  a:\n    if: nope(1)\n    steps:\n      - run: ls\n")

    ok = runner.invoke(cli, ["validate", str(good)])
    assert ok.exit_code == 0
    assert "2 job(s), 2 step(s)" in ok.output

    broken = runner.invoke(cli, ["validate", str(bad)])
    assert broken.exit_code == 1
    assert "unknown function 'nope()'" in broken.output


def test_plan(runner, tmp_path):
    wf = _write(tmp_path / "ci.yml", PASSING.replace("on: [push, workflow_dispatch]", "on:\n  schedule:\n    - cron: '0 3 * * *'"))
    result = runner.invoke(cli, ["plan", str(wf)])

    assert result.exit_code == 0, result.output
    assert "=== Stage 1 ===" in result.output
    assert "=== Stage 2 ===" in result.output
    assert "Next scheduled run:" in result.output


def test_report_command(runner, tmp_path):
    wf = _write(tmp_path / "ci.yml", FAILING)
    report = tmp_path / "report.json"
    runner.invoke(cli, ["run", str(wf), "--workspace", str(tmp_path), "--report", str(report)])

    result = runner.invoke(cli, ["report", str(report)])
    assert result.exit_code == 1
    assert "build: FAILED" in result.output

    garbage = _write(tmp_path / "garbage.json", "{}")
    assert runner.invoke(cli, ["report", str(garbage)]).exit_code == 1
