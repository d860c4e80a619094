import textwrap

import pytest
import yaml

from flowci.errors import CycleDetected, UnknownDependency, WorkflowError
from flowci.loader import check_expressions, load_workflow, parse_step, parse_workflow

PR_PIPELINE = textwrap.dedent("""
    name: PR Validation Pipeline

    on:
      pull_request:
        branches: [ main, develop ]
        paths:
          - 'src/**'
          - 'pyproject.toml'

    env:
      PYTHON_VERSION: '3.10'
      DOCKER_BUILDKIT: 1

    jobs:
      code-quality:
        name: Static Analysis & Linting
        runs-on: ubuntu-latest
        timeout-minutes: 15
        steps:
          - uses: actions/checkout@v4
            with:
              fetch-depth: 0
          - name: Set up Python ${{ env.PYTHON_VERSION }}
            uses: actions/setup-python@v5
            with:
              python-version: ${{ env.PYTHON_VERSION }}
          - name: Run code style checks
            run: |
              black --check src tests
              flake8 src tests

      unit-tests:
        runs-on: ubuntu-latest
        needs: code-quality
        strategy:
          matrix:
            os: [ubuntu-latest, macos-latest]
            python: ['3.10', '3.11']
        steps:
          - run: pytest tests/unit

      integration-tests:
        runs-on: ubuntu-latest
        needs: unit-tests
        services:
          postgres:
            image: postgres:15-alpine
            env:
              POSTGRES_PASSWORD: postgres
            ports:
              - 5432:5432
            options: >-
              --health-cmd pg_isready
              --health-interval 10s
              --health-timeout 5s
              --health-retries 5
        steps:
          - run: pytest tests/integration

      report:
        runs-on: ubuntu-latest
        needs:
          - code-quality
          - unit-tests
          - integration-tests
        if: always()
        steps:
          - run: echo done
""")


@pytest.fixture
def pipeline():
    return parse_workflow(yaml.safe_load(PR_PIPELINE), "ci-pr.yml")


def test_workflow_header(pipeline):
    assert pipeline.name == "PR Validation Pipeline"
    assert pipeline.env == {"PYTHON_VERSION": "3.10", "DOCKER_BUILDKIT": "1"}
    trigger = pipeline.trigger("pull_request")
    assert trigger.config["branches"] == ["main", "develop"]
    assert pipeline.trigger("push") is None


def test_job_fields(pipeline):
    quality = pipeline.jobs["code-quality"]
    assert quality.display_name == "Static Analysis & Linting"
    assert quality.runs_on == "ubuntu-latest"
    assert quality.timeout_minutes == 15
    assert [s.name for s in quality.steps] == [
        "Run actions/checkout@v4",
        "Set up Python ${{ env.PYTHON_VERSION }}",
        "Run code style checks",
    ]
    assert quality.steps[0].with_ == {"fetch-depth": 0}
    assert quality.steps[2].run.startswith("black --check")


def test_matrix_job_expands_and_dependents_need_every_instance(pipeline):
    instances = [
        "unit-tests (ubuntu-latest, 3.10)",
        "unit-tests (ubuntu-latest, 3.11)",
        "unit-tests (macos-latest, 3.10)",
        "unit-tests (macos-latest, 3.11)",
    ]
    assert "unit-tests" not in pipeline.jobs
    for name in instances:
        assert pipeline.jobs[name].needs == ("code-quality",)
        assert pipeline.jobs[name].template == "unit-tests"
    assert pipeline.jobs["integration-tests"].needs == tuple(instances)
    assert pipeline.jobs["report"].needs == ("code-quality", *instances, "integration-tests")
    assert pipeline.jobs["report"].if_ == "always()"


def test_services_and_health_options(pipeline):
    (postgres,) = pipeline.jobs["integration-tests"].services
    assert postgres.image == "postgres:15-alpine"
    assert postgres.ports == ("5432:5432",)
    assert postgres.env == {"POSTGRES_PASSWORD": "postgres"}
    assert postgres.health.cmd == "pg_isready"
    assert postgres.health.interval == 10.0
    assert postgres.health.timeout == 5.0
    assert postgres.health.retries == 5


def test_default_step_name_uses_first_line_of_run():
    step = parse_step({"run": "make lint\nmake test"}, 0, "build")
    assert step.name == "Run make lint"


def test_step_needs_exactly_one_of_uses_or_run():
    with pytest.raises(WorkflowError):
        parse_step({"uses": "actions/checkout@v4", "run": "ls"}, 0, "build")
    with pytest.raises(WorkflowError):
        parse_step({"name": "nothing"}, 0, "build")


def test_matrix_continue_on_error_is_decided_per_instance():
    data = yaml.safe_load(textwrap.dedent("""
        on: push
        jobs:
          test:
            continue-on-error: ${{ matrix.experimental }}
            strategy:
              matrix:
                py: ['3.11']
                experimental: [false]
                include:
                  - py: '3.13'
                    experimental: true
            steps:
              - run: pytest
    """))
    wf = parse_workflow(data)
    assert wf.jobs["test (3.11, false)"].continue_on_error is False
    assert wf.jobs["test (3.13, true)"].continue_on_error is True


def test_strategy_options():
    data = yaml.safe_load(textwrap.dedent("""
        on: [push]
        jobs:
          test:
            strategy:
              fail-fast: false
              max-parallel: 2
              matrix:
                n: [1, 2, 3]
            steps:
              - run: echo ${{ matrix.n }}
    """))
    jobs = parse_workflow(data).job_list
    assert [j.name for j in jobs] == ["test (1)", "test (2)", "test (3)"]
    assert all(j.max_parallel == 2 and j.fail_fast is False for j in jobs)


@pytest.mark.parametrize(
    "jobs_yaml",
    [
        "build: {steps: []}",
        "build: {uses: org/repo/.github/workflows/x.yml@main}",
        "build: {timeout-minutes: -1, steps: [{run: ls}]}",
        "build: {strategy: {max-parallel: 0, matrix: {a: [1]}}, steps: [{run: ls}]}",
    ],
)
def test_invalid_jobs(jobs_yaml):
    data = yaml.safe_load("on: push\njobs:\n  " + jobs_yaml)
    with pytest.raises(WorkflowError):
        parse_workflow(data)


def test_graph_errors_surface_at_load_time():
    with pytest.raises(UnknownDependency):
        parse_workflow(yaml.safe_load("jobs: {a: {needs: b, steps: [{run: ls}]}}"))
    with pytest.raises(CycleDetected):
        parse_workflow(yaml.safe_load(
            "jobs: {a: {needs: b, steps: [{run: ls}]}, b: {needs: a, steps: [{run: ls}]}}"
        ))


def test_load_yaml_file(tmp_path):
    path = tmp_path / "ci-pr.yml"
    path.write_text(PR_PIPELINE, encoding="utf-8")

    wf = load_workflow(path)
    assert wf.source == str(path.resolve())
    assert len(wf.jobs) == 7


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yml"
    path.write_text("jobs: [unclosed\n", encoding="utf-8")
    with pytest.raises(WorkflowError, match="Invalid YAML"):
        load_workflow(path)


def test_missing_and_unsupported_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "nope.yml")
    other = tmp_path / "workflow.toml"
    other.write_text("", encoding="utf-8")
    with pytest.raises(WorkflowError):
        load_workflow(other)


def test_load_python_workflow(tmp_path):
    path = tmp_path / "flowci_workflow.py"
    path.write_text(textwrap.dedent("""
        from flowci import job, sh, matrix, wf

        NAME = "dsl"
        ENV = {"MODE": "ci"}

        def workflow():
            return wf(
                job("lint", sh("ruff", "ruff check .")),
                matrix(py=["3.11", "3.12"]).expand(
                    job("test", sh("pytest", "pytest"), needs=["lint"])
                ),
                job("report", sh("done", "echo done"), needs=["test"]),
            )
    """), encoding="utf-8")

    wf = load_workflow(path)
    assert wf.name == "dsl"
    assert wf.env == {"MODE": "ci"}
    assert wf.trigger("workflow_dispatch") is not None
    assert wf.jobs["report"].needs == ("test (3.11)", "test (3.12)")


def test_python_workflow_must_define_jobs(tmp_path):
    path = tmp_path / "empty_workflow.py"
    path.write_text("X = 1\n", encoding="utf-8")
    with pytest.raises(WorkflowError):
        load_workflow(path)


def test_check_expressions_reports_bad_templates(pipeline):
    assert check_expressions(pipeline) == []

    data = yaml.safe_load(textwrap.dedent("""
        jobs:
          build:
            if: github.ref === 'main'
            steps:
              - name: echo
                run: echo ${{ matrix. }}
    """))
    problems = check_expressions(parse_workflow(data))
    assert len(problems) == 2
    assert problems[0].startswith("jobs.build.if:")
    assert problems[1].startswith("jobs.build.steps[echo].run:")
