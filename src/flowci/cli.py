# cli.py
from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import click

from .config import RunConfig
from .dag import topo_levels
from .errors import CIError
from .git import changed_files_for_pr, current_ref, github_facts
from .loader import YAML_SUFFIXES, check_expressions, load_workflow
from .model import Workflow
from .report import dump_report, load_report
from .runner import run_workflow
from .triggers import next_scheduled_run, should_run
from .ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130

WORKFLOW_DIR = Path(".github") / "workflows"


def find_workflow_files(root: Path = Path(".")) -> List[Path]:
    """
    Find candidate workflow files under `root`:
      .github/workflows/*.yml|*.yaml
      flowci_workflow.py and other *_workflow.py files
    """
    found: List[Path] = []
    wf_dir = root / WORKFLOW_DIR
    if wf_dir.is_dir():
        for suffix in YAML_SUFFIXES:
            found.extend(wf_dir.glob(f"*{suffix}"))
    found.extend(root.glob("*_workflow.py"))
    return sorted(set(found))


def discover_workflow(workflow_arg: Optional[str]) -> Path:
    """
    Resolve the workflow file from the CLI argument, or discover the only
    one present. Exits with status 1 when none or several are found.
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            # `flowci run ci-pr` -> .github/workflows/ci-pr.yml
            for candidate in (WORKFLOW_DIR / f"{workflow_arg}{s}" for s in YAML_SUFFIXES):
                if candidate.exists():
                    return candidate
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify an existing file:\n  flowci run .github/workflows/ci.yml",
            )
            sys.exit(EXIT_FAILED)
        return workflow_path

    workflow_files = find_workflow_files()

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {WORKFLOW_DIR}/*.yml", "  *_workflow.py"],
            suggestion="Create a workflow file or specify one explicitly:\n  flowci run path/to/workflow.yml",
        )
        sys.exit(EXIT_FAILED)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  flowci run {workflow_files[0]}",
        )
        sys.exit(EXIT_FAILED)

    return workflow_files[0]


def _pairs(values: Iterable[str], what: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=what)
        key, value = item.split("=", 1)
        out[key.strip()] = value
    return out


def _load(ctx: click.Context, workflow_arg: Optional[str], config: Optional[RunConfig] = None) -> Tuple[Path, Workflow]:
    console = get_console()
    path = discover_workflow(workflow_arg)
    config = config or RunConfig.from_env()
    console.print_debug(f"Loading workflow {path}")
    try:
        return path, load_workflow(path, default_timeout_minutes=config.default_timeout_minutes)
    except CIError as e:
        console.print_error("Invalid workflow", f"Could not load workflow from {path}", details=str(e).splitlines())
    except Exception as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
    sys.exit(EXIT_FAILED)


def _base_branch(compare_ref: str) -> str:
    """origin/main -> main"""
    return compare_ref.split("/", 1)[1] if "/" in compare_ref else compare_ref


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, step output and debug logs)",
)
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only print failures and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """flowci: run CI workflow files locally."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
@click.option("--workers", default=None, type=int, help="Max jobs running at once (default: unbounded)")
@click.option("--timeout", default=None, type=float, help="Cancel the whole run after this many seconds")
@click.option("--event", default="workflow_dispatch", show_default=True, help="Triggering event name")
@click.option("--branch", default=None, help="Branch the event happened on (push) or targets (pull_request)")
@click.option("--input", "inputs", multiple=True, metavar="NAME=VALUE", help="workflow_dispatch input")
@click.option("--secret", "secrets", multiple=True, metavar="NAME=VALUE", help="Secret made available as secrets.NAME")
@click.option("--secret-env", "secret_env", multiple=True, metavar="NAME", help="Read secret NAME from the environment")
@click.option("--var", "vars_", multiple=True, metavar="NAME=VALUE", help="Value made available as vars.NAME")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write a JSON run report")
@click.option("--stub-actions", is_flag=True, default=False, help="Succeed (no-op) for actions with no handler")
@click.option("--services/--no-services", default=True, show_default=True, help="Start job service containers")
@click.option("--workspace", default=None, type=click.Path(file_okay=False), help="Working directory for steps")
@click.option("--shell", default=None, help="Default shell for run steps")
@click.option("--git-diff/--no-git-diff", default=False, help="Match push/pull_request path filters against git changes")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.pass_context
def run(
    ctx, workflow, workers, timeout, event, branch, inputs, secrets, secret_env, vars_,
    report_path, stub_actions, services, workspace, shell, git_diff, compare_ref,
):
    """Run a workflow."""
    console = get_console()

    try:
        config = RunConfig.from_env().override(
            max_workers=workers,
            run_timeout=timeout,
            workspace=Path(workspace) if workspace else None,
            shell=shell,
            stub_actions=True if stub_actions else None,
            services=services,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_FAILED)

    workflow_path, wf = _load(ctx, workflow, config)

    secret_values = _pairs(secrets, "--secret")
    for name in secret_env:
        if name not in os.environ:
            console.print_warning(f"secret {name} is not set in the environment")
            continue
        secret_values[name] = os.environ[name]

    # ---- trigger filters ----
    if wf.trigger(event) is None:
        console.print_warning(f"{workflow_path.name} does not declare an '{event}' trigger; running anyway")
    elif event in ("push", "pull_request"):
        files = None
        if git_diff:
            try:
                _head, files = changed_files_for_pr(compare_ref, cwd=config.workspace)
            except (subprocess.CalledProcessError, FileNotFoundError) as e:
                console.print_warning(f"git diff unavailable ({e}); path filters ignored")
        if branch is None:
            try:
                branch = _base_branch(compare_ref) if event == "pull_request" else current_ref(config.workspace)
            except (subprocess.CalledProcessError, FileNotFoundError):
                branch = None
        if not should_run(wf, event, branch=branch, changed_files=files):
            console.print_info(f"{wf.name}: '{event}' filters do not match (branch={branch}); nothing to run")
            sys.exit(EXIT_OK)

    github = github_facts(config.workspace)
    if branch:
        github.setdefault("ref_name", branch)

    try:
        result = run_workflow(
            wf,
            config,
            inputs=_pairs(inputs, "--input"),
            secrets=secret_values,
            vars=_pairs(vars_, "--var"),
            event=event,
            github=github,
            console=console,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except CIError as e:
        console.print_error("Run aborted", e.message, details=str(e).splitlines()[1:])
        sys.exit(EXIT_FAILED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if report_path:
        out = dump_report(result, report_path)
        console.print_info(f"Report written to {out}")

    sys.exit(EXIT_OK if result.ok else EXIT_FAILED)


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def plan(ctx, workflow):
    """Print the execution stages of a workflow without running it."""
    console = get_console()
    _path, wf = _load(ctx, workflow)

    console.print_header(f"{wf.name} ({len(wf.jobs)} jobs)")
    if wf.triggers:
        console.print_info("Triggers: " + ", ".join(t.event for t in wf.triggers))
    console.print_plan(topo_levels(wf.job_list))

    conditional = [j for j in wf.job_list if j.if_]
    for j in conditional:
        console.print_info(f"  {j.name}: if {j.if_}")

    nxt = next_scheduled_run(wf)
    if nxt is not None:
        console.print_info(f"Next scheduled run: {nxt.isoformat()}")


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow file without running it."""
    console = get_console()
    path, wf = _load(ctx, workflow)

    problems = check_expressions(wf)
    if problems:
        console.print_error("Invalid expressions", f"{path} has {len(problems)} problem(s)", details=problems)
        sys.exit(EXIT_FAILED)

    console.print_info(f"✓ {path}: {len(wf.jobs)} job(s), {sum(len(j.steps) for j in wf.job_list)} step(s)")


@cli.command()
@click.argument("report_file", type=click.Path(exists=True, dir_okay=False))
def report(report_file):
    """Summarize a JSON run report written by `flowci run --report`."""
    console = get_console()
    try:
        result = load_report(report_file)
    except CIError as e:
        console.print_error("Invalid report", e.message)
        sys.exit(EXIT_FAILED)

    console.print_header(f"{result.workflow}: {result.status}")
    console.print_results(result.status, result.records.values())
    sys.exit(EXIT_OK if result.ok else EXIT_FAILED)


if __name__ == "__main__":
    cli()
