# actions.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Union

from .artifacts import ArtifactStore, resolve_paths
from .cancel import CancelToken
from .errors import ArtifactError, Cancelled, ExternalActionError, StepFailed, Timeout
from .model import Job, Step
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Action contract
# ---------------------------------------------------------------------
# Every step is a call:  action(ctx) -> ActionResult | dict | None
#   - ctx.inputs are the step's `with:` values, already rendered
#   - a returned dict is taken as the step's outputs
#   - failure is signalled by raising StepFailed / ExternalActionError;
#     any other exception is wrapped into ExternalActionError
#   - long-running actions should watch ctx.token
# ---------------------------------------------------------------------


@dataclass
class ActionContext:
    job: Job
    step: Step
    inputs: Dict[str, str]
    env: Dict[str, str]
    workspace: Path
    token: CancelToken
    artifacts: ArtifactStore
    run: Optional[str] = None
    shell: str = "bash"
    console: Console = field(default_factory=get_console)


@dataclass
class ActionResult:
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)
    log: str = ""


ActionFn = Callable[[ActionContext], Union[ActionResult, Mapping[str, str], None]]


def split_ref(ref: str) -> tuple[str, Optional[str]]:
    """'actions/checkout@v4' -> ('actions/checkout', 'v4')."""
    if "@" in ref:
        name, version = ref.rsplit("@", 1)
        return name, version
    return ref, None


class ActionRegistry:
    """
    Maps action references (`uses:` values, or "run" for shell steps) to callables.

    Lookup order: exact reference ("owner/repo@v1"), then the reference
    without its version, then the fallback (if any).
    """

    def __init__(self, fallback: Optional[ActionFn] = None):
        self._actions: Dict[str, ActionFn] = {}
        self.fallback = fallback

    def register(self, ref: str, fn: ActionFn) -> None:
        self._actions[ref.lower()] = fn

    def action(self, ref: str) -> Callable[[ActionFn], ActionFn]:
        """Decorator form of register()."""
        def deco(fn: ActionFn) -> ActionFn:
            self.register(ref, fn)
            return fn
        return deco

    def lookup(self, ref: str) -> Optional[ActionFn]:
        key = ref.lower()
        if key in self._actions:
            return self._actions[key]
        name, _version = split_ref(key)
        if name in self._actions:
            return self._actions[name]
        return self.fallback

    def __contains__(self, ref: str) -> bool:
        return self.lookup(ref) is not None

    def invoke(self, ref: str, ctx: ActionContext) -> ActionResult:
        fn = self.lookup(ref)
        if fn is None:
            raise ExternalActionError(
                ref,
                f"no handler registered for action '{ref}' (run with --stub-actions to skip unknown actions)",
                job=ctx.job.name,
                step=ctx.step.name,
            )
        try:
            result = fn(ctx)
        except (StepFailed, ExternalActionError, Timeout, Cancelled, ArtifactError):
            raise
        except Exception as e:
            raise ExternalActionError(ref, f"{type(e).__name__}: {e}", job=ctx.job.name, step=ctx.step.name) from e

        if result is None:
            return ActionResult()
        if isinstance(result, ActionResult):
            return result
        return ActionResult(outputs={k: str(v) for k, v in dict(result).items()})


# ---------------------------------------------------------------------
# Built-in: shell `run:` steps
# ---------------------------------------------------------------------

SHELLS: Dict[str, List[str]] = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
    "sh": ["sh", "-e", "-c"],
    "python": ["python", "-c"],
    "pwsh": ["pwsh", "-command"],
}

OUTPUT_TAIL = 4000


def _shell_argv(shell: str, script: str) -> List[str]:
    if shell in SHELLS:
        return SHELLS[shell] + [script]
    # custom shell template: "perl {0}" style is not supported, treat as argv prefix
    return shell.split() + [script]


def parse_output_file(text: str) -> Dict[str, str]:
    """
    Parse a step output file. Supports `key=value` lines and the heredoc form

        key<<EOF
        multi
        line
        EOF
    """
    out: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delim = line.split("<<", 1)
            body: List[str] = []
            i += 1
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            out[key.strip()] = "\n".join(body)
        elif "=" in line:
            key, value = line.split("=", 1)
            out[key.strip()] = value
        i += 1
    return out


def run_shell(ctx: ActionContext) -> ActionResult:
    """Run an inline `run:` script in a subprocess, honouring the cancel token."""
    script = ctx.run or ""
    cwd = (ctx.workspace / (ctx.step.working_directory or ".")).resolve()
    if not cwd.exists():
        raise StepFailed(ctx.job.name, ctx.step.name, f"working-directory not found: {cwd}")

    fd, output_file = tempfile.mkstemp(prefix="flowci-output-")
    os.close(fd)

    env = os.environ.copy()
    env.update(ctx.env)
    env["GITHUB_OUTPUT"] = output_file
    env["GITHUB_WORKSPACE"] = str(ctx.workspace)
    env["CI"] = "true"

    argv = _shell_argv(ctx.step.shell or ctx.shell, script)
    logger.debug("job=%s step=%s argv=%s cwd=%s", ctx.job.name, ctx.step.name, argv[:-1], cwd)

    try:
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise StepFailed(ctx.job.name, ctx.step.name, f"shell not found: {argv[0]}", cmd=script) from e

        # poll so the cancel token is honoured while the command runs
        while True:
            try:
                stdout, _ = proc.communicate(timeout=0.2)
                break
            except subprocess.TimeoutExpired:
                if ctx.token.is_set():
                    proc.kill()
                    proc.communicate()
                    ctx.token.raise_if_set(job=ctx.job.name, step=ctx.step.name)

        stdout = stdout or ""
        ctx.console.print_step_output(ctx.job.name, stdout)

        if proc.returncode != 0:
            err = StepFailed(
                ctx.job.name,
                ctx.step.name,
                f"process exited with code {proc.returncode}",
                exit_code=proc.returncode,
                cmd=script,
            )
            err.details["output"] = stdout[-OUTPUT_TAIL:]
            raise err

        outputs = parse_output_file(Path(output_file).read_text(encoding="utf-8"))
        return ActionResult(outputs=outputs, log=stdout)
    finally:
        Path(output_file).unlink(missing_ok=True)


# ---------------------------------------------------------------------
# Built-in: artifacts
# ---------------------------------------------------------------------

def upload_artifact(ctx: ActionContext) -> ActionResult:
    name = ctx.inputs.get("name") or "artifact"
    patterns = [p for p in (ctx.inputs.get("path") or "").splitlines() if p.strip()]
    if not patterns:
        raise ExternalActionError("actions/upload-artifact", "input 'path' is required", job=ctx.job.name, step=ctx.step.name)

    files = resolve_paths(ctx.workspace, patterns)
    if not files:
        policy = (ctx.inputs.get("if-no-files-found") or "warn").lower()
        msg = f"no files found for artifact '{name}' with path: {', '.join(patterns)}"
        if policy == "error":
            raise ExternalActionError("actions/upload-artifact", msg, job=ctx.job.name, step=ctx.step.name)
        if policy == "warn":
            ctx.console.print_warning(msg)
        return ActionResult()

    ctx.artifacts.upload(name, files, ctx.job.name)
    return ActionResult(outputs={"artifact-name": name, "file-count": str(len(files))}, artifacts=[name])


def download_artifact(ctx: ActionContext) -> ActionResult:
    name = ctx.inputs.get("name")
    target = ctx.inputs.get("path")
    artifacts = [ctx.artifacts.get(name)] if name else ctx.artifacts.all()

    dest_root = (ctx.workspace / target).resolve() if target else ctx.workspace.resolve()
    for artifact in artifacts:
        if not target:
            # files already live in the shared workspace
            continue
        # without a name every artifact lands in its own directory
        dest = dest_root if name else dest_root / artifact.name
        for rel in artifact.paths:
            src = ctx.workspace / rel
            if not src.is_file():
                raise ArtifactError(artifact.name, f"file '{rel}' of artifact '{artifact.name}' no longer exists")
            out = dest / rel
            out.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, out)

    return ActionResult(outputs={"download-path": str(dest_root)})


def checkout(ctx: ActionContext) -> ActionResult:
    # the local workspace is already the checkout
    return ActionResult()


def stub_action(ctx: ActionContext) -> ActionResult:
    """Fallback for actions nobody registered: log and succeed."""
    ctx.console.print_info(f"[{ctx.job.name}] stubbed action {ctx.step.uses} (inputs: {sorted(ctx.inputs)})")
    return ActionResult()


def default_registry(*, stub_unknown: bool = False) -> ActionRegistry:
    registry = ActionRegistry(fallback=stub_action if stub_unknown else None)
    registry.register("run", run_shell)
    registry.register("actions/upload-artifact", upload_artifact)
    registry.register("actions/download-artifact", download_artifact)
    registry.register("actions/checkout", checkout)
    registry.register("flowci/sleep", sleep_action)
    return registry


def sleep_action(ctx: ActionContext) -> ActionResult:
    """`flowci/sleep` with `seconds:`; cancellable. Handy for timeout drills."""
    seconds = float(ctx.inputs.get("seconds") or 1)
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        if ctx.token.wait(min(0.05, max(0.0, deadline - time.monotonic()))):
            ctx.token.raise_if_set(job=ctx.job.name, step=ctx.step.name)
    return ActionResult()
