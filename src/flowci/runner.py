# runner.py
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from .actions import ActionRegistry, default_registry
from .artifacts import ArtifactStore
from .cancel import CancelToken
from .config import RunConfig
from .context import RunContext
from .executor import StepExecutor
from .model import Workflow
from .scheduler import RunResult, Scheduler
from .services import DockerBackend, ServiceBackend, ServiceGate
from .state import RunStateStore
from .triggers import validate_dispatch_inputs
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

# local dev ---> flowci run ---> push ---> hosted CI


def run_workflow(
    workflow: Workflow,
    config: Optional[RunConfig] = None,
    *,
    registry: Optional[ActionRegistry] = None,
    inputs: Optional[Mapping[str, Any]] = None,
    secrets: Optional[Mapping[str, str]] = None,
    event: str = "workflow_dispatch",
    github: Optional[Mapping[str, Any]] = None,
    vars: Optional[Mapping[str, str]] = None,
    service_backend: Optional[ServiceBackend] = None,
    token: Optional[CancelToken] = None,
    console: Optional[Console] = None,
) -> RunResult:
    """
    Run one workflow end to end and return its RunResult.

    Wires a fresh RunStateStore, ArtifactStore and StepExecutor for this run
    only; nothing is shared between runs. Raises InvalidInput before
    anything runs if `inputs` do not match the workflow_dispatch
    declaration.
    """
    config = config or RunConfig.from_env()
    console = console or get_console()

    typed_inputs: Dict[str, Any] = validate_dispatch_inputs(workflow, inputs)
    workspace = config.workspace.expanduser().resolve()

    run = RunContext(
        workflow=workflow,
        event=event,
        inputs=typed_inputs,
        secrets=dict(secrets or {}),
        github=dict(github or {}),
        vars=dict(vars or {}),
        workspace=workspace,
    )

    store = RunStateStore(workflow.jobs)
    gate = ServiceGate(service_backend or DockerBackend()) if config.services else None
    executor = StepExecutor(
        registry or default_registry(stub_unknown=config.stub_actions),
        store,
        run,
        artifacts=ArtifactStore(),
        services=gate,
        shell=config.shell,
        console=console,
    )
    scheduler = Scheduler(
        workflow,
        executor,
        max_workers=config.max_workers,
        token=token,
        console=console,
    )

    console.print_run_started(workflow.name, len(workflow.jobs), event)
    logger.debug("workspace=%s max_workers=%s", workspace, config.max_workers)
    result = scheduler.run(timeout=config.run_timeout)
    console.print_results(result.status, result.records.values())
    return result
