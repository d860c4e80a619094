# model.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


DEFAULT_TIMEOUT_MINUTES = 360


class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """A single action (`uses`) or command (`run`) inside a CI job."""
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    id: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    if_: Optional[str] = None
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None
    working_directory: Optional[str] = None
    shell: Optional[str] = None

    @property
    def action(self) -> str:
        """Registry key used to dispatch this step."""
        if self.uses:
            return self.uses
        return "run"


@dataclass(frozen=True)
class HealthCheck:
    cmd: str
    interval: float = 10.0
    timeout: float = 5.0
    retries: int = 3


@dataclass(frozen=True)
class Service:
    """A sidecar container that must be healthy before the job's steps run."""
    name: str
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    ports: Tuple[str, ...] = ()
    options: Optional[str] = None
    health: Optional[HealthCheck] = None


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + run metadata.

    `name` is the job id used in `needs`. Matrix instances carry the id of
    their template in `template` and their combination in `matrix`.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    display_name: Optional[str] = None
    if_: Optional[str] = None
    runs_on: Optional[str] = None
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    continue_on_error: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    services: Tuple[Service, ...] = ()
    matrix: Dict[str, Any] = field(default_factory=dict)
    template: Optional[str] = None
    max_parallel: Optional[int] = None
    fail_fast: bool = True

    @property
    def template_name(self) -> str:
        return self.template or self.name

    def with_needs(self, needs: Tuple[str, ...]) -> "Job":
        return replace(self, needs=tuple(needs))


@dataclass(frozen=True)
class Trigger:
    """One entry under `on:`; `config` holds the event's raw filter block."""
    event: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Workflow:
    name: str
    jobs: Dict[str, Job]
    triggers: Tuple[Trigger, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None

    def trigger(self, event: str) -> Optional[Trigger]:
        for t in self.triggers:
            if t.event == event:
                return t
        return None

    @property
    def job_list(self) -> List[Job]:
        return list(self.jobs.values())


@dataclass(frozen=True)
class Artifact:
    name: str
    paths: Tuple[str, ...]
    job: str


@dataclass
class StepResult:
    name: str
    status: StepStatus
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    continue_on_error: bool = False


@dataclass
class RunRecord:
    """
    Outcome record for one job within one run.

    Only the state store mutates these; everybody else reads snapshots.
    """
    job: str
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)
    steps: List[StepResult] = field(default_factory=list)
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def copy(self) -> "RunRecord":
        return RunRecord(
            job=self.job,
            status=self.status,
            started_at=self.started_at,
            finished_at=self.finished_at,
            outputs=dict(self.outputs),
            artifacts=list(self.artifacts),
            steps=[replace(s, outputs=dict(s.outputs)) for s in self.steps],
            error_kind=self.error_kind,
            error=self.error,
        )
