# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the run report (error_kind + message)
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Workflow definition errors (raised before anything runs)
# ----------------------------------------------------------------------

class WorkflowError(CIError):
    def __init__(self, message: str, **details: Any):
        super().__init__(kind="WorkflowError", message=message, details=details)


class DuplicateJob(WorkflowError):
    def __init__(self, names: List[str]):
        super().__init__(f"Duplicate job names found: {names}")
        self.kind = "DuplicateJob"
        self.names = names


class UnknownDependency(WorkflowError):
    def __init__(self, job: str, missing: str, known: List[str]):
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'",
            known=known,
        )
        self.kind = "UnknownDependency"
        self.job = job
        self.missing = missing


class CycleDetected(WorkflowError):
    def __init__(self, cycle: List[str]):
        super().__init__("Job dependencies form a cycle: " + " -> ".join(cycle))
        self.kind = "CycleDetected"
        self.cycle = cycle


class InvalidInput(WorkflowError):
    def __init__(self, message: str, **details: Any):
        super().__init__(message, **details)
        self.kind = "InvalidInput"


# ----------------------------------------------------------------------
# Expression errors
# ----------------------------------------------------------------------

class UnsupportedExpression(CIError):
    def __init__(self, message: str, expression: str = ""):
        super().__init__(
            kind="UnsupportedExpression",
            message=message,
            details={"expression": expression} if expression else {},
        )
        self.expression = expression


# ----------------------------------------------------------------------
# Execution errors
# ----------------------------------------------------------------------

class StepFailed(CIError):
    def __init__(
        self,
        job: str,
        step: str,
        message: str,
        *,
        exit_code: Optional[int] = None,
        cmd: Optional[str] = None,
    ):
        details: Dict[str, Any] = {}
        if exit_code is not None:
            details["exit_code"] = exit_code
        if cmd:
            details["cmd"] = cmd
        super().__init__(kind="StepFailed", message=message, job=job, step=step, details=details)
        self.exit_code = exit_code


class ExternalActionError(CIError):
    """Opaque failure surfaced from a step's external action call."""

    def __init__(self, action: str, message: str, *, job: Optional[str] = None, step: Optional[str] = None):
        super().__init__(
            kind="ExternalActionError",
            message=message,
            job=job,
            step=step,
            details={"action": action},
        )
        self.action = action


class Timeout(CIError):
    def __init__(self, message: str, *, job: Optional[str] = None, step: Optional[str] = None):
        super().__init__(kind="Timeout", message=message, job=job, step=step)


class Cancelled(CIError):
    def __init__(self, message: str = "run cancelled", *, job: Optional[str] = None, step: Optional[str] = None):
        super().__init__(kind="Cancelled", message=message, job=job, step=step)


class ServiceUnhealthy(CIError):
    def __init__(self, service: str, message: str, *, job: Optional[str] = None):
        super().__init__(
            kind="ServiceUnhealthy",
            message=message,
            job=job,
            details={"service": service},
        )
        self.service = service


class ArtifactError(CIError):
    def __init__(self, name: str, message: str):
        super().__init__(kind="ArtifactError", message=message, details={"artifact": name})
        self.name = name


class InvalidTransition(CIError):
    def __init__(self, job: str, current: str, target: str):
        super().__init__(
            kind="InvalidTransition",
            message=f"cannot move job from {current} to {target}",
            job=job,
        )
