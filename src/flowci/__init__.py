from .dsl import job, sh, uses, service, matrix, wf, JobBuilder, build
from .loader import load_workflow, parse_workflow
from .runner import run_workflow
from .model import Job, Step, Workflow, JobStatus

__all__ = [
    "job", "sh", "uses", "service", "matrix", "wf", "JobBuilder", "build",
    "load_workflow", "parse_workflow", "run_workflow",
    "Job", "Step", "Workflow", "JobStatus",
]
