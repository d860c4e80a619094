# services.py
from __future__ import annotations

import logging
import re
import shlex
import subprocess
import uuid
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .cancel import CancelToken
from .errors import ServiceUnhealthy, WorkflowError
from .model import HealthCheck, Job, Service

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Parsing `services:` blocks
# ---------------------------------------------------------------------

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(text: str) -> float:
    """'10s' -> 10.0, '500ms' -> 0.5, '1m' -> 60.0, '3' -> 3.0 (seconds)."""
    m = _DURATION_RE.match(text.strip())
    if not m:
        raise WorkflowError(f"invalid duration: {text!r}")
    return float(m.group(1)) * _UNITS[m.group(2)]


def parse_health_options(options: Optional[str]) -> Optional[HealthCheck]:
    """Pull the `--health-*` flags out of a service's docker `options:` string."""
    if not options:
        return None
    args = shlex.split(options)
    values: Dict[str, str] = {}
    i = 0
    while i < len(args):
        arg = args[i]
        if arg.startswith("--health-"):
            if "=" in arg:
                key, value = arg.split("=", 1)
            elif i + 1 < len(args):
                key, value = arg, args[i + 1]
                i += 1
            else:
                raise WorkflowError(f"service option {arg} needs a value")
            values[key[len("--health-"):]] = value
        i += 1

    if "cmd" not in values:
        return None
    return HealthCheck(
        cmd=values["cmd"],
        interval=parse_duration(values.get("interval", "10s")),
        timeout=parse_duration(values.get("timeout", "5s")),
        retries=int(values.get("retries", "3")),
    )


def parse_service(name: str, raw: Any) -> Service:
    if isinstance(raw, str):
        raw = {"image": raw}
    if not isinstance(raw, dict) or not raw.get("image"):
        raise WorkflowError(f"service '{name}' needs an image", service=name)
    options = raw.get("options")
    return Service(
        name=name,
        image=str(raw["image"]),
        env={str(k): str(v) for k, v in (raw.get("env") or {}).items()},
        ports=tuple(str(p) for p in (raw.get("ports") or [])),
        options=options,
        health=parse_health_options(options),
    )


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class ServiceBackend(Protocol):
    def start(self, service: Service, job: Job) -> str: ...

    def check(self, handle: str, service: Service) -> bool: ...

    def stop(self, handle: str) -> None: ...


class DockerBackend:
    """Runs services as detached docker containers and health-checks them via `docker exec`."""

    def _check_docker_available(self, job: Job, service: Service) -> None:
        try:
            subprocess.run(["docker", "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise ServiceUnhealthy(
                service.name,
                "Docker is not available. Install Docker and ensure the daemon is running.",
                job=job.name,
            )

    def start(self, service: Service, job: Job) -> str:
        self._check_docker_available(job, service)
        container = f"flowci-{service.name}-{uuid.uuid4().hex[:8]}"
        cmd = ["docker", "run", "-d", "--rm", "--name", container]
        for key, value in service.env.items():
            cmd.extend(["-e", f"{key}={value}"])
        for port in service.ports:
            cmd.extend(["-p", port])
        cmd.append(service.image)

        proc = subprocess.run(cmd, text=True, capture_output=True)
        if proc.returncode != 0:
            raise ServiceUnhealthy(
                service.name,
                f"failed to start {service.image}: {proc.stderr.strip()}",
                job=job.name,
            )
        return container

    def check(self, handle: str, service: Service) -> bool:
        if service.health is None:
            return True
        try:
            proc = subprocess.run(
                ["docker", "exec", handle, "sh", "-c", service.health.cmd],
                capture_output=True,
                timeout=service.health.timeout,
            )
        except subprocess.TimeoutExpired:
            return False
        return proc.returncode == 0

    def stop(self, handle: str) -> None:
        subprocess.run(["docker", "rm", "-f", handle], capture_output=True)


# ---------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------

class ServiceGate:
    """
    Starts a job's services and blocks until each reports healthy.

    Each service gets `retries` health checks spaced `interval` apart. A
    service that never passes fails the job with ServiceUnhealthy.
    """

    def __init__(self, backend: ServiceBackend):
        self.backend = backend

    def start(self, job: Job, token: CancelToken) -> List[Tuple[str, Service]]:
        started: List[Tuple[str, Service]] = []
        try:
            for service in job.services:
                token.raise_if_set(job=job.name)
                handle = self.backend.start(service, job)
                started.append((handle, service))
                self._wait_healthy(job, handle, service, token)
        except BaseException:
            self.stop(started)
            raise
        return started

    def _wait_healthy(self, job: Job, handle: str, service: Service, token: CancelToken) -> None:
        health = service.health
        if health is None:
            return
        for attempt in range(1, health.retries + 1):
            if self.backend.check(handle, service):
                logger.debug("service %s healthy after %d check(s)", service.name, attempt)
                return
            if attempt < health.retries and token.wait(health.interval):
                token.raise_if_set(job=job.name)
        raise ServiceUnhealthy(
            service.name,
            f"service '{service.name}' not healthy after {health.retries} checks",
            job=job.name,
        )

    def stop(self, started: List[Tuple[str, Service]]) -> None:
        for handle, service in reversed(started):
            try:
                self.backend.stop(handle)
            except Exception:
                logger.warning("failed to stop service %s (%s)", service.name, handle, exc_info=True)
