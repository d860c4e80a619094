# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .model import DEFAULT_TIMEOUT_MINUTES

ENV_PREFIX = "FLOWCI_"


def _int(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = env.get(key, "").strip()
    if not raw:
        return None
    value = int(raw)
    if value < 1:
        raise ValueError(f"{key} must be >= 1, got {raw}")
    return value


def _flag(env: Mapping[str, str], key: str) -> bool:
    return env.get(key, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RunConfig:
    """Run-wide settings. Defaults come from FLOWCI_* env vars; CLI options override."""
    max_workers: Optional[int] = None
    default_timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    workspace: Path = Path(".")
    shell: str = "bash"
    stub_actions: bool = False
    services: bool = True
    run_timeout: Optional[float] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RunConfig":
        env = os.environ if env is None else env
        timeout = env.get(ENV_PREFIX + "DEFAULT_TIMEOUT_MINUTES", "").strip()
        return cls(
            max_workers=_int(env, ENV_PREFIX + "MAX_WORKERS"),
            default_timeout_minutes=float(timeout) if timeout else DEFAULT_TIMEOUT_MINUTES,
            workspace=Path(env.get(ENV_PREFIX + "WORKSPACE") or "."),
            shell=env.get(ENV_PREFIX + "SHELL") or "bash",
            stub_actions=_flag(env, ENV_PREFIX + "STUB_ACTIONS"),
        )

    def override(self, **changes) -> "RunConfig":
        """Apply CLI overrides; None means "not given" and keeps the current value."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
