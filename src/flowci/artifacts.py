# artifacts.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import ArtifactError
from .model import Artifact


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def resolve_paths(workspace: Path, patterns: Iterable[str]) -> List[str]:
    """
    Expand artifact `path` patterns into concrete files relative to the workspace.
    Supports:
      - file path: "coverage.xml"
      - dir path:  "reports/"   (every file below it)
      - glob:      "**/test-results.xml"
    Order is stable and duplicates are dropped.
    """
    out: List[str] = []
    seen = set()
    for pat in patterns:
        pat = pat.strip()
        if not pat or pat.startswith("!"):
            continue
        p = workspace / pat
        if p.is_file():
            matches = [p]
        elif p.is_dir():
            matches = sorted(f for f in p.rglob("*") if f.is_file())
        else:
            try:
                matches = sorted(m for m in workspace.glob(pat) if m.is_file())
            except (ValueError, NotImplementedError):
                matches = []
        for m in matches:
            rel = _relpath(m, workspace)
            if rel not in seen:
                seen.add(rel)
                out.append(rel)

    excluded = [pat.strip()[1:] for pat in patterns if pat.strip().startswith("!")]
    if excluded:
        out = [rel for rel in out if not any(Path(rel).match(e) for e in excluded)]
    return out


class ArtifactStore:
    """
    In-process artifact registry for one run: name -> Artifact.

    Artifacts are references to files in the workspace. Once uploaded an
    artifact is immutable; a second upload under the same name fails.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._artifacts: Dict[str, Artifact] = {}

    def upload(self, name: str, paths: Iterable[str], job: str) -> Artifact:
        artifact = Artifact(name=name, paths=tuple(paths), job=job)
        with self._lock:
            if name in self._artifacts:
                raise ArtifactError(name, f"artifact '{name}' already uploaded by job '{self._artifacts[name].job}'")
            self._artifacts[name] = artifact
        return artifact

    def get(self, name: str) -> Artifact:
        with self._lock:
            artifact = self._artifacts.get(name)
        if artifact is None:
            raise ArtifactError(name, f"artifact '{name}' not found")
        return artifact

    def find(self, name: str) -> Optional[Artifact]:
        with self._lock:
            return self._artifacts.get(name)

    def all(self) -> List[Artifact]:
        with self._lock:
            return list(self._artifacts.values())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._artifacts)
