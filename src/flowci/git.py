# git.py
# Thin wrapper around the Git CLI. The rest of flowci never shells out to
# git directly; pull_request path filters and the run's `github` context
# get their facts from here.

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


def _git(args: List[str], cwd: Optional[Path] = None) -> str:
    """
    Run `git <args>` and return stdout with surrounding whitespace removed.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError if git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(text: str) -> List[str]:
    return text.splitlines() if text else []


def repo_root(cwd: Optional[Path] = None) -> Path:
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[Path] = None) -> str:
    """Current branch name, or the HEAD sha when detached."""
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if ref == "HEAD":
        return head_sha(cwd)
    return ref


def remote_url(name: str = "origin", cwd: Optional[Path] = None) -> str:
    return _git(["remote", "get-url", name], cwd)


def is_dirty(cwd: Optional[Path] = None) -> bool:
    """Modified, staged or untracked files present."""
    return _git(["status", "--porcelain"], cwd) != ""


def merge_base(with_ref: str = "origin/main", cwd: Optional[Path] = None) -> str:
    return _git(["merge-base", "HEAD", with_ref], cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[Path] = None) -> List[str]:
    """Paths (relative to the repo root) that differ between two refs."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd))


def working_tree_changes(cwd: Optional[Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths."""
    files: Set[str] = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd)))
    return sorted(files)


def changed_files_for_pr(
    compare_ref: str = "origin/main",
    cwd: Optional[Path] = None,
) -> Tuple[Optional[str], List[str]]:
    """
    The change set a pull_request trigger is matched against.

    Returns (head, files):
      head  - HEAD sha when the tree is clean, None when it is dirty
      files - dirty tree: every uncommitted path
              clean tree: files changed since the merge-base with
              `compare_ref` (HEAD~1 when there is no such ref, every
              tracked file on the very first commit)
    """
    root = repo_root(cwd)

    if is_dirty(root):
        return None, working_tree_changes(root)

    try:
        base = merge_base(compare_ref, root)
    except subprocess.CalledProcessError:
        logger.debug("no merge-base with %s, falling back to HEAD~1", compare_ref)
        base = "HEAD~1"

    try:
        files = changed_files(base, "HEAD", root)
    except subprocess.CalledProcessError:
        files = _lines(_git(["ls-files"], root))

    return head_sha(root), files


def github_facts(cwd: Optional[Path] = None) -> dict:
    """Best-effort `github.*` values for the run context; missing facts are left out."""
    facts = {}
    for key, probe in (("sha", head_sha), ("ref_name", current_ref)):
        try:
            facts[key] = probe(cwd)
        except (subprocess.CalledProcessError, FileNotFoundError):
            logger.debug("git fact %s unavailable", key)
    try:
        url = remote_url("origin", cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return facts
    facts["repository"] = _repository_slug(url)
    return facts


def _repository_slug(url: str) -> str:
    """git@github.com:owner/repo.git / https://host/owner/repo -> owner/repo"""
    tail = url.rstrip("/")
    if tail.endswith(".git"):
        tail = tail[:-4]
    tail = tail.replace(":", "/")
    return "/".join(tail.split("/")[-2:])
