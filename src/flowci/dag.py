# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import CycleDetected, DuplicateJob, UnknownDependency
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Index the `needs` edges of `jobs`.

    Returns (adj, indeg): adj maps each job to the jobs that need it, indeg
    counts how many needs each job has. Job names must be unique and every
    need must name a job in the list.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJob(dupes)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise UnknownDependency(job.name, dep, sorted(name_set))
            # edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def find_cycle(jobs: Iterable[Job]) -> List[str]:
    """
    Return one dependency cycle as a path whose first node is repeated at
    the end, or [] if the graph is acyclic.
    """
    needs = {j.name: list(j.needs) for j in jobs}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in needs}

    for root in needs:
        if color[root] != WHITE:
            continue
        # iterative DFS; stack holds (node, iterator over its needs)
        path: List[str] = [root]
        color[root] = GREY
        stack = [iter(needs[root])]
        while stack:
            advanced = False
            for dep in stack[-1]:
                if dep not in color:
                    continue
                if color[dep] == GREY:
                    start = path.index(dep)
                    return path[start:] + [dep]
                if color[dep] == WHITE:
                    color[dep] = GREY
                    path.append(dep)
                    stack.append(iter(needs[dep]))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = BLACK
                stack.pop()
    return []


def topo_order(jobs: Iterable[Job]) -> List[str]:
    """
    Kahn's algorithm. Ties are broken by declaration order so the result is
    deterministic. Raises CycleDetected / UnknownDependency / DuplicateJob.
    """
    jobs = list(jobs)
    adj, indeg = build_dag(jobs)
    position = {j.name: i for i, j in enumerate(jobs)}
    indeg = dict(indeg)

    q = deque(j.name for j in jobs if indeg[j.name] == 0)
    order: List[str] = []

    while q:
        node = q.popleft()
        order.append(node)
        for child in sorted(adj[node], key=position.__getitem__):
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if len(order) != len(jobs):
        raise CycleDetected(find_cycle(jobs))

    return order


def topo_levels(jobs: Iterable[Job]) -> List[List[str]]:
    """
    Group jobs into stages: every job in a stage only needs jobs from
    earlier stages. Used by `flowci plan`.
    """
    jobs = list(jobs)
    adj, indeg = build_dag(jobs)
    position = {j.name: i for i, j in enumerate(jobs)}
    indeg = dict(indeg)

    level = [j.name for j in jobs if indeg[j.name] == 0]
    levels: List[List[str]] = []
    processed = 0

    while level:
        levels.append(level)
        processed += len(level)
        nxt: List[str] = []
        for node in level:
            for child in adj[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        level = sorted(nxt, key=position.__getitem__)

    if processed != len(jobs):
        raise CycleDetected(find_cycle(jobs))

    return levels
