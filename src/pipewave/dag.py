# dag.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .errors import ConfigError, CycleError
from .model import Job


@dataclass(frozen=True)
class JobGraph:
    """
    Validated job graph.

    jobs:  name -> Job
    adj:   dep -> dependents
    waves: topological levels; every job's needs live in earlier waves
    """
    jobs: Dict[str, Job]
    adj: Dict[str, Set[str]]
    waves: Tuple[Tuple[str, ...], ...]

    def wave_of(self, name: str) -> int:
        for idx, wave in enumerate(self.waves):
            if name in wave:
                return idx
        raise KeyError(name)


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency + in-degree maps from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must run BEFORE this job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(
            kind="duplicate_job",
            message=f"Duplicate job names found: {dupes}",
            details={"jobs": dupes},
        )

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs or []:
            if need not in name_set:
                raise ConfigError(
                    kind="unknown_dependency",
                    message=f"Job '{job.name}' needs missing job '{need}'",
                    details={"known_jobs": sorted(name_set)},
                )
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def find_cycle(adj: Dict[str, Set[str]], nodes: Set[str]) -> Optional[List[str]]:
    """Return one cycle among `nodes` as [a, b, ..., a], or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in nodes}
    stack: List[str] = []

    def visit(n: str) -> Optional[List[str]]:
        color[n] = GREY
        stack.append(n)
        for child in sorted(adj.get(n, set()) & nodes):
            if color[child] == GREY:
                return stack[stack.index(child):] + [child]
            if color[child] == WHITE:
                found = visit(child)
                if found:
                    return found
        stack.pop()
        color[n] = BLACK
        return None

    for n in sorted(nodes):
        if color[n] == WHITE:
            found = visit(n)
            if found:
                return found
    return None


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (waves).
    Each wave can run in parallel. Names are sorted inside a wave so the
    partition is stable across runs.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    current = sorted(n for n, d in indeg.items() if d == 0)

    levels: List[List[str]] = []
    processed = 0

    while current:
        levels.append(current)
        processed += len(current)
        nxt: List[str] = []
        for node in current:
            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        current = sorted(nxt)

    if processed != len(indeg):
        stuck = {n for n, d in indeg.items() if d > 0}
        cycle = find_cycle(adj, stuck) or sorted(stuck)
        raise CycleError(
            kind="cycle",
            message=f"Job dependencies form a cycle: {' -> '.join(cycle)}",
            details={"stuck": sorted(stuck)},
            cycle=cycle,
        )

    return levels


def build_graph(jobs: List[Job]) -> JobGraph:
    adj, indeg = build_dag(jobs)
    waves = topo_levels(adj, indeg)
    return JobGraph(
        jobs={j.name: j for j in jobs},
        adj=adj,
        waves=tuple(tuple(w) for w in waves),
    )
