# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import GraphError
from .model import Stage


def build_graph(stages: List[Stage]) -> Tuple[Dict[str, Stage], Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Stage objects.

    Returns:
      by_name: stage name -> Stage
      adj:     dependency -> set of dependents
      indeg:   stage name -> number of distinct dependencies
    """
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise GraphError(f"Duplicate stage names found: {dupes}")

    by_name = {s.name: s for s in stages}
    adj: Dict[str, Set[str]] = {n: set() for n in by_name}
    indeg: Dict[str, int] = {n: 0 for n in by_name}

    for stage in stages:
        for dep in stage.needs:
            if dep not in by_name:
                raise GraphError(
                    f"Stage '{stage.name}' needs missing stage '{dep}'",
                    known=sorted(by_name),
                )
            # Edge dep -> stage (dep must reach a terminal state first)
            if stage.name not in adj[dep]:
                adj[dep].add(stage.name)
                indeg[stage.name] += 1

    return by_name, adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels".
    Stages inside one level have no dependencies on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise GraphError("Stage graph has a cycle", stuck=remaining)

    return levels

