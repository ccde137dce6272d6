# dag.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Set, Tuple

from .errors import CycleError
from .model import WorkflowDefinition
from .parser import validate_needs


def build_dag(workflow: WorkflowDefinition) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Build adjacency (dep -> dependents, in declaration order) and in-degrees
    from the `needs` declarations of a workflow.
    """
    validate_needs(workflow.jobs)

    order = workflow.job_ids
    adj: Dict[str, List[str]] = {n: [] for n in order}
    indeg: Dict[str, int] = {n: 0 for n in order}

    for job in workflow.jobs.values():
        for dep in dict.fromkeys(job.needs):
            # Edge dep -> job (dep must run before job)
            adj[dep].append(job.id)
            indeg[job.id] += 1

    position = {n: i for i, n in enumerate(order)}
    for dependents in adj.values():
        dependents.sort(key=position.__getitem__)
    return adj, indeg


def find_cycle(adj: Mapping[str, List[str]], candidates: List[str]) -> List[str]:
    """Return one cycle among `candidates` as [a, b, ..., a]."""
    candidate_set = set(candidates)
    state: Dict[str, int] = {}  # 1 = on stack, 2 = done
    stack: List[str] = []

    def visit(node: str) -> List[str]:
        state[node] = 1
        stack.append(node)
        for child in adj.get(node, []):
            if child not in candidate_set:
                continue
            if state.get(child) == 1:
                return stack[stack.index(child):] + [child]
            if child not in state:
                found = visit(child)
                if found:
                    return found
        stack.pop()
        state[node] = 2
        return []

    for node in candidates:
        if node not in state:
            found = visit(node)
            if found:
                return found
    return list(candidates)


def topo_levels(
    adj: Mapping[str, List[str]],
    indeg: Mapping[str, int],
    order: List[str],
) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages). Each stage can run
    in parallel; within a stage jobs keep their declaration order.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    position = {n: i for i, n in enumerate(order)}
    level = [n for n in order if indeg[n] == 0]

    levels: List[List[str]] = []
    processed = 0

    while level:
        levels.append(level)
        processed += len(level)
        nxt: Set[str] = set()
        for node in level:
            for child in adj.get(node, []):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.add(child)
        level = sorted(nxt, key=position.__getitem__)

    if processed != len(order):
        stuck = [n for n in order if indeg[n] > 0]
        raise CycleError(find_cycle(adj, stuck))

    return levels


@dataclass(frozen=True)
class ExecutionPlan:
    """Acyclic job graph of one workflow. Only produced for acyclic `needs`."""
    order: Tuple[str, ...]
    layers: Tuple[Tuple[str, ...], ...]
    edges: Mapping[str, Tuple[str, ...]]  # job -> dependents
    needs: Mapping[str, Tuple[str, ...]]  # job -> predecessors

    def predecessors(self, job_id: str) -> Tuple[str, ...]:
        return self.needs[job_id]

    def successors(self, job_id: str) -> Tuple[str, ...]:
        return self.edges[job_id]

    def descendants(self, job_id: str) -> List[str]:
        seen: Set[str] = set()
        pending = list(self.edges[job_id])
        while pending:
            node = pending.pop()
            if node in seen:
                continue
            seen.add(node)
            pending.extend(self.edges[node])
        return [n for n in self.order if n in seen]

    def position(self, job_id: str) -> int:
        return self.order.index(job_id)


def build_plan(workflow: WorkflowDefinition) -> ExecutionPlan:
    """
    Raises:
        SchemaError: a job needs an undeclared job
        CycleError: the `needs` graph is cyclic
    """
    adj, indeg = build_dag(workflow)
    levels = topo_levels(adj, indeg, workflow.job_ids)
    return ExecutionPlan(
        order=tuple(n for level in levels for n in level),
        layers=tuple(tuple(level) for level in levels),
        edges={n: tuple(children) for n, children in adj.items()},
        needs={job.id: tuple(dict.fromkeys(job.needs)) for job in workflow.jobs.values()},
    )
