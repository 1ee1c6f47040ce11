"""
Dependency and readiness queries over a replayed Graph.

Everything here is a pure function of the graph: no I/O and no clock.
"""

from typing import Iterable, Optional

from ergo.model import (
    STATE_BLOCKED,
    STATE_TODO,
    Graph,
    Task,
    is_closed,
    sort_tasks,
    worker_allowed,
)


def has_cycle(graph: Graph, from_id: str, to_id: str) -> bool:
    """
    Would adding the edge from_id -> to_id close a cycle?

    True for a self-edge, otherwise true when from_id is already reachable
    from to_id through existing dependencies.
    """
    if from_id == to_id:
        return True
    stack = [to_id]
    visited = set()
    while stack:
        current = stack.pop()
        if current == from_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(graph.deps_of(current))
    return False


def is_epic_complete(graph: Graph, epic_id: str) -> bool:
    """All of the epic's tasks are done or canceled. Empty epics count as complete."""
    return all(is_closed(t.state) for t in graph.epic_tasks(epic_id))


def epic_deps_complete(graph: Graph, epic_id: str) -> bool:
    """Every epic that `epic_id` depends on is complete."""
    for dep_id in graph.deps_of(epic_id):
        dep = graph.get(dep_id)
        if dep is None or not dep.is_epic:
            continue
        if not is_epic_complete(graph, dep_id):
            return False
    return True


def _unmet_dependency(task: Task, graph: Graph) -> bool:
    for dep_id in graph.deps_of(task.id):
        dep = graph.get(dep_id)
        if dep is None:
            continue
        if not is_closed(dep.state):
            return True
    if task.epic_id and not epic_deps_complete(graph, task.epic_id):
        return True
    return False


def is_ready(task: Optional[Task], graph: Graph) -> bool:
    """
    Can the task be claimed right now?

    It must be todo, unclaimed, every dependency closed, and, if it sits in an
    epic, every epic that epic depends on complete.
    """
    if task is None or task.is_epic:
        return False
    if task.state != STATE_TODO or task.claimed_by:
        return False
    return not _unmet_dependency(task, graph)


def is_blocked(task: Optional[Task], graph: Graph) -> bool:
    """Explicitly blocked, or todo and unclaimed but waiting on something."""
    if task is None or task.is_epic:
        return False
    if task.state == STATE_BLOCKED:
        return True
    if task.state != STATE_TODO or task.claimed_by:
        return False
    return _unmet_dependency(task, graph)


def topo_sort_tasks(tasks: Iterable[Task], graph: Graph) -> list:
    """
    Order a subset of tasks so dependencies come first.

    Kahn's algorithm restricted to edges inside the subset. Ties go to ready
    tasks first, then by id. Anything left over (only possible with a cycle
    from a hand-edited log) is appended in id order.
    """
    tasks = list(tasks)
    by_id = {t.id: t for t in tasks}
    in_degree = {t.id: sum(1 for d in graph.deps_of(t.id) if d in by_id) for t in tasks}

    def order(task: Task):
        return (not is_ready(task, graph), task.id)

    queue = sorted((t for t in tasks if in_degree[t.id] == 0), key=order)
    result = []
    while queue:
        current = queue.pop(0)
        result.append(current)
        for dependent_id in sorted(graph.rdeps_of(current.id)):
            if dependent_id not in by_id:
                continue
            in_degree[dependent_id] -= 1
            if in_degree[dependent_id] == 0:
                queue.append(by_id[dependent_id])
        queue.sort(key=order)

    if len(result) < len(tasks):
        placed = {t.id for t in result}
        result.extend(sorted((t for t in tasks if t.id not in placed), key=lambda t: t.id))
    return result


def list_tasks(graph: Graph, epic_id: Optional[str] = None, ready_only: bool = False,
               blocked_only: bool = False, include_all: bool = False,
               as_worker: Optional[str] = None) -> list:
    """
    Select tasks for listing, sorted by id.

    By default only tasks that are ready or blocked are returned; `include_all`
    returns every non-epic task in any state.
    """
    selected = []
    for task in graph.tasks.values():
        if task.is_epic:
            continue
        if epic_id and task.epic_id != epic_id:
            continue
        if not worker_allowed(task.worker, as_worker):
            continue
        ready = is_ready(task, graph)
        blocked = is_blocked(task, graph)
        if ready_only and not ready:
            continue
        if blocked_only and not blocked:
            continue
        if not include_all and not ready and not blocked:
            continue
        selected.append(task)
    return sorted(selected, key=lambda t: t.id)


def list_epics(graph: Graph) -> list:
    return sorted((t for t in graph.tasks.values() if t.is_epic), key=lambda t: t.id)


def ready_tasks(graph: Graph, epic_id: Optional[str] = None,
                as_worker: Optional[str] = None) -> list:
    """Ready tasks in claim order: oldest first, then by id."""
    return sort_tasks(list_tasks(graph, epic_id=epic_id, ready_only=True, as_worker=as_worker))
