"""Dependency- and priority-aware task selection.

Every function here is a pure function of a task list: no hidden state, no I/O.
The build loop reloads the graph from disk before each call.

Usage::

    task = select_next_task(graph.tasks)   # lowest priority, then lowest id
    if task is None and is_deadlocked(graph.tasks):
        ...
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from taskloop.tasks.model import Task


# ── dependency checks ────────────────────────────────────────────


def completed_ids(tasks: Iterable[Task]) -> set[int]:
    return {t.id for t in tasks if t.is_completed}


def deps_satisfied(task: Task, completed: set[int]) -> bool:
    """True when every dependency id is in *completed* (no deps is always True)."""
    return all(dep in completed for dep in task.dependencies)


def available_tasks(tasks: Sequence[Task]) -> list[Task]:
    """Pending tasks whose dependencies are all completed."""
    done = completed_ids(tasks)
    return [t for t in tasks if t.is_pending and deps_satisfied(t, done)]


def _sort_key(task: Task) -> tuple[float, int]:
    priority = math.inf if task.priority is None else task.priority
    return (priority, task.id)


# ── selection ────────────────────────────────────────────────────


def select_next_task(tasks: Sequence[Task]) -> Task | None:
    """Return the next runnable task or ``None``.

    Ordering is ``(priority ascending, missing priority last, then id)``.
    """
    available = available_tasks(tasks)
    if not available:
        return None
    return min(available, key=_sort_key)


def has_pending_tasks(tasks: Iterable[Task]) -> bool:
    return any(t.is_pending for t in tasks)


def count_blocked_tasks(tasks: Sequence[Task]) -> int:
    """Pending tasks with at least one dependency that is not completed.

    A dependency that is merely ``in_progress`` still blocks.
    """
    done = completed_ids(tasks)
    return sum(1 for t in tasks if t.is_pending and not deps_satisfied(t, done))


def is_deadlocked(tasks: Sequence[Task]) -> bool:
    """Pending work exists but nothing can be selected.

    Does not tell a real cycle from a dependency that is stuck
    ``in_progress``; see :func:`detect_circular_dependencies`.
    """
    return has_pending_tasks(tasks) and select_next_task(tasks) is None


# ── diagnostics ──────────────────────────────────────────────────


def detect_circular_dependencies(tasks: Iterable[Task]) -> set[int]:
    """Return every task id that lies on a dependency cycle.

    A task is reported when it can reach itself through its dependency
    chain: a member of a strongly connected component with more than one
    task, or a task that depends on itself. Tasks that merely depend on a
    cycle are not reported. Dependencies on ids that are not in the graph
    are dead ends. Iterative Tarjan, so deep chains do not hit the
    recursion limit.
    """
    graph: dict[int, list[int]] = {}
    for t in tasks:
        graph[t.id] = list(t.dependencies)

    index_of: dict[int, int] = {}
    lowlink: dict[int, int] = {}
    stack: list[int] = []
    on_stack: set[int] = set()
    on_cycle: set[int] = set()
    counter = 0

    for root in graph:
        if root in index_of:
            continue
        work: list[tuple[int, int]] = [(root, 0)]
        while work:
            node, edge = work.pop()
            if edge == 0:
                index_of[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)

            deps = graph[node]
            descended = False
            while edge < len(deps):
                dep = deps[edge]
                edge += 1
                if dep not in graph:
                    continue
                if dep not in index_of:
                    work.append((node, edge))
                    work.append((dep, 0))
                    descended = True
                    break
                if dep in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[dep])
            if descended:
                continue

            if lowlink[node] == index_of[node]:
                component: list[int] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in graph[node]:
                    on_cycle.update(component)

            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

    return on_cycle


def explain_block(task: Task, tasks: Sequence[Task]) -> str:
    """Human-readable explanation of why *task* is not selectable."""
    by_id = {t.id: t for t in tasks}
    blocked: list[str] = []
    for dep in task.dependencies:
        other = by_id.get(dep)
        if other is None:
            blocked.append(f"{dep} (missing)")
        elif not other.is_completed:
            blocked.append(f"{dep} ({other.status})")
    if not blocked:
        return ""
    return f"dependencies: {' '.join(blocked)}"
