"""Dependency-wave partitioning and cycle detection over plan tasks."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping


class GraphNode(Protocol):
    """Anything with an ID and dependency IDs; ``Task`` satisfies this."""

    @property
    def id(self) -> str: ...

    @property
    def dependencies(self) -> Sequence[str]: ...


class DependencyCycleError(ValueError):
    """Raised when the dependency relation contains a cycle."""

    path: str | None

    def __init__(self, path: str | None) -> None:
        self.path = path
        if path is None:
            message = "Task graph contains at least one dependency cycle."
        else:
            message = f"Task graph contains a dependency cycle: {path}"
        super().__init__(message)


class UnknownDependencyError(ValueError):
    """Raised when a plan task depends on an ID that is not in the plan."""

    def __init__(self, task_id: str, missing: Sequence[str]) -> None:
        self.task_id = task_id
        self.missing = tuple(missing)
        super().__init__(f"task {task_id!r} depends on unknown task(s): {', '.join(self.missing)}")


_WHITE = 0
_GRAY = 1
_BLACK = 2


def compute_waves(tasks: Iterable[GraphNode]) -> list[tuple[str, ...]]:
    """
    Partition tasks into execution waves.

    Every wave contains each not-yet-scheduled task whose dependencies are all
    in earlier waves, in input order. Dependencies on IDs outside the input are
    treated as satisfied. Raises ``DependencyCycleError`` if tasks remain but
    none become ready, which only happens on a graph that skipped validation.
    """
    ordered = _index(tasks)
    known = frozenset(ordered)
    scheduled: set[str] = set()
    remaining = list(ordered)
    waves: list[tuple[str, ...]] = []

    while remaining:
        wave = tuple(
            task_id
            for task_id in remaining
            if all(
                dependency in scheduled or dependency not in known
                for dependency in ordered[task_id]
            )
        )
        if not wave:
            raise DependencyCycleError(_detect_cycle_in(ordered))
        waves.append(wave)
        scheduled.update(wave)
        remaining = [task_id for task_id in remaining if task_id not in scheduled]

    return waves


def detect_cycle(tasks: Iterable[GraphNode]) -> str | None:
    """
    Return a cycle as ``"A -> B -> C -> A"`` or ``None`` when the graph is acyclic.

    Traversal is a three-colour depth-first search following dependency edges,
    rooted at each task in input order.
    """
    return _detect_cycle_in(_index(tasks))


def validate_plan(tasks: Iterable[GraphNode]) -> None:
    """Reject unknown dependency IDs and cycles before any scheduling happens."""
    ordered = _index(tasks)
    for task_id, dependencies in ordered.items():
        missing = [dependency for dependency in dependencies if dependency not in ordered]
        if missing:
            raise UnknownDependencyError(task_id, missing)

    cycle = _detect_cycle_in(ordered)
    if cycle is not None:
        raise DependencyCycleError(cycle)


def transitive_dependents(tasks: Iterable[GraphNode], roots: Iterable[str]) -> tuple[str, ...]:
    """Return every task that depends, directly or transitively, on any of ``roots``."""
    ordered = _index(tasks)
    children: dict[str, list[str]] = {task_id: [] for task_id in ordered}
    for task_id, dependencies in ordered.items():
        for dependency in dependencies:
            if dependency in children:
                children[dependency].append(task_id)

    seen: set[str] = set()
    pending = [root for root in roots if root in children]
    while pending:
        node = pending.pop()
        for child in children[node]:
            if child not in seen:
                seen.add(child)
                pending.append(child)

    return tuple(task_id for task_id in ordered if task_id in seen)


def _index(tasks: Iterable[GraphNode]) -> dict[str, tuple[str, ...]]:
    ordered: dict[str, tuple[str, ...]] = {}
    for task in tasks:
        if task.id in ordered:
            raise ValueError(f"duplicate task id {task.id!r}")
        ordered[task.id] = tuple(task.dependencies)
    return ordered


def _detect_cycle_in(graph: Mapping[str, Sequence[str]]) -> str | None:
    state: dict[str, int] = {}
    stack: list[str] = []
    stack_index: dict[str, int] = {}

    for start in graph:
        if state.get(start, _WHITE) != _WHITE:
            continue

        state[start] = _GRAY
        stack_index[start] = len(stack)
        stack.append(start)
        frames: list[tuple[str, Iterator[str]]] = [(start, iter(graph[start]))]

        while frames:
            node, dependency_iter = frames[-1]
            try:
                dependency = next(dependency_iter)
            except StopIteration:
                frames.pop()
                state[node] = _BLACK
                stack.pop()
                del stack_index[node]
                continue

            if dependency not in graph:
                continue

            dependency_state = state.get(dependency, _WHITE)
            if dependency_state == _WHITE:
                state[dependency] = _GRAY
                stack_index[dependency] = len(stack)
                stack.append(dependency)
                frames.append((dependency, iter(graph[dependency])))
            elif dependency_state == _GRAY:
                cycle = stack[stack_index[dependency] :] + [dependency]
                return " -> ".join(cycle)

    return None


__all__ = [
    "DependencyCycleError",
    "GraphNode",
    "UnknownDependencyError",
    "compute_waves",
    "detect_cycle",
    "transitive_dependents",
    "validate_plan",
]
