"""Dependency-graph helpers shared by discovery and the registry."""

from __future__ import annotations

from typing import Callable, Iterable

from .errors import CircularDependencyError


def topological_sort(
    nodes: Iterable[str],
    get_dependencies: Callable[[str], Iterable[str]],
) -> list[str]:
    """Order nodes so every dependency precedes its dependents.

    Depth-first; only edges pointing at ids inside ``nodes`` are followed,
    and the input order is kept wherever the graph allows it.

    Args:
        nodes: Node ids to sort
        get_dependencies: Returns the declared dependencies of a node

    Returns:
        Node ids in dependency order

    Raises:
        CircularDependencyError: If the restricted graph has a cycle
    """
    ordered_input = list(dict.fromkeys(nodes))
    allowed = set(ordered_input)
    visited: set[str] = set()
    path: list[str] = []
    on_path: set[str] = set()
    result: list[str] = []

    def visit(node: str) -> None:
        if node in visited:
            return
        if node in on_path:
            start = path.index(node)
            raise CircularDependencyError(path[start:] + [node])

        path.append(node)
        on_path.add(node)
        for dep in get_dependencies(node):
            if dep in allowed:
                visit(dep)
        path.pop()
        on_path.discard(node)

        visited.add(node)
        result.append(node)

    for node in ordered_input:
        visit(node)

    return result


def find_cycle(
    start: str,
    get_dependencies: Callable[[str], Iterable[str] | None],
) -> list[str]:
    """Return the first cycle reachable from ``start``, or an empty list.

    ``get_dependencies`` returns None for unknown nodes, which end the walk.
    """
    path: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def walk(node: str) -> list[str]:
        if node in on_path:
            return path[path.index(node):] + [node]
        if node in done:
            return []
        deps = get_dependencies(node)
        if deps is None:
            return []
        path.append(node)
        on_path.add(node)
        for dep in deps:
            cycle = walk(dep)
            if cycle:
                return cycle
        path.pop()
        on_path.discard(node)
        done.add(node)
        return []

    return walk(start)
