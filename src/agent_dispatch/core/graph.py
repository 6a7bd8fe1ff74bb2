"""Dependency graph operations over the task_dependencies edge list.

Edges point from a task to the task it depends on. The edge set is kept
acyclic: every proposed edge set is validated with a reachability query
before anything is written.
"""

import sqlite3
from collections import deque

from agent_dispatch.core.store import get_task, get_task_row
from agent_dispatch.db.engine import transaction
from agent_dispatch.db.models import DependencyTree, TreeEdge
from agent_dispatch.errors import InvalidDependency, NotFound, ValidationError


def parse_depends_on(value) -> list[str]:
    """Normalize a depends-on value to a de-duplicated list of ids.

    Accepts None, a comma separated string, or a list of strings.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        raise ValidationError("depends_on must be a list of task ids")

    result: list[str] = []
    for item in items:
        if not isinstance(item, str):
            raise ValidationError("depends_on must contain only task id strings")
        item = item.strip()
        if item and item not in result:
            result.append(item)
    return result


def load_adjacency(db: sqlite3.Connection) -> dict[str, list[str]]:
    """Snapshot the whole edge list as task_id -> [depends_on ids]."""
    adjacency: dict[str, list[str]] = {}
    for row in db.execute(
        "SELECT task_id, depends_on_task_id FROM task_dependencies ORDER BY rowid"
    ).fetchall():
        adjacency.setdefault(row["task_id"], []).append(row["depends_on_task_id"])
    return adjacency


def dependencies_of(db: sqlite3.Connection, task_id: str) -> list[str]:
    """Direct dependencies of a task, in insertion order."""
    rows = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ? ORDER BY rowid",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


def dependents_of(db: sqlite3.Connection, task_id: str) -> list[str]:
    """Tasks that depend directly on `task_id`."""
    rows = db.execute(
        "SELECT task_id FROM task_dependencies WHERE depends_on_task_id = ? ORDER BY rowid",
        (task_id,),
    ).fetchall()
    return [r["task_id"] for r in rows]


def validate_dependents(db: sqlite3.Connection, task_id: str, project_id: str) -> None:
    """Raise InvalidDependency if a task depending on `task_id` lives outside `project_id`."""
    for dependent_id in dependents_of(db, task_id):
        row = get_task_row(db, dependent_id)
        if row and row["project_id"] != project_id:
            raise InvalidDependency(
                f"task {dependent_id} in project {row['project_id']} depends on {task_id}"
            )


def unmet_dependencies_of(db: sqlite3.Connection, task_id: str) -> list[str]:
    """Direct dependencies whose task is not completed. Missing targets count as unmet."""
    rows = db.execute(
        """SELECT d.depends_on_task_id
           FROM task_dependencies d
           LEFT JOIN tasks t ON t.id = d.depends_on_task_id
           WHERE d.task_id = ? AND (t.status IS NULL OR t.status != 'completed')
           ORDER BY d.rowid""",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


def has_dependency_path(
    db: sqlite3.Connection,
    from_id: str,
    to_id: str,
    adjacency: dict[str, list[str]] | None = None,
) -> bool:
    """True if `to_id` is reachable from `from_id` by following depends-on edges.

    Breadth-first search with a visited set: O(V+E).
    """
    if adjacency is None:
        adjacency = load_adjacency(db)
    if from_id == to_id:
        return True

    visited = {from_id}
    queue = deque([from_id])
    while queue:
        current = queue.popleft()
        for nxt in adjacency.get(current, ()):
            if nxt == to_id:
                return True
            if nxt not in visited:
                visited.add(nxt)
                queue.append(nxt)
    return False


def validate_dependencies(
    db: sqlite3.Connection,
    task_id: str,
    project_id: str,
    depends_on: list[str],
    adjacency: dict[str, list[str]] | None = None,
) -> list[str]:
    """Check a proposed dependency set for `task_id` against the current graph.

    Raises InvalidDependency for a self reference, an unknown target, a
    target in another project, or an edge that would close a cycle.
    """
    depends_on = parse_depends_on(depends_on)

    if task_id in depends_on:
        raise InvalidDependency("task cannot depend on itself")

    for dep_id in depends_on:
        row = get_task_row(db, dep_id)
        if not row:
            raise InvalidDependency(f"dependency task not found: {dep_id}")
        if row["project_id"] != project_id:
            raise InvalidDependency(f"dependency task belongs to another project: {dep_id}")

    if adjacency is None:
        adjacency = load_adjacency(db)
    # The task's own outgoing edges are about to be replaced.
    adjacency = {k: v for k, v in adjacency.items() if k != task_id}
    for dep_id in depends_on:
        if has_dependency_path(db, dep_id, task_id, adjacency):
            raise InvalidDependency(f"dependency cycle detected: {task_id} -> {dep_id} -> {task_id}")

    return depends_on


def write_dependencies(db: sqlite3.Connection, task_id: str, depends_on: list[str]):
    """Replace the task's edge set. Callers validate first."""
    db.execute("DELETE FROM task_dependencies WHERE task_id = ?", (task_id,))
    db.executemany(
        "INSERT OR IGNORE INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        [(task_id, dep_id) for dep_id in depends_on],
    )


def set_dependencies(db: sqlite3.Connection, task_id: str, depends_on: list[str]) -> list[str]:
    """Validate and replace a task's dependencies atomically."""
    with transaction(db):
        row = get_task_row(db, task_id)
        if not row:
            raise NotFound(f"Task not found: {task_id}")
        depends_on = validate_dependencies(db, task_id, row["project_id"], depends_on)
        write_dependencies(db, task_id, depends_on)
    return depends_on


def dependency_tree(db: sqlite3.Connection, task_id: str) -> DependencyTree:
    """Materialize the transitive depends-on closure of a task with depths.

    Each branch tracks the ids on its own path, so a cycle left in stored
    data ends the branch instead of looping.
    """
    if not get_task_row(db, task_id):
        raise NotFound(f"Task not found: {task_id}")

    adjacency = load_adjacency(db)
    seen: set[tuple[str, str, int]] = set()
    edges: list[TreeEdge] = []

    stack: list[tuple[str, int, frozenset[str]]] = [(task_id, 1, frozenset([task_id]))]
    while stack:
        node, depth, path = stack.pop()
        for dep_id in adjacency.get(node, ()):
            if dep_id in path:
                continue
            key = (node, dep_id, depth)
            if key not in seen:
                seen.add(key)
                edges.append(TreeEdge(from_id=node, to_id=dep_id, depth=depth))
            stack.append((dep_id, depth + 1, path | {dep_id}))

    edges.sort(key=lambda e: (e.depth, e.from_id, e.to_id))

    node_ids = {task_id}
    for edge in edges:
        node_ids.add(edge.from_id)
        node_ids.add(edge.to_id)
    ordered = [task_id] + sorted(node_ids - {task_id})
    nodes = [t for t in (get_task(db, i) for i in ordered) if t]

    root = nodes[0] if nodes and nodes[0].id == task_id else None
    return DependencyTree(
        task_id=task_id,
        blocked_by=list(root.blocked_by) if root else [],
        nodes=nodes,
        edges=edges,
    )
