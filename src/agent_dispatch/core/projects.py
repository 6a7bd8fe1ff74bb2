"""Project management operations."""

import logging
import sqlite3

from agent_dispatch.db.engine import now_iso, parse_dt, transaction
from agent_dispatch.db.models import Project
from agent_dispatch.errors import ConflictingState, NotFound, ValidationError
from agent_dispatch.events import TASK_DELETED, EventBus, emit

logger = logging.getLogger(__name__)


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    description: str = "",
) -> Project:
    """Create a new project."""
    if not project_id or not project_id.strip():
        raise ValidationError("Project id is required")
    if get_project(db, project_id):
        raise ValidationError(f"Project already exists: {project_id}")
    with transaction(db):
        db.execute(
            "INSERT INTO projects (id, name, description) VALUES (?, ?, ?)",
            (project_id, name or project_id, description),
        )
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at ASC, id ASC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str | None = None,
    description: str | None = None,
) -> Project:
    """Rename or re-describe a project. Fields left as None are kept."""
    if not get_project(db, project_id):
        raise NotFound(f"Project not found: {project_id}")
    updates = {}
    if name is not None:
        if not name.strip():
            raise ValidationError("Project name cannot be empty")
        updates["name"] = name.strip()
    if description is not None:
        updates["description"] = description
    if updates:
        set_clause = ", ".join(f"{k} = ?" for k in updates)
        db.execute(
            f"UPDATE projects SET {set_clause}, updated_at = ? WHERE id = ?",
            [*updates.values(), now_iso(), project_id],
        )
    return get_project(db, project_id)


def delete_project(db: sqlite3.Connection, project_id: str, events: EventBus | None = None) -> list[str]:
    """Delete a project and all of its tasks. Returns the deleted task IDs.

    Refused while any of the project's tasks is running.
    """
    with transaction(db):
        if not get_project(db, project_id):
            raise NotFound(f"Project not found: {project_id}")
        running = [
            r["id"]
            for r in db.execute(
                "SELECT id FROM tasks WHERE project_id = ? AND status = 'running' ORDER BY id", (project_id,)
            ).fetchall()
        ]
        if running:
            raise ConflictingState(
                f"Project {project_id} has running tasks: {', '.join(running)}",
                reason="has_running_tasks",
            )
        task_ids = [
            r["id"] for r in db.execute("SELECT id FROM tasks WHERE project_id = ? ORDER BY id", (project_id,)).fetchall()
        ]
        # Edges, audit rows and logs cascade from tasks.
        db.execute("DELETE FROM tasks WHERE project_id = ?", (project_id,))
        db.execute("DELETE FROM projects WHERE id = ?", (project_id,))

    logger.info("Deleted project %s with %d task(s)", project_id, len(task_ids))
    for task_id in task_ids:
        emit(events, TASK_DELETED, {"task_id": task_id})
    return task_ids


def ensure_project(db: sqlite3.Connection, project_id: str = "default") -> Project:
    """Ensure a project exists, creating it if needed."""
    db.execute(
        "INSERT OR IGNORE INTO projects (id, name) VALUES (?, ?)",
        (project_id, "Default Project" if project_id == "default" else project_id),
    )
    return get_project(db, project_id)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
