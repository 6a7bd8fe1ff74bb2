"""Task management operations."""

import logging
import re
import sqlite3
from datetime import datetime

from agent_dispatch.core import graph
from agent_dispatch.core.projects import ensure_project, get_project
from agent_dispatch.core.stats import apply_agent_transition
from agent_dispatch.core.store import get_agent, get_task, get_task_row, log_event
from agent_dispatch.core.transitions import Transition, apply_lifecycle, emit_transition, transition_task
from agent_dispatch.db.engine import parse_dt, to_iso, transaction
from agent_dispatch.db.models import AGENT_TYPES, CI_STATUSES, PRIORITIES, TASK_STATUSES, Task
from agent_dispatch.errors import NotFound, ValidationError
from agent_dispatch.events import AGENT_STATUS, TASK_CREATED, TASK_DELETED, TASK_UPDATED, EventBus, emit
from agent_dispatch.serializers import agent_dict, task_dict

logger = logging.getLogger(__name__)

NULLABLE_TEXT_FIELDS = ("branch", "pr_url", "session", "worktree_path", "log_path")


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    candidate = base_slug
    i = 2
    while get_task_row(db, candidate):
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


# ── Field validation ────────────────────────────────────────────────────────


def _choice(value, allowed: tuple, name: str) -> str:
    if value not in allowed:
        raise ValidationError(f"{name} must be one of: {', '.join(allowed)}")
    return value


def _time(value, name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return parse_dt(to_iso(value))
    parsed = parse_dt(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp")
    return parsed


def _non_negative_int(value, name: str, nullable: bool = False) -> int | None:
    if value is None and nullable:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"{name} must be a non-negative integer")
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"{name} must be a non-negative integer") from None
    if number < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return number


def _text(value, name: str, nullable: bool = True) -> str | None:
    if value is None and nullable:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _resolve_project(db: sqlite3.Connection, project_id: str | None) -> str:
    project_id = (project_id or "default").strip() or "default"
    if project_id == "default":
        ensure_project(db, "default")
    elif not get_project(db, project_id):
        raise ValidationError(f"Unknown project: {project_id}")
    return project_id


# ── Create / update / delete ────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    priority: str = "medium",
    agent_type: str = "codex",
    agent_id: str | None = None,
    status: str = "queued",
    scheduled_at: datetime | str | None = None,
    estimated_duration_min: int = 30,
    max_retries: int = 3,
    depends_on: list[str] | None = None,
    events: EventBus | None = None,
) -> Task:
    """Create a new task, validating its dependencies before anything is written."""
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title is required")
    title = title.strip()
    _choice(priority, PRIORITIES, "priority")
    _choice(agent_type, AGENT_TYPES, "agent_type")
    _choice(status, TASK_STATUSES, "status")
    scheduled = _time(scheduled_at, "scheduled_at")
    estimate = _non_negative_int(estimated_duration_min, "estimated_duration_min")
    retries = _non_negative_int(max_retries, "max_retries")
    depends_on = graph.parse_depends_on(depends_on)

    with transaction(db):
        project_id = _resolve_project(db, project_id)
        task_id = _unique_id(db, slugify(title))
        depends_on = graph.validate_dependencies(db, task_id, project_id, depends_on)
        started_at, completed_at, actual = apply_lifecycle(None, status, None, None, None)

        db.execute(
            """INSERT INTO tasks (id, project_id, title, description, status, priority, agent_type,
                                  agent_id, scheduled_at, estimated_duration_min, max_retries,
                                  started_at, completed_at, actual_duration_min)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task_id,
                project_id,
                title,
                description or "",
                status,
                priority,
                agent_type,
                agent_id,
                to_iso(scheduled) if scheduled else None,
                estimate,
                retries,
                to_iso(started_at) if started_at else None,
                to_iso(completed_at) if completed_at else None,
                actual,
            ),
        )
        graph.write_dependencies(db, task_id, depends_on)
        log_event(db, task_id, "created", None, status)
        agent_changed = apply_agent_transition(db, task_id, None, status, agent_id, actual)

    task = get_task(db, task_id)
    logger.info("Created task %s (%s, %s)", task_id, priority, task.observed_status)
    emit(events, TASK_CREATED, {"task": task_dict(task)})
    if agent_changed and agent_id:
        emit(events, AGENT_STATUS, {"agent": agent_dict(get_agent(db, agent_id))})
    return task


UPDATABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "agent_type",
    "agent_id",
    "project_id",
    "branch",
    "pr_url",
    "pr_number",
    "ci_status",
    "retry_count",
    "max_retries",
    "scheduled_at",
    "started_at",
    "completed_at",
    "estimated_duration_min",
    "actual_duration_min",
    "session",
    "worktree_path",
    "log_path",
    "depends_on",
}


def _validate_updates(fields: dict) -> dict:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    clean: dict = {}
    for key, value in fields.items():
        if key == "title":
            if not isinstance(value, str) or not value.strip():
                raise ValidationError("title must be a non-empty string")
            clean[key] = value.strip()
        elif key == "description":
            clean[key] = _text(value, key, nullable=False)
        elif key == "status":
            clean[key] = _choice(value, TASK_STATUSES, "status")
        elif key == "priority":
            clean[key] = _choice(value, PRIORITIES, "priority")
        elif key == "agent_type":
            clean[key] = _choice(value, AGENT_TYPES, "agent_type")
        elif key == "ci_status":
            clean[key] = None if value is None else _choice(value, CI_STATUSES, "ci_status")
        elif key in ("agent_id", "project_id"):
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise ValidationError(f"{key} must be null or a non-empty string")
            clean[key] = value.strip() if value else None
            if key == "project_id" and clean[key] is None:
                raise ValidationError("project_id must be a non-empty string")
        elif key in NULLABLE_TEXT_FIELDS:
            clean[key] = _text(value, key)
        elif key in ("scheduled_at", "started_at", "completed_at"):
            clean[key] = _time(value, key)
        elif key in ("retry_count", "max_retries", "estimated_duration_min"):
            clean[key] = _non_negative_int(value, key)
        elif key in ("pr_number", "actual_duration_min"):
            clean[key] = _non_negative_int(value, key, nullable=True)
        elif key == "depends_on":
            clean[key] = graph.parse_depends_on(value)
    return clean


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    events: EventBus | None = None,
    **fields,
) -> Task:
    """Update task fields. Any persisted status may be set here."""
    updates = _validate_updates(fields)
    depends_on = updates.pop("depends_on", None)

    with transaction(db):
        row = get_task_row(db, task_id)
        if not row:
            raise NotFound(f"Task not found: {task_id}")

        if "project_id" in updates:
            updates["project_id"] = _resolve_project(db, updates["project_id"])
        if depends_on is not None or "project_id" in updates:
            effective = depends_on if depends_on is not None else graph.dependencies_of(db, task_id)
            project_id = updates.get("project_id", row["project_id"])
            depends_on = graph.validate_dependencies(db, task_id, project_id, effective)
            graph.write_dependencies(db, task_id, depends_on)
        if "project_id" in updates and updates["project_id"] != row["project_id"]:
            graph.validate_dependents(db, task_id, updates["project_id"])

        transition: Transition = transition_task(
            db,
            task_id,
            updates.pop("status", row["status"]),
            updates=updates,
        )

    return emit_transition(db, events, transition)


def set_task_dependencies(
    db: sqlite3.Connection,
    task_id: str,
    depends_on: list[str],
    events: EventBus | None = None,
) -> Task:
    """Replace a task's dependency set."""
    with transaction(db):
        old = graph.dependencies_of(db, task_id) if get_task_row(db, task_id) else []
        new = graph.set_dependencies(db, task_id, depends_on)
        if old != new:
            log_event(db, task_id, "dependencies_changed", ",".join(old) or None, ",".join(new) or None)

    task = get_task(db, task_id)
    if old != new:
        emit(events, TASK_UPDATED, {"task": task_dict(task)})
    return task


def delete_task(db: sqlite3.Connection, task_id: str, events: EventBus | None = None) -> None:
    """Delete a task with its edges, audit history and logs."""
    with transaction(db):
        row = get_task_row(db, task_id)
        if not row:
            raise NotFound(f"Task not found: {task_id}")
        agent_changed = apply_agent_transition(
            db, task_id, row["status"], "archived", row["agent_id"], row["actual_duration_min"]
        )
        db.execute(
            "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_task_id = ?",
            (task_id, task_id),
        )
        db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
        db.execute("DELETE FROM task_logs WHERE task_id = ?", (task_id,))
        db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

    logger.info("Deleted task %s", task_id)
    emit(events, TASK_DELETED, {"task_id": task_id})
    if agent_changed:
        emit(events, AGENT_STATUS, {"agent": agent_dict(get_agent(db, row["agent_id"]))})
