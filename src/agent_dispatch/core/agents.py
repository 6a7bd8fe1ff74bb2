"""Agent registry operations.

Counters (total/success/fail/average) belong to the aggregator in
core.stats; the update path here refuses them.
"""

import logging
import sqlite3
import uuid

from agent_dispatch.core.store import get_agent, row_to_agent
from agent_dispatch.db.engine import now_iso, transaction
from agent_dispatch.db.models import AGENT_STATUSES, AGENT_TYPES, Agent
from agent_dispatch.errors import NotFound, ValidationError
from agent_dispatch.events import AGENT_STATUS, EventBus, emit
from agent_dispatch.serializers import agent_dict

logger = logging.getLogger(__name__)

COUNTER_FIELDS = {"total_tasks", "success_count", "fail_count", "avg_duration_min"}
UPDATABLE_FIELDS = {"name", "type", "status", "project_id", "current_task_id"}


def create_agent(
    db: sqlite3.Connection,
    name: str,
    type: str = "codex",
    status: str = "idle",
    project_id: str | None = "default",
    agent_id: str | None = None,
    events: EventBus | None = None,
) -> Agent:
    """Register a new agent."""
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required")
    if type not in AGENT_TYPES:
        raise ValidationError("type must be codex or claude")
    if status not in AGENT_STATUSES:
        raise ValidationError("status must be idle, busy, or offline")

    agent_id = agent_id or str(uuid.uuid4())
    with transaction(db):
        if get_agent(db, agent_id):
            raise ValidationError(f"Agent already exists: {agent_id}")
        if project_id:
            db.execute(
                "INSERT OR IGNORE INTO projects (id, name) VALUES (?, ?)",
                (project_id, "Default Project" if project_id == "default" else project_id),
            )
        db.execute(
            "INSERT INTO agents (id, project_id, name, type, status) VALUES (?, ?, ?, ?, ?)",
            (agent_id, project_id, name.strip(), type, status),
        )

    agent = get_agent(db, agent_id)
    emit(events, AGENT_STATUS, {"agent": agent_dict(agent)})
    return agent


def list_agents(db: sqlite3.Connection, project_id: str | None = None) -> list[Agent]:
    query = "SELECT * FROM agents"
    params: list = []
    if project_id:
        query += " WHERE project_id = ?"
        params.append(project_id)
    query += " ORDER BY updated_at DESC, created_at DESC"
    return [row_to_agent(r) for r in db.execute(query, params).fetchall()]


def update_agent(
    db: sqlite3.Connection,
    agent_id: str,
    events: EventBus | None = None,
    **fields,
) -> Agent:
    """Update name/type/status/project/current task. Counter fields are rejected."""
    counters = COUNTER_FIELDS & set(fields)
    if counters:
        raise ValidationError(f"Agent counters are derived and cannot be set: {', '.join(sorted(counters))}")
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown agent fields: {', '.join(sorted(unknown))}")

    if "name" in fields and (not isinstance(fields["name"], str) or not fields["name"].strip()):
        raise ValidationError("name must be a non-empty string")
    if "type" in fields and fields["type"] not in AGENT_TYPES:
        raise ValidationError("type must be codex or claude")
    if "status" in fields and fields["status"] not in AGENT_STATUSES:
        raise ValidationError("status must be idle, busy, or offline")

    with transaction(db):
        agent = get_agent(db, agent_id)
        if not agent:
            raise NotFound(f"Agent not found: {agent_id}")

        updates = dict(fields)
        if "name" in updates:
            updates["name"] = updates["name"].strip()
        status = updates.get("status", agent.status)
        if status != "busy":
            updates["current_task_id"] = None

        if updates:
            set_clause = ", ".join(f"{k} = ?" for k in updates)
            db.execute(
                f"UPDATE agents SET {set_clause}, updated_at = ? WHERE id = ?",
                list(updates.values()) + [now_iso(), agent_id],
            )

    agent = get_agent(db, agent_id)
    emit(events, AGENT_STATUS, {"agent": agent_dict(agent)})
    return agent


def delete_agent(db: sqlite3.Connection, agent_id: str) -> None:
    with transaction(db):
        if not get_agent(db, agent_id):
            raise NotFound(f"Agent not found: {agent_id}")
        db.execute("UPDATE tasks SET agent_id = NULL WHERE agent_id = ?", (agent_id,))
        db.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
    logger.info("Deleted agent %s", agent_id)


def ensure_agent(
    db: sqlite3.Connection,
    agent_id: str,
    agent_type: str,
    status: str,
    project_id: str | None,
    name: str | None = None,
    current_task_id: str | None = None,
) -> bool:
    """Create or align an agent row. Writes only when something differs.

    Returns True when the row was inserted or changed.
    """
    current_task_id = current_task_id if status == "busy" else None
    existing = get_agent(db, agent_id)
    if existing is None:
        db.execute(
            """INSERT INTO agents (id, project_id, name, type, status, current_task_id)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (agent_id, project_id, name or f"Agent {agent_id[:8]}", agent_type, status, current_task_id),
        )
        return True

    wanted = {
        "name": name or existing.name,
        "type": agent_type,
        "status": status,
        "project_id": project_id or existing.project_id,
        "current_task_id": current_task_id,
    }
    changed = {k: v for k, v in wanted.items() if getattr(existing, k) != v}
    if not changed:
        return False
    set_clause = ", ".join(f"{k} = ?" for k in changed)
    db.execute(
        f"UPDATE agents SET {set_clause}, updated_at = ? WHERE id = ?",
        list(changed.values()) + [now_iso(), agent_id],
    )
    return True
