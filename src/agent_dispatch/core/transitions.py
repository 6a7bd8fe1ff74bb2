"""Task state machine: lifecycle stamping, guarded status writes, retry/kill/redirect.

Every status change in the system goes through `transition_task`, which
stamps lifecycle timestamps, appends the audit record and updates the
assigned agent's counters in the caller's transaction. Events are emitted
by the caller once that transaction has committed.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from agent_dispatch.core.stats import apply_agent_transition
from agent_dispatch.core.store import add_log, get_agent, get_task, get_task_row, log_event
from agent_dispatch.db.engine import parse_dt, to_iso, transaction, utcnow
from agent_dispatch.db.models import TASK_STATUSES, TERMINAL_STATUSES, Task
from agent_dispatch.errors import ConflictingState, ExecutorFailure, NotFound, ValidationError
from agent_dispatch.events import AGENT_STATUS, EventBus, emit, status_event_name
from agent_dispatch.serializers import agent_dict, task_dict

logger = logging.getLogger(__name__)

STICKY_FIELDS = ("session", "branch", "worktree_path", "log_path")


@dataclass
class Transition:
    task_id: str
    old_status: str
    new_status: str
    agent_id: str | None
    agent_changed: bool = False


def derive_duration_minutes(started_at: datetime | None, completed_at: datetime | None) -> int | None:
    """Whole minutes between start and completion, or None if unknown or negative."""
    if started_at is None or completed_at is None:
        return None
    seconds = (completed_at - started_at).total_seconds()
    if seconds < 0:
        return None
    return round(seconds / 60)


def apply_lifecycle(
    old_status: str | None,
    new_status: str,
    started_at: datetime | None,
    completed_at: datetime | None,
    actual_duration_min: int | None,
    now: datetime | None = None,
) -> tuple[datetime | None, datetime | None, int | None]:
    """Stamp lifecycle fields for a task entering `new_status`.

    Returns the resulting (started_at, completed_at, actual_duration_min).
    """
    now = now or utcnow()
    if new_status == "running" and started_at is None:
        started_at = now
    if new_status in TERMINAL_STATUSES:
        if completed_at is None:
            completed_at = now
        if actual_duration_min is None:
            actual_duration_min = derive_duration_minutes(started_at, completed_at)
    return started_at, completed_at, actual_duration_min


def transition_task(
    db: sqlite3.Connection,
    task_id: str,
    new_status: str,
    event_type: str = "status_changed",
    updates: dict | None = None,
    expect_status: str | None = None,
    capacity: int | None = None,
    sticky: dict | None = None,
    now: datetime | None = None,
) -> Transition | None:
    """Write a status change with its side effects.

    `expect_status` makes the write a compare-and-set on the current status;
    `capacity` additionally refuses the write once that many tasks are
    running. Returns None when a guard rejected the write. `sticky` values
    only fill columns that are currently null.
    """
    if new_status not in TASK_STATUSES:
        raise ValidationError(f"Invalid status: {new_status}")

    updates = dict(updates or {})
    sticky = {k: v for k, v in (sticky or {}).items() if k in STICKY_FIELDS}

    with transaction(db):
        row = get_task_row(db, task_id)
        if not row:
            raise NotFound(f"Task not found: {task_id}")
        old_status = row["status"]
        if expect_status is not None and old_status != expect_status:
            return None

        def current(field, parse=None):
            if field in updates:
                return updates[field]
            return parse(row[field]) if parse else row[field]

        started_at, completed_at, actual = apply_lifecycle(
            old_status,
            new_status,
            current("started_at", parse_dt),
            current("completed_at", parse_dt),
            current("actual_duration_min"),
            now,
        )
        updates.update(
            started_at=started_at,
            completed_at=completed_at,
            actual_duration_min=actual,
        )
        agent_id = current("agent_id")

        values = {"status": new_status}
        for key, value in updates.items():
            values[key] = to_iso(value) if isinstance(value, datetime) else value

        set_parts = [f"{k} = ?" for k in values]
        params = list(values.values())
        for key, value in sticky.items():
            set_parts.append(f"{key} = COALESCE({key}, ?)")
            params.append(value)
        set_parts.append("updated_at = ?")
        params.append(to_iso(now or utcnow()))

        where = "id = ?"
        params.append(task_id)
        if expect_status is not None:
            where += " AND status = ?"
            params.append(expect_status)
        if capacity is not None:
            where += " AND (SELECT COUNT(*) FROM tasks WHERE status = 'running') < ?"
            params.append(capacity)

        cursor = db.execute(f"UPDATE tasks SET {', '.join(set_parts)} WHERE {where}", params)
        if cursor.rowcount == 0:
            return None

        if old_status != new_status or event_type != "status_changed":
            log_event(db, task_id, event_type, old_status, new_status)

        agent_changed = apply_agent_transition(db, task_id, old_status, new_status, agent_id, actual)

    return Transition(task_id, old_status, new_status, agent_id, agent_changed)


def emit_transition(
    db: sqlite3.Connection,
    events: EventBus | None,
    transition: Transition,
    event_name: str | None = None,
    **extra,
) -> Task | None:
    """Emit the task event (and agent:status when the agent moved) after commit."""
    task = get_task(db, transition.task_id)
    if task is None:
        return None
    emit(events, event_name or status_event_name(task.status), {"task": task_dict(task), **extra})
    if transition.agent_changed and transition.agent_id:
        agent = get_agent(db, transition.agent_id)
        if agent:
            emit(events, AGENT_STATUS, {"agent": agent_dict(agent)})
    return task


# ── Operator transitions ────────────────────────────────────────────────────


def retry_task(db: sqlite3.Connection, task_id: str, events: EventBus | None = None) -> Task:
    """Requeue a failed task, consuming one retry."""
    with transaction(db):
        row = get_task_row(db, task_id)
        if not row:
            raise NotFound(f"Task not found: {task_id}")
        if row["status"] != "failed":
            raise ConflictingState(
                f"Only failed tasks can be retried (status is {row['status']})",
                reason="wrong_status",
            )
        if row["retry_count"] >= row["max_retries"]:
            raise ConflictingState(
                f"max retries reached ({row['retry_count']}/{row['max_retries']})",
                reason="max_retries_reached",
            )
        transition = transition_task(
            db,
            task_id,
            "queued",
            event_type="retried",
            updates={
                "retry_count": row["retry_count"] + 1,
                "started_at": None,
                "completed_at": None,
                "actual_duration_min": None,
            },
        )

    logger.info("Task %s requeued (retry %d/%d)", task_id, row["retry_count"] + 1, row["max_retries"])
    return emit_transition(db, events, transition)


def kill_task(db: sqlite3.Connection, task_id: str, executor, events: EventBus | None = None) -> Task:
    """Terminate a running task's agent and mark the task failed.

    The task is finalized even when the executor fails to terminate; that
    failure is recorded and then raised as ExecutorFailure.
    """
    row = get_task_row(db, task_id)
    if not row:
        raise NotFound(f"Task not found: {task_id}")
    if row["status"] != "running":
        raise ConflictingState(f"Task is not running (status is {row['status']})", reason="wrong_status")
    if not row["session"]:
        raise ValidationError(f"Task {task_id} has no session to terminate")

    failure: ExecutorFailure | None = None
    try:
        executor.terminate(row["session"])
    except ExecutorFailure as e:
        failure = e
        logger.warning("Terminate failed for task %s: %s", task_id, e)

    with transaction(db):
        transition = transition_task(db, task_id, "failed", event_type="killed", expect_status="running")
        if failure is not None:
            add_log(db, task_id, "error", f"kill failed: {failure}")
            log_event(db, task_id, "kill_failed", None, str(failure))

    if transition is None:
        # Finished on its own while the terminate call was in flight.
        logger.info("Task %s left running before kill completed, status kept", task_id)
        task = get_task(db, task_id)
    else:
        task = emit_transition(db, events, transition, error="Task killed manually")
    if failure is not None:
        raise failure
    return task


def redirect_task(
    db: sqlite3.Connection,
    task_id: str,
    message: str,
    executor,
    session: str | None = None,
) -> str:
    """Send a message to a task's running agent. Returns the executor output."""
    message = (message or "").strip()
    if not message:
        raise ValidationError("message is required")

    row = get_task_row(db, task_id)
    if not row:
        raise NotFound(f"Task not found: {task_id}")
    session = (session or "").strip() or row["session"]
    if not session:
        raise ValidationError("A session is required to redirect this task")

    output = executor.signal(session, message)

    with transaction(db):
        add_log(db, task_id, "info", f"redirect: {message}")
        log_event(db, task_id, "redirected", None, message)
    return output
