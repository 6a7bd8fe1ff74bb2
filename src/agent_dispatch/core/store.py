"""Task store reads, row mapping and the append-only audit/log tables.

Everything above this module (graph, state machine, scheduler, sync) reads
tasks through `get_task` / `list_tasks`, which hydrate dependency edges and
the unmet subset that drives the derived 'blocked' status.
"""

import sqlite3

from agent_dispatch.db.engine import parse_dt
from agent_dispatch.db.models import Activity, Agent, Task, TaskEvent, TaskLog


# ── Row-to-model helpers ────────────────────────────────────────────────────


def row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"],
        agent_type=row["agent_type"],
        agent_id=row["agent_id"],
        branch=row["branch"],
        pr_url=row["pr_url"],
        pr_number=row["pr_number"],
        ci_status=row["ci_status"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        scheduled_at=parse_dt(row["scheduled_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        estimated_duration_min=row["estimated_duration_min"],
        actual_duration_min=row["actual_duration_min"],
        session=row["session"],
        worktree_path=row["worktree_path"],
        log_path=row["log_path"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


def row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        type=row["type"],
        status=row["status"],
        current_task_id=row["current_task_id"],
        total_tasks=row["total_tasks"],
        success_count=row["success_count"],
        fail_count=row["fail_count"],
        avg_duration_min=row["avg_duration_min"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


# ── Task reads ──────────────────────────────────────────────────────────────


def get_task_row(db: sqlite3.Connection, task_id: str) -> sqlite3.Row | None:
    return db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependency edges and unmet subset."""
    row = get_task_row(db, task_id)
    if not row:
        return None
    task = row_to_task(row)
    _hydrate(db, [task])
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
    agent_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters.

    `status='blocked'` selects queued tasks with unmet dependencies and
    `status='queued'` selects the ones without.
    """
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)

    if status in ("blocked", "queued"):
        query += " AND status = 'queued'"
    elif status:
        query += " AND status = ?"
        params.append(status)

    if agent_id:
        query += " AND agent_id = ?"
        params.append(agent_id)

    query += " ORDER BY COALESCE(scheduled_at, started_at, created_at) DESC, id ASC"
    tasks = [row_to_task(r) for r in db.execute(query, params).fetchall()]
    _hydrate(db, tasks)

    if status == "blocked":
        return [t for t in tasks if t.observed_status == "blocked"]
    if status == "queued":
        return [t for t in tasks if t.observed_status == "queued"]
    return tasks


def list_tasks_between(db: sqlite3.Connection, project_id: str, start: str, end: str) -> list[Task]:
    """Tasks whose calendar day falls in [start, end] (YYYY-MM-DD, inclusive).

    The calendar day is the first of scheduled_at, started_at, completed_at
    and created_at that is set.
    """
    rows = db.execute(
        """SELECT * FROM tasks
           WHERE project_id = ?
             AND substr(COALESCE(scheduled_at, started_at, completed_at, created_at), 1, 10) BETWEEN ? AND ?
           ORDER BY COALESCE(scheduled_at, started_at, created_at) ASC, id ASC""",
        (project_id, start, end),
    ).fetchall()
    tasks = [row_to_task(r) for r in rows]
    _hydrate(db, tasks)
    return tasks


def _hydrate(db: sqlite3.Connection, tasks: list[Task]) -> None:
    """Attach depends_on (insertion order) and blocked_by to each task."""
    if not tasks:
        return
    by_id = {t.id: t for t in tasks}
    placeholders = ", ".join("?" for _ in by_id)
    rows = db.execute(
        f"""SELECT d.task_id, d.depends_on_task_id, t.status AS dep_status
            FROM task_dependencies d
            LEFT JOIN tasks t ON t.id = d.depends_on_task_id
            WHERE d.task_id IN ({placeholders})
            ORDER BY d.rowid""",
        list(by_id),
    ).fetchall()
    for row in rows:
        task = by_id[row["task_id"]]
        task.depends_on.append(row["depends_on_task_id"])
        if row["dep_status"] != "completed":
            task.blocked_by.append(row["depends_on_task_id"])


def count_running(db: sqlite3.Connection) -> int:
    return db.execute("SELECT COUNT(*) FROM tasks WHERE status = 'running'").fetchone()[0]


# ── Agent reads ─────────────────────────────────────────────────────────────


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return row_to_agent(row)


# ── Audit trail and task logs ───────────────────────────────────────────────


def log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def add_log(db: sqlite3.Connection, task_id: str, level: str, message: str):
    db.execute(
        "INSERT INTO task_logs (task_id, level, message) VALUES (?, ?, ?)",
        (task_id, level, message),
    )


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the audit history for a task, oldest first."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def get_project_activity(db: sqlite3.Connection, project_id: str, limit: int = 50) -> list[Activity]:
    """Most recent audit records across a project's tasks, newest first."""
    rows = db.execute(
        """SELECT e.*, t.project_id, t.title
           FROM task_events e
           JOIN tasks t ON t.id = e.task_id
           WHERE t.project_id = ?
           ORDER BY e.id DESC
           LIMIT ?""",
        (project_id, limit),
    ).fetchall()
    return [
        Activity(
            event=TaskEvent(
                id=r["id"],
                task_id=r["task_id"],
                event_type=r["event_type"],
                old_value=r["old_value"],
                new_value=r["new_value"],
                created_at=parse_dt(r["created_at"]),
            ),
            project_id=r["project_id"],
            title=r["title"],
        )
        for r in rows
    ]


def get_task_logs(db: sqlite3.Connection, task_id: str, limit: int = 200) -> list[TaskLog]:
    rows = db.execute(
        "SELECT * FROM task_logs WHERE task_id = ? ORDER BY id DESC LIMIT ?",
        (task_id, limit),
    ).fetchall()
    return [
        TaskLog(
            id=r["id"],
            task_id=r["task_id"],
            level=r["level"],
            message=r["message"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in reversed(rows)
    ]
