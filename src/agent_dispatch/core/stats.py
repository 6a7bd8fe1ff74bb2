"""Agent statistics aggregation on task status transitions.

`apply_agent_transition` runs inside the same transaction as the status
write that triggered it. It is the only code that writes agent counters.
"""

import sqlite3

from agent_dispatch.db.engine import now_iso
from agent_dispatch.db.models import TERMINAL_STATUSES


def apply_agent_transition(
    db: sqlite3.Connection,
    task_id: str,
    old_status: str | None,
    new_status: str,
    agent_id: str | None,
    actual_duration_min: int | None,
) -> bool:
    """Update the assigned agent for a task moving old_status -> new_status.

    Returns True when the agent row was written.
    """
    if not agent_id:
        return False

    agent = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not agent:
        return False

    now = now_iso()

    if new_status == "running":
        db.execute(
            "UPDATE agents SET status = 'busy', current_task_id = ?, updated_at = ? WHERE id = ?",
            (task_id, now, agent_id),
        )
        return True

    if new_status in TERMINAL_STATUSES and old_status not in TERMINAL_STATUSES:
        total = agent["total_tasks"]
        avg = next_average(agent["avg_duration_min"], total, actual_duration_min)
        db.execute(
            """UPDATE agents SET
                   total_tasks = total_tasks + 1,
                   success_count = success_count + ?,
                   fail_count = fail_count + ?,
                   avg_duration_min = ?,
                   status = 'idle',
                   current_task_id = NULL,
                   updated_at = ?
               WHERE id = ?""",
            (
                1 if new_status == "completed" else 0,
                1 if new_status == "failed" else 0,
                avg,
                now,
                agent_id,
            ),
        )
        return True

    if old_status == "running" and new_status != "running" and new_status not in TERMINAL_STATUSES:
        db.execute(
            "UPDATE agents SET status = 'idle', current_task_id = NULL, updated_at = ? WHERE id = ?",
            (now, agent_id),
        )
        return True

    return False


def next_average(avg: float, total: int, duration: int | None) -> float:
    """Incremental mean over `total` previous samples.

    An unknown duration leaves the average untouched while the caller still
    counts the task toward the totals.
    """
    if duration is None:
        return avg
    if total <= 0:
        return float(duration)
    return round(((avg * total) + duration) / (total + 1), 2)


def system_stats(db: sqlite3.Connection) -> dict:
    """Totals, per-status counts and per-agent utilization."""
    totals = db.execute(
        """SELECT
               COUNT(*) AS total_tasks,
               SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed_tasks,
               SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed_tasks,
               AVG(actual_duration_min) AS avg_duration_min
           FROM tasks"""
    ).fetchone()
    by_status = db.execute(
        "SELECT status, COUNT(*) AS count FROM tasks GROUP BY status ORDER BY status"
    ).fetchall()
    agents = db.execute(
        """SELECT a.id, a.name, a.type, a.status, a.total_tasks, a.success_count,
                  a.fail_count, a.avg_duration_min,
                  SUM(CASE WHEN t.status = 'running' THEN 1 ELSE 0 END) AS running_tasks
           FROM agents a
           LEFT JOIN tasks t ON t.agent_id = a.id
           GROUP BY a.id
           ORDER BY a.name ASC"""
    ).fetchall()

    completed = totals["completed_tasks"] or 0
    failed = totals["failed_tasks"] or 0
    finished = completed + failed
    avg = totals["avg_duration_min"]

    return {
        "generated_at": now_iso(),
        "totals": {
            "total_tasks": totals["total_tasks"],
            "completed_tasks": completed,
            "failed_tasks": failed,
            "avg_duration_min": None if avg is None else round(avg, 2),
            "success_rate": round(completed / finished, 4) if finished else 0,
        },
        "by_status": {r["status"]: r["count"] for r in by_status},
        "agent_utilization": [
            {**dict(r), "running_tasks": r["running_tasks"] or 0} for r in agents
        ],
    }
