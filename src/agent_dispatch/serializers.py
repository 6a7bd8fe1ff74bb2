"""Plain-dict views of the models, shared by events, HTTP, MCP and CLI --json."""

from datetime import datetime

from agent_dispatch.db.engine import to_iso
from agent_dispatch.db.models import (
    Activity,
    Agent,
    CalendarWindow,
    DependencyTree,
    Project,
    QueueStatus,
    StartCheck,
    SyncResult,
    Task,
    TaskDraft,
    TaskEvent,
    TaskLog,
    TickResult,
)


def _iso(value: datetime | None) -> str | None:
    return to_iso(value) if value else None


def project_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "created_at": _iso(p.created_at),
    }


def task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "observed_status": t.observed_status,
        "priority": t.priority,
        "agent_type": t.agent_type,
        "agent_id": t.agent_id,
        "branch": t.branch,
        "pr_url": t.pr_url,
        "pr_number": t.pr_number,
        "ci_status": t.ci_status,
        "retry_count": t.retry_count,
        "max_retries": t.max_retries,
        "scheduled_at": _iso(t.scheduled_at),
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
        "estimated_duration_min": t.estimated_duration_min,
        "actual_duration_min": t.actual_duration_min,
        "session": t.session,
        "worktree_path": t.worktree_path,
        "log_path": t.log_path,
        "depends_on": t.depends_on,
        "blocked_by": t.blocked_by,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def agent_dict(a: Agent) -> dict:
    return {
        "id": a.id,
        "project_id": a.project_id,
        "name": a.name,
        "type": a.type,
        "status": a.status,
        "current_task_id": a.current_task_id,
        "total_tasks": a.total_tasks,
        "success_count": a.success_count,
        "fail_count": a.fail_count,
        "avg_duration_min": a.avg_duration_min,
        "created_at": _iso(a.created_at),
        "updated_at": _iso(a.updated_at),
    }


def event_dict(e: TaskEvent) -> dict:
    return {
        "id": e.id,
        "task_id": e.task_id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def log_dict(entry: TaskLog) -> dict:
    return {
        "id": entry.id,
        "level": entry.level,
        "message": entry.message,
        "created_at": _iso(entry.created_at),
    }


def tree_dict(tree: DependencyTree) -> dict:
    return {
        "task_id": tree.task_id,
        "blocked_by": tree.blocked_by,
        "nodes": [task_dict(n) for n in tree.nodes],
        "edges": [{"from": e.from_id, "to": e.to_id, "depth": e.depth} for e in tree.edges],
    }


def start_check_dict(check: StartCheck) -> dict:
    return {"ok": check.ok, "reason": check.reason, "blocked_by": check.blocked_by}


def tick_dict(result: TickResult) -> dict:
    return {
        "skipped": result.skipped,
        "limit": result.limit,
        "running": result.running,
        "dispatched": result.dispatched,
        "failed": result.failed,
    }


def queue_dict(status: QueueStatus) -> dict:
    return {
        "max_concurrent_agents": status.limit,
        "running_count": status.running_count,
        "available_slots": status.available,
        "running": [task_dict(t) for t in status.running],
        "queued": [
            {**task_dict(entry.task), "queue_position": entry.position}
            for entry in status.queued
        ],
        "blocked": [task_dict(t) for t in status.blocked],
    }


def sync_dict(result: SyncResult) -> dict:
    return {
        "source": result.source,
        "scanned": result.scanned,
        "upserted": result.upserted,
        "created": result.created,
        "updated": result.updated,
        "skipped": result.skipped,
        "errors": result.errors,
        "synced_at": _iso(result.synced_at),
    }


def draft_dict(draft: TaskDraft) -> dict:
    return {
        "title": draft.title,
        "description": draft.description,
        "priority": draft.priority,
        "agent_type": draft.agent_type,
        "scheduled_at": _iso(draft.scheduled_at),
        "estimated_duration_min": draft.estimated_duration_min,
        "depends_on": draft.depends_on,
    }


def calendar_dict(window: CalendarWindow) -> dict:
    return {
        "view": window.view,
        "project_id": window.project_id,
        "from": window.start.isoformat(),
        "to": window.end.isoformat(),
        "tasks": [task_dict(t) for t in window.tasks],
    }


def activity_dict(activity: Activity) -> dict:
    return {
        **event_dict(activity.event),
        "project_id": activity.project_id,
        "task_title": activity.title,
    }
