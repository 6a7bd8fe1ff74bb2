"""Lexical alias tables for free-form ledger fields.

Each mapper is total: unknown input falls back to a documented default.

    status      -> 'queued'
    priority    -> 'medium'
    agent type  -> 'codex'
    CI status   -> None
"""

DEFAULT_STATUS = "queued"
DEFAULT_PRIORITY = "medium"
DEFAULT_AGENT_TYPE = "codex"

STATUS_ALIASES = {
    "queued": ("queued", "queue", "pending"),
    "running": ("running", "active", "in_progress", "busy"),
    "pr_open": ("pr_open", "pr-open", "pr", "review"),
    "completed": ("completed", "done", "success", "finished"),
    "failed": ("failed", "error", "killed", "cancelled", "canceled"),
    "archived": ("archived",),
}

CI_ALIASES = {
    "pending": ("pending", "waiting"),
    "passing": ("pass", "passing", "passed", "success"),
    "failing": ("fail", "failed", "failing", "error"),
}

PRIORITIES = ("low", "medium", "high", "urgent")

# Record field names, first match wins.
FIELD_ALIASES = {
    "id": ("id", "task_id", "taskId"),
    "session": ("tmux_session", "tmuxSession", "session"),
    "description": ("description", "task", "prompt", "message"),
    "title": ("title", "name"),
    "status": ("status", "state"),
    "priority": ("priority",),
    "agent_type": ("agent_type", "agentType", "agent"),
    "agent_id": ("agent_id", "agentId"),
    "agent_name": ("agent_name", "agentName"),
    "project_id": ("project_id", "projectId", "project"),
    "branch": ("branch",),
    "pr_url": ("pr_url", "prUrl"),
    "pr_number": ("pr_number", "prNumber"),
    "ci_status": ("ci_status", "ciStatus"),
    "retry_count": ("retry_count", "retryCount"),
    "max_retries": ("max_retries", "maxRetries"),
    "scheduled_at": ("scheduled_at", "scheduledAt"),
    "started_at": ("started_at", "startedAt"),
    "completed_at": ("completed_at", "completedAt"),
    "estimated_duration_min": ("estimated_duration_min", "estimatedDurationMin"),
    "actual_duration_min": ("actual_duration_min", "actualDurationMin"),
    "worktree_path": ("worktree_path", "worktreePath"),
    "log_path": ("log_path", "logPath"),
    "depends_on": ("depends_on", "dependsOn", "dependencies"),
}

RECORD_LIST_KEYS = ("tasks", "active_tasks", "items", "data")


def _raw(value) -> str:
    return str(value if value is not None else "").strip().lower()


def map_status(value) -> str:
    raw = _raw(value)
    for status, aliases in STATUS_ALIASES.items():
        if raw in aliases:
            return status
    return DEFAULT_STATUS


def map_priority(value) -> str:
    raw = _raw(value)
    return raw if raw in PRIORITIES else DEFAULT_PRIORITY


def map_agent_type(value) -> str:
    return "claude" if "claude" in _raw(value) else DEFAULT_AGENT_TYPE


def map_ci_status(value) -> str | None:
    raw = _raw(value)
    for status, aliases in CI_ALIASES.items():
        if raw in aliases:
            return status
    return None


def read_field(record: dict, field: str):
    """Value of the first alias of `field` present in the record, else None."""
    for key in FIELD_ALIASES[field]:
        if key in record:
            return record[key]
    return None
