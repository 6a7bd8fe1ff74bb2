"""Data models for agent dispatch."""

from dataclasses import dataclass, field
from datetime import date, datetime

TASK_STATUSES = ("queued", "running", "pr_open", "completed", "failed", "archived")
TERMINAL_STATUSES = ("completed", "failed")
PRIORITIES = ("low", "medium", "high", "urgent")
PRIORITY_RANK = {"urgent": 4, "high": 3, "medium": 2, "low": 1}
AGENT_TYPES = ("codex", "claude")
AGENT_STATUSES = ("idle", "busy", "offline")
CI_STATUSES = ("pending", "passing", "failing")
LOG_LEVELS = ("info", "warn", "error", "debug")
CALENDAR_VIEWS = ("daily", "weekly", "monthly")


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "queued"
    priority: str = "medium"
    agent_type: str = "codex"
    agent_id: str | None = None
    branch: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    ci_status: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_duration_min: int = 30
    actual_duration_min: int | None = None
    session: str | None = None
    worktree_path: str | None = None
    log_path: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)

    @property
    def observed_status(self) -> str:
        """Status as presented: a queued task with unmet dependencies is 'blocked'."""
        if self.status == "queued" and self.blocked_by:
            return "blocked"
        return self.status


@dataclass
class Agent:
    id: str
    name: str
    type: str = "codex"
    status: str = "idle"
    project_id: str | None = None
    current_task_id: str | None = None
    total_tasks: int = 0
    success_count: int = 0
    fail_count: int = 0
    avg_duration_min: float = 0.0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class TaskLog:
    id: int | None = None
    task_id: str = ""
    level: str = "info"
    message: str = ""
    created_at: datetime | None = None


@dataclass
class TreeEdge:
    from_id: str
    to_id: str
    depth: int


@dataclass
class DependencyTree:
    task_id: str
    blocked_by: list[str] = field(default_factory=list)
    nodes: list[Task] = field(default_factory=list)
    edges: list[TreeEdge] = field(default_factory=list)


@dataclass
class StartCheck:
    ok: bool
    reason: str | None = None
    blocked_by: list[str] = field(default_factory=list)


@dataclass
class SpawnResult:
    session: str | None = None
    branch: str | None = None
    worktree_path: str | None = None
    log_path: str | None = None
    output: str = ""


@dataclass
class TaskDraft:
    title: str
    description: str = ""
    priority: str = "medium"
    agent_type: str = "codex"
    scheduled_at: datetime | None = None
    estimated_duration_min: int = 30
    depends_on: list[str] = field(default_factory=list)


@dataclass
class TickResult:
    skipped: bool = False
    limit: int = 0
    running: int = 0
    dispatched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass
class QueueEntry:
    task: Task
    position: int | None = None


@dataclass
class QueueStatus:
    limit: int
    running_count: int
    available: int
    running: list[Task] = field(default_factory=list)
    queued: list[QueueEntry] = field(default_factory=list)
    blocked: list[Task] = field(default_factory=list)


@dataclass
class SyncResult:
    source: str | None = None
    scanned: int = 0
    upserted: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    synced_at: datetime | None = None


@dataclass
class CalendarWindow:
    view: str
    start: date
    end: date
    project_id: str
    tasks: list[Task] = field(default_factory=list)


@dataclass
class Activity:
    event: TaskEvent
    project_id: str
    title: str
