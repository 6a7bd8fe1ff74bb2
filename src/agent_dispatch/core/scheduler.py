"""Priority dispatch of queued tasks under a global concurrency ceiling.

A tick reads `max_concurrent_agents`, lists queued tasks in priority order,
and spawns eligible ones until no slots remain. The executor is always
called with no transaction open; the following write to `running` is a
compare-and-set on `status = 'queued'` that also refuses to exceed the
ceiling, so a concurrent manual dispatch can never push the running count
past the limit.
"""

import logging
import sqlite3
import threading
from datetime import datetime

from agent_dispatch.core.store import add_log, count_running, get_task, list_tasks, log_event
from agent_dispatch.core.transitions import Transition, emit_transition, transition_task
from agent_dispatch.db.engine import now_iso, transaction, utcnow
from agent_dispatch.db.models import (
    PRIORITY_RANK,
    QueueEntry,
    QueueStatus,
    SpawnResult,
    StartCheck,
    Task,
    TickResult,
)
from agent_dispatch.errors import ConflictingState, ExecutorFailure, NotFound, ValidationError
from agent_dispatch.events import TASK_UPDATED, EventBus, emit
from agent_dispatch.serializers import task_dict

logger = logging.getLogger(__name__)

CONFIG_KEY_MAX_CONCURRENT_AGENTS = "max_concurrent_agents"
DEFAULT_MAX_CONCURRENT_AGENTS = 3
MAX_CONCURRENT_AGENTS_MIN = 1
MAX_CONCURRENT_AGENTS_MAX = 32

REASON_NOT_FOUND = "not_found"
REASON_UNMET_DEPENDENCIES = "has_unmet_dependencies"
REASON_WRONG_STATUS = "wrong_status"
REASON_NOT_YET_SCHEDULED = "not_yet_scheduled"
REASON_CONCURRENCY_LIMIT = "concurrency_limit_reached"


# ── System configuration ────────────────────────────────────────────────────


def clamp_max_concurrent_agents(value: int) -> int:
    return max(MAX_CONCURRENT_AGENTS_MIN, min(MAX_CONCURRENT_AGENTS_MAX, int(value)))


def get_max_concurrent_agents(db: sqlite3.Connection, default: int = DEFAULT_MAX_CONCURRENT_AGENTS) -> int:
    """Current ceiling. Seeds the stored value from `default` on first read."""
    row = db.execute(
        "SELECT value FROM system_config WHERE key = ?", (CONFIG_KEY_MAX_CONCURRENT_AGENTS,)
    ).fetchone()
    if not row:
        value = clamp_max_concurrent_agents(default)
        db.execute(
            "INSERT OR IGNORE INTO system_config (key, value) VALUES (?, ?)",
            (CONFIG_KEY_MAX_CONCURRENT_AGENTS, str(value)),
        )
        return value
    try:
        return clamp_max_concurrent_agents(int(row["value"]))
    except ValueError:
        return clamp_max_concurrent_agents(default)


def get_system_config(db: sqlite3.Connection, default: int = DEFAULT_MAX_CONCURRENT_AGENTS) -> dict:
    return {"max_concurrent_agents": get_max_concurrent_agents(db, default)}


def update_system_config(
    db: sqlite3.Connection,
    max_concurrent_agents=None,
    default: int = DEFAULT_MAX_CONCURRENT_AGENTS,
) -> dict:
    """Store a new ceiling, clamped to 1..32. Surfaces nudge the scheduler afterwards."""
    if max_concurrent_agents is None:
        return get_system_config(db, default)
    if isinstance(max_concurrent_agents, bool):
        raise ValidationError("max_concurrent_agents must be a number")
    try:
        value = clamp_max_concurrent_agents(int(float(max_concurrent_agents)))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("max_concurrent_agents must be a number") from None

    db.execute(
        """INSERT INTO system_config (key, value, updated_at) VALUES (?, ?, ?)
           ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
        (CONFIG_KEY_MAX_CONCURRENT_AGENTS, str(value), now_iso()),
    )
    logger.info("max_concurrent_agents set to %d", value)
    return get_system_config(db, default)


# ── Queue ───────────────────────────────────────────────────────────────────


def is_schedule_ready(task: Task, now: datetime | None = None) -> bool:
    return task.scheduled_at is None or task.scheduled_at <= (now or utcnow())


def queue_order_key(task: Task):
    """Priority rank descending, then (scheduled_at or created_at), then created_at."""
    created = task.created_at or utcnow()
    return (-PRIORITY_RANK.get(task.priority, 1), task.scheduled_at or created, created, task.id)


def list_queue_candidates(db: sqlite3.Connection) -> list[Task]:
    """All persisted-queued tasks in dispatch order; `blocked_by` marks the blocked ones."""
    tasks = [t for t in list_tasks(db) if t.status == "queued"]
    return sorted(tasks, key=queue_order_key)


def can_task_start(
    db: sqlite3.Connection,
    task_id: str,
    limit: int | None = None,
    now: datetime | None = None,
) -> StartCheck:
    """Side-effect free dispatch gate, checked in a fixed reason order."""
    task = get_task(db, task_id)
    if not task:
        return StartCheck(ok=False, reason=REASON_NOT_FOUND)
    if task.blocked_by:
        return StartCheck(ok=False, reason=REASON_UNMET_DEPENDENCIES, blocked_by=list(task.blocked_by))
    if task.status != "queued":
        return StartCheck(ok=False, reason=REASON_WRONG_STATUS)
    if not is_schedule_ready(task, now):
        return StartCheck(ok=False, reason=REASON_NOT_YET_SCHEDULED)
    if limit is None:
        limit = get_max_concurrent_agents(db)
    if count_running(db) >= limit:
        return StartCheck(ok=False, reason=REASON_CONCURRENCY_LIMIT)
    return StartCheck(ok=True)


def queue_status(db: sqlite3.Connection, limit: int | None = None) -> QueueStatus:
    """Running, queued (with 1-indexed positions) and blocked partitions."""
    if limit is None:
        limit = get_max_concurrent_agents(db)
    running = sorted(
        list_tasks(db, status="running"),
        key=lambda t: (t.started_at or t.created_at or utcnow(), t.id),
    )
    status = QueueStatus(
        limit=limit,
        running_count=len(running),
        available=max(0, limit - len(running)),
        running=running,
    )
    position = 1
    for task in list_queue_candidates(db):
        if task.blocked_by:
            status.blocked.append(task)
            continue
        status.queued.append(QueueEntry(task=task, position=position))
        position += 1
    return status


# ── Dispatcher ──────────────────────────────────────────────────────────────


class Scheduler:
    """Dispatches queued tasks through an executor.

    One instance per process. Ticks never overlap, and ticks share a
    dispatch lock with manual `dispatch()` calls.
    """

    def __init__(self, executor, events: EventBus | None = None, default_limit: int = DEFAULT_MAX_CONCURRENT_AGENTS):
        self.executor = executor
        self.events = events
        self.default_limit = default_limit
        self._tick_lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._snapshot: dict[str, str] = {}

    def limit(self, db: sqlite3.Connection) -> int:
        return get_max_concurrent_agents(db, self.default_limit)

    def tick(self, db: sqlite3.Connection, now: datetime | None = None) -> TickResult:
        """Run one scheduling pass. Returns skipped=True if a pass is already running."""
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Scheduler tick already in flight, skipping")
            return TickResult(skipped=True)
        try:
            now = now or utcnow()
            limit = self.limit(db)
            candidates = list_queue_candidates(db)
            self._refresh_snapshot(db, candidates)

            with self._dispatch_lock:
                running = count_running(db)
                result = TickResult(limit=limit, running=running)
                available = max(0, limit - running)
                if available == 0:
                    return result

                for task in candidates:
                    if available <= 0:
                        break
                    if task.blocked_by or not is_schedule_ready(task, now):
                        continue
                    try:
                        transition, _ = self._spawn(db, task, limit, "spawned_by_scheduler", "scheduler_spawn_failed")
                    except ExecutorFailure:
                        result.failed.append(task.id)
                        continue
                    if transition is None:
                        logger.warning("Task %s left the queue before it could be marked running", task.id)
                        continue
                    emit_transition(db, self.events, transition, TASK_UPDATED, source="scheduler")
                    result.dispatched.append(task.id)
                    available -= 1

                result.running = count_running(db)
            if result.dispatched or result.failed:
                logger.info(
                    "Scheduler tick dispatched %d task(s), %d spawn failure(s)",
                    len(result.dispatched),
                    len(result.failed),
                )
            return result
        finally:
            self._tick_lock.release()

    def dispatch(
        self,
        db: sqlite3.Connection,
        task_id: str,
        agent_id: str | None = None,
    ) -> tuple[Task, SpawnResult]:
        """Try to start one task now.

        Raises NotFound, ConflictingState carrying the gate reason, or
        ExecutorFailure.
        """
        with self._dispatch_lock:
            limit = self.limit(db)
            check = can_task_start(db, task_id, limit)
            if not check.ok:
                if check.reason == REASON_NOT_FOUND:
                    raise NotFound(f"Task not found: {task_id}")
                raise ConflictingState(
                    f"Task {task_id} cannot start: {check.reason}",
                    reason=check.reason,
                    blocked_by=check.blocked_by,
                )
            task = get_task(db, task_id)
            transition, spawned = self._spawn(db, task, limit, "spawned", "spawn_failed", agent_id=agent_id)
            if transition is None:
                raise ConflictingState(
                    f"Task {task_id} changed while it was being dispatched",
                    reason=REASON_WRONG_STATUS,
                )

        task = emit_transition(db, self.events, transition, TASK_UPDATED, source="manual")
        return task, spawned

    def _spawn(
        self,
        db: sqlite3.Connection,
        task: Task,
        limit: int,
        event_type: str,
        failure_event_type: str,
        agent_id: str | None = None,
    ) -> tuple[Transition | None, SpawnResult]:
        try:
            spawned = self.executor.spawn(task.description or task.title, task.agent_type)
        except ExecutorFailure as e:
            reason = str(e) or "unknown spawn failure"
            logger.warning("Spawn failed for task %s: %s", task.id, reason)
            with transaction(db):
                add_log(db, task.id, "error", f"{failure_event_type.replace('_', ' ')}: {reason}")
                log_event(db, task.id, failure_event_type, "queued", reason)
            raise

        updates = {"agent_id": agent_id} if agent_id else None
        transition = transition_task(
            db,
            task.id,
            "running",
            event_type=event_type,
            updates=updates,
            expect_status="queued",
            capacity=limit,
            sticky={
                "session": spawned.session,
                "branch": spawned.branch,
                "worktree_path": spawned.worktree_path,
                "log_path": spawned.log_path,
            },
        )
        if transition is not None:
            logger.info("Dispatched task %s (session %s)", task.id, spawned.session)
        return transition, spawned

    def _refresh_snapshot(self, db: sqlite3.Connection, candidates: list[Task]) -> None:
        """Emit task:updated for every queued task whose blocked/queued view flipped."""
        snapshot: dict[str, str] = {}
        for task in candidates:
            observed = task.observed_status
            snapshot[task.id] = observed
            previous = self._snapshot.get(task.id)
            if previous and previous != observed:
                emit(self.events, TASK_UPDATED, {"task": task_dict(task), "source": "scheduler"})
        self._snapshot = snapshot
