"""One-way reconciliation of an external task ledger into the task store.

The ledger is a JSON file written by the agent swarm tooling. Each pass
reads it, normalizes every record through the alias tables in
core.aliases, and merges the result in a single transaction with one
savepoint per record. A record that has not changed produces no write,
no audit row and no event, so repeated passes over an unchanged ledger
are silent.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agent_dispatch.core import aliases, graph
from agent_dispatch.core.agents import ensure_agent
from agent_dispatch.core.projects import ensure_project, get_project
from agent_dispatch.core.stats import apply_agent_transition
from agent_dispatch.core.store import get_agent, get_task, get_task_row, log_event
from agent_dispatch.core.transitions import apply_lifecycle, transition_task
from agent_dispatch.db.engine import normalize_iso, parse_dt, savepoint, to_iso, transaction, utcnow
from agent_dispatch.db.models import SyncResult
from agent_dispatch.errors import DispatchError, InvalidDependency, ReconciliationRecordSkipped
from agent_dispatch.events import AGENT_STATUS, TASK_CREATED, TASK_UPDATED, EventBus, emit, status_event_name
from agent_dispatch.serializers import agent_dict, task_dict

logger = logging.getLogger(__name__)

LEDGER_FILENAME = "active-tasks.json"

# Columns compared against the stored row, in write order.
COMPARED_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "agent_type",
    "agent_id",
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
)

# A null in the ledger keeps whatever the store already has.
STICKY_FIELDS = (
    "branch",
    "session",
    "worktree_path",
    "log_path",
    "started_at",
    "completed_at",
    "actual_duration_min",
)

TIME_FIELDS = ("scheduled_at", "started_at", "completed_at")


@dataclass
class LedgerTask:
    id: str
    title: str
    description: str = ""
    status: str = "queued"
    priority: str = "medium"
    agent_type: str = "codex"
    agent_id: str | None = None
    agent_name: str | None = None
    project_id: str | None = None
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
    depends_on: list[str] = field(default_factory=list)


# ── Ledger location and parsing ─────────────────────────────────────────────


def ledger_candidates(explicit: Path | None = None, cwd: Path | None = None, home: Path | None = None) -> list[Path]:
    cwd = cwd or Path.cwd()
    home = home or Path.home()
    candidates = [explicit] if explicit else []
    for base in (cwd, cwd.parent, cwd.parent.parent):
        candidates.append(base / LEDGER_FILENAME)
        candidates.append(base / ".openclaw" / LEDGER_FILENAME)
    candidates.append(home / ".openclaw" / LEDGER_FILENAME)
    return candidates


def resolve_ledger_path(explicit: Path | None = None) -> Path | None:
    """First existing ledger file. An explicit path is never second-guessed."""
    if explicit:
        return explicit if explicit.exists() else None
    for candidate in ledger_candidates():
        if candidate.exists():
            return candidate
    return None


def extract_records(payload) -> list:
    """The record list of a ledger payload: a bare list or a wrapping object."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in aliases.RECORD_LIST_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


def _as_string(value) -> str | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value == value and abs(value) != float("inf"):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    return None


def _as_time(value) -> datetime | None:
    if value is None:
        return None
    return parse_dt(str(value))


def _as_string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    result = []
    for item in value:
        item = _as_string(item)
        if item and item not in result:
            result.append(item)
    return result


def normalize_record(record) -> LedgerTask:
    """Map one free-form ledger record onto task fields.

    Raises ReconciliationRecordSkipped when the record is not an object or
    carries neither an id nor a session to derive one from.
    """
    if not isinstance(record, dict):
        raise ReconciliationRecordSkipped(f"ledger record is not an object: {type(record).__name__}")

    def read(name):
        return aliases.read_field(record, name)

    session = _as_string(read("session"))
    task_id = _as_string(read("id")) or (f"session:{session}" if session else None)
    if not task_id:
        raise ReconciliationRecordSkipped("ledger record has no id or session")

    description = _as_string(read("description")) or ""
    title = _as_string(read("title")) or (description[:96] if description else f"Task {task_id[:8]}")
    pr_number = _as_int(read("pr_number"))
    retry_count = _as_int(read("retry_count"))
    max_retries = _as_int(read("max_retries"))
    estimate = _as_int(read("estimated_duration_min"))
    actual = _as_int(read("actual_duration_min"))

    return LedgerTask(
        id=task_id,
        title=title,
        description=description,
        status=aliases.map_status(read("status")),
        priority=aliases.map_priority(read("priority")),
        agent_type=aliases.map_agent_type(read("agent_type")),
        agent_id=_as_string(read("agent_id")),
        agent_name=_as_string(read("agent_name")),
        project_id=_as_string(read("project_id")),
        branch=_as_string(read("branch")),
        pr_url=_as_string(read("pr_url")),
        pr_number=pr_number if pr_number is None or pr_number >= 0 else None,
        ci_status=aliases.map_ci_status(read("ci_status")),
        retry_count=max(0, retry_count) if retry_count is not None else 0,
        max_retries=max(0, max_retries) if max_retries is not None else 3,
        scheduled_at=_as_time(read("scheduled_at")),
        started_at=_as_time(read("started_at")),
        completed_at=_as_time(read("completed_at")),
        estimated_duration_min=max(0, estimate) if estimate is not None else 30,
        actual_duration_min=actual if actual is None or actual >= 0 else None,
        session=session,
        worktree_path=_as_string(read("worktree_path")),
        log_path=_as_string(read("log_path")),
        depends_on=[d for d in _as_string_list(read("depends_on")) if d != task_id],
    )


# ── Merge ───────────────────────────────────────────────────────────────────


def _stored(row: sqlite3.Row, name: str):
    if name in TIME_FIELDS:
        return normalize_iso(row[name])
    return row[name]


def _desired(rec: LedgerTask, row: sqlite3.Row | None) -> dict:
    """Column values the ledger asks for, with sticky fields and lifecycle applied."""
    values = {name: getattr(rec, name) for name in COMPARED_FIELDS}
    if row is not None:
        for name in STICKY_FIELDS:
            if values[name] is None:
                stored = row[name]
                values[name] = parse_dt(stored) if name in TIME_FIELDS else stored

    started_at, completed_at, actual = apply_lifecycle(
        row["status"] if row is not None else None,
        rec.status,
        values["started_at"],
        values["completed_at"],
        values["actual_duration_min"],
    )
    values.update(started_at=started_at, completed_at=completed_at, actual_duration_min=actual)

    for name in TIME_FIELDS:
        values[name] = to_iso(values[name]) if values[name] else None
    return values


def _merge_record(db: sqlite3.Connection, rec: LedgerTask, default_project: str) -> tuple[str | None, bool]:
    """Upsert one record. Returns (change kind, agent row changed)."""
    row = get_task_row(db, rec.id)

    if rec.project_id and get_project(db, rec.project_id):
        project_id = rec.project_id
    elif row is not None:
        project_id = row["project_id"]
    else:
        project_id = default_project

    agent_changed = False
    if rec.agent_id:
        agent_changed = ensure_agent(
            db,
            rec.agent_id,
            rec.agent_type,
            "busy" if rec.status == "running" else "idle",
            project_id,
            name=rec.agent_name,
            current_task_id=rec.id,
        )

    values = _desired(rec, row)

    if row is None:
        columns = ["id", "project_id", *COMPARED_FIELDS]
        db.execute(
            f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            [rec.id, project_id, *(values[name] for name in COMPARED_FIELDS)],
        )
        log_event(db, rec.id, "synced_created", None, rec.status)
        agent_changed = (
            apply_agent_transition(db, rec.id, None, rec.status, rec.agent_id, values["actual_duration_min"])
            or agent_changed
        )
        return "created", agent_changed

    diff = {name: value for name, value in values.items() if _stored(row, name) != value}
    if row["project_id"] != project_id:
        diff["project_id"] = project_id
    if not diff:
        return None, agent_changed

    if "status" in diff:
        new_status = diff.pop("status")
        updates = {k: (parse_dt(v) if k in TIME_FIELDS and v else v) for k, v in diff.items()}
        transition = transition_task(db, rec.id, new_status, updates=updates)
        return "status", agent_changed or transition.agent_changed

    set_clause = ", ".join(f"{k} = ?" for k in diff)
    db.execute(
        f"UPDATE tasks SET {set_clause}, updated_at = ? WHERE id = ?",
        [*diff.values(), to_iso(utcnow()), rec.id],
    )
    return "updated", agent_changed


def _merge_dependencies(db: sqlite3.Connection, rec: LedgerTask, result: SyncResult) -> bool:
    """Replace the record's edge set. Returns True when edges changed."""
    row = get_task_row(db, rec.id)
    wanted = []
    for dep_id in rec.depends_on:
        dep = get_task_row(db, dep_id)
        if dep is None:
            result.errors.append(f"{rec.id}: dropped unknown dependency {dep_id}")
        elif dep["project_id"] != row["project_id"]:
            result.errors.append(f"{rec.id}: dropped cross-project dependency {dep_id}")
        else:
            wanted.append(dep_id)

    if wanted == graph.dependencies_of(db, rec.id):
        return False
    try:
        wanted = graph.validate_dependencies(db, rec.id, row["project_id"], wanted)
    except InvalidDependency as e:
        result.errors.append(f"{rec.id}: kept existing dependencies, {e}")
        return False
    graph.write_dependencies(db, rec.id, wanted)
    return True


def sync_ledger(
    db: sqlite3.Connection,
    path: Path | None = None,
    events: EventBus | None = None,
    default_project: str = "default",
) -> SyncResult:
    """Merge the ledger into the store. Never raises for ledger problems."""
    result = SyncResult(synced_at=utcnow())
    source = resolve_ledger_path(path)
    if source is None:
        result.errors.append(f"{path or LEDGER_FILENAME} not found")
        return result
    result.source = str(source)

    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        result.errors.append(f"Unable to parse {source}: {e}")
        return result

    records = extract_records(payload)
    result.scanned = len(records)

    changes: dict[str, str] = {}
    agents_changed: list[str] = []
    merged: list[LedgerTask] = []

    with transaction(db):
        ensure_project(db, default_project)

        for raw in records:
            try:
                rec = normalize_record(raw)
            except ReconciliationRecordSkipped as e:
                result.skipped += 1
                logger.debug("Skipped ledger record: %s", e)
                continue
            try:
                with savepoint(db, "ledger_record"):
                    kind, agent_changed = _merge_record(db, rec, default_project)
            except (sqlite3.Error, DispatchError) as e:
                result.errors.append(f"{rec.id}: {e}")
                logger.warning("Ledger record %s failed to merge: %s", rec.id, e)
                continue
            merged.append(rec)
            if kind:
                changes[rec.id] = kind
            if agent_changed and rec.agent_id not in agents_changed:
                agents_changed.append(rec.agent_id)

        for rec in merged:
            if _merge_dependencies(db, rec, result) and rec.id not in changes:
                changes[rec.id] = "updated"

    for task_id, kind in changes.items():
        task = get_task(db, task_id)
        if kind == "created":
            result.created += 1
            emit(events, TASK_CREATED, {"task": task_dict(task), "source": "sync"})
        else:
            result.updated += 1
            name = status_event_name(task.status) if kind == "status" else TASK_UPDATED
            emit(events, name, {"task": task_dict(task), "source": "sync"})
    result.upserted = result.created + result.updated

    for agent_id in agents_changed:
        agent = get_agent(db, agent_id)
        if agent:
            emit(events, AGENT_STATUS, {"agent": agent_dict(agent), "source": "sync"})

    if result.upserted or result.skipped or result.errors:
        logger.info(
            "Ledger sync from %s: %d scanned, %d created, %d updated, %d skipped, %d errors",
            source,
            result.scanned,
            result.created,
            result.updated,
            result.skipped,
            len(result.errors),
        )
    return result

