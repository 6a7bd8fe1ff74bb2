"""MCP server exposing agent dispatch tools."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agent_dispatch.config import Config, get_config
from agent_dispatch.core import agents as agents_mod
from agent_dispatch.core import graph as graph_mod
from agent_dispatch.core import projects as projects_mod
from agent_dispatch.core import scheduler as scheduler_mod
from agent_dispatch.core import store
from agent_dispatch.core import tasks as tasks_mod
from agent_dispatch.core import transitions as transitions_mod
from agent_dispatch.core.calendar_view import calendar_tasks
from agent_dispatch.core.prompts import create_task_from_prompt
from agent_dispatch.core.supervisor import Supervisor
from agent_dispatch.db.engine import get_db, init_db
from agent_dispatch.errors import ConflictingState, DispatchError
from agent_dispatch.serializers import (
    activity_dict,
    agent_dict,
    calendar_dict,
    draft_dict,
    event_dict,
    queue_dict,
    start_check_dict,
    sync_dict,
    task_dict,
    tick_dict,
    tree_dict,
)


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    supervisor: Supervisor


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and start the background timers; stop both on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    supervisor = Supervisor.from_config(config)
    supervisor.start()

    try:
        yield AppContext(db=db, config=config, supervisor=supervisor)
    finally:
        supervisor.stop()
        db.close()


mcp = FastMCP("agent-dispatch", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(e: DispatchError) -> dict:
    result = {"error": str(e)}
    if isinstance(e, ConflictingState):
        result["reason"] = e.reason
        if e.blocked_by:
            result["blocked_by"] = e.blocked_by
    return result


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    project: str = "default",
    description: str = "",
    priority: str = "medium",
    agent_type: str = "codex",
    depends_on: list[str] | None = None,
    scheduled_at: str | None = None,
    estimated_duration_min: int = 30,
) -> dict:
    """Create a queued task. Priority: low, medium, high or urgent. Agent type: codex or claude."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db,
            title,
            project_id=project,
            description=description,
            priority=priority,
            agent_type=agent_type,
            depends_on=depends_on,
            scheduled_at=scheduled_at,
            estimated_duration_min=estimated_duration_min,
            events=app.supervisor.events,
        )
    except DispatchError as e:
        return _error(e)
    app.supervisor.nudge_scheduler()
    return task_dict(task)


@mcp.tool()
def create_task_from_text(ctx: Context, prompt: str, project: str = "default", dry_run: bool = False) -> dict:
    """Interpret a free-text request into a task. With dry_run, only return the draft."""
    app = _ctx(ctx)
    try:
        draft, task = create_task_from_prompt(
            app.db, prompt, project_id=project, dry_run=dry_run, events=app.supervisor.events
        )
    except DispatchError as e:
        return _error(e)
    if task is not None:
        app.supervisor.nudge_scheduler()
    return {"draft": draft_dict(draft), "task": task_dict(task) if task else None}


@mcp.tool()
def list_tasks(
    ctx: Context,
    project: str | None = None,
    status: str | None = None,
) -> list[dict]:
    """List tasks, optionally filtered by project and status (status 'blocked' is computed)."""
    app = _ctx(ctx)
    return [task_dict(t) for t in store.list_tasks(app.db, project_id=project, status=status)]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its dependencies and audit history."""
    app = _ctx(ctx)
    task = store.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = task_dict(task)
    result["events"] = [event_dict(e) for e in store.get_task_events(app.db, task_id)]
    return result


@mcp.tool()
def update_task(ctx: Context, task_id: str, fields: dict) -> dict:
    """Update task fields, e.g. {"status": "completed"} or {"priority": "high", "pr_url": "..."}."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.update_task(app.db, task_id, events=app.supervisor.events, **fields)
    except DispatchError as e:
        return _error(e)
    app.supervisor.nudge_scheduler()
    return task_dict(task)


@mcp.tool()
def delete_task(ctx: Context, task_id: str) -> dict:
    """Delete a task with its dependency edges and history."""
    app = _ctx(ctx)
    try:
        tasks_mod.delete_task(app.db, task_id, events=app.supervisor.events)
    except DispatchError as e:
        return _error(e)
    return {"deleted": task_id}


@mcp.tool()
def retry_task(ctx: Context, task_id: str) -> dict:
    """Requeue a failed task, if it has retries left."""
    app = _ctx(ctx)
    try:
        task = transitions_mod.retry_task(app.db, task_id, events=app.supervisor.events)
    except DispatchError as e:
        return _error(e)
    app.supervisor.nudge_scheduler()
    return task_dict(task)


@mcp.tool()
async def kill_task(ctx: Context, task_id: str) -> dict:
    """Terminate a running task's agent and mark the task failed."""
    app = _ctx(ctx)

    def kill():
        with get_db(app.config.db_path) as db:
            return transitions_mod.kill_task(db, task_id, app.supervisor.executor, events=app.supervisor.events)

    try:
        task = await asyncio.to_thread(kill)
    except DispatchError as e:
        return _error(e)
    return task_dict(task)


@mcp.tool()
async def redirect_task(ctx: Context, task_id: str, message: str) -> dict:
    """Send a course-correction message to a running task's agent."""
    app = _ctx(ctx)

    def redirect():
        with get_db(app.config.db_path) as db:
            return transitions_mod.redirect_task(db, task_id, message, app.supervisor.executor)

    try:
        output = await asyncio.to_thread(redirect)
    except DispatchError as e:
        return _error(e)
    return {"task_id": task_id, "output": output}


# ── Dependency Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def set_dependencies(ctx: Context, task_id: str, depends_on: list[str]) -> dict:
    """Replace a task's dependencies. Rejects self, cross-project, unknown and cyclic edges."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.set_task_dependencies(app.db, task_id, depends_on, events=app.supervisor.events)
    except DispatchError as e:
        return _error(e)
    return task_dict(task)


@mcp.tool()
def dependency_tree(ctx: Context, task_id: str) -> dict:
    """Get the transitive dependency closure of a task with edge depths."""
    app = _ctx(ctx)
    try:
        return tree_dict(graph_mod.dependency_tree(app.db, task_id))
    except DispatchError as e:
        return _error(e)


# ── Queue and Dispatch Tools ──────────────────────────────────────────────────


@mcp.tool()
def get_queue(ctx: Context) -> dict:
    """Show running, queued (with positions) and blocked tasks against the concurrency limit."""
    app = _ctx(ctx)
    limit = app.supervisor.scheduler.limit(app.db)
    return queue_dict(scheduler_mod.queue_status(app.db, limit))


@mcp.tool()
def can_start(ctx: Context, task_id: str) -> dict:
    """Check whether a task could be dispatched right now, and why not."""
    app = _ctx(ctx)
    limit = app.supervisor.scheduler.limit(app.db)
    return start_check_dict(scheduler_mod.can_task_start(app.db, task_id, limit))


@mcp.tool()
async def dispatch_task(ctx: Context, task_id: str, agent_id: str | None = None) -> dict:
    """Spawn an agent for a task now, subject to dependencies and the concurrency limit."""
    app = _ctx(ctx)

    def dispatch():
        with get_db(app.config.db_path) as db:
            return app.supervisor.scheduler.dispatch(db, task_id, agent_id=agent_id)

    try:
        task, spawned = await asyncio.to_thread(dispatch)
    except DispatchError as e:
        return _error(e)
    result = task_dict(task)
    result["spawn_output"] = spawned.output
    return result


@mcp.tool()
async def run_scheduler(ctx: Context) -> dict:
    """Run one scheduler tick immediately."""
    return tick_dict(await asyncio.to_thread(_ctx(ctx).supervisor.trigger_scheduler))


@mcp.tool()
async def sync_ledger(ctx: Context) -> dict:
    """Reconcile the store against the external task ledger now."""
    result = await asyncio.to_thread(_ctx(ctx).supervisor.trigger_sync)
    if result is None:
        return {"skipped": True}
    return sync_dict(result)


@mcp.tool()
def set_max_concurrent_agents(ctx: Context, value: int) -> dict:
    """Set the global running-agent ceiling (clamped to 1..32)."""
    app = _ctx(ctx)
    try:
        result = scheduler_mod.update_system_config(
            app.db, value, app.supervisor.scheduler.default_limit
        )
    except DispatchError as e:
        return _error(e)
    app.supervisor.nudge_scheduler()
    return result


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def list_agents(ctx: Context, project: str | None = None) -> list[dict]:
    """List registered agents with their success/failure counters."""
    return [agent_dict(a) for a in agents_mod.list_agents(_ctx(ctx).db, project)]


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def calendar(ctx: Context, view: str = "daily", date: str | None = None, project: str = "default") -> dict:
    """Tasks of a project for a day or ISO week (date YYYY-MM-DD) or a month (YYYY-MM)."""
    try:
        return calendar_dict(calendar_tasks(_ctx(ctx).db, view, date, project))
    except DispatchError as e:
        return _error(e)


@mcp.tool()
def project_activity(ctx: Context, project: str, limit: int = 50) -> list[dict] | dict:
    """Most recent task audit records across a project, newest first."""
    app = _ctx(ctx)
    if not projects_mod.get_project(app.db, project):
        return {"error": f"Project not found: {project}"}
    return [activity_dict(a) for a in store.get_project_activity(app.db, project, max(1, limit))]
