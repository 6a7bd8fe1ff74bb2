"""CLI entry point for agent dispatch."""

import json
import logging
import sys
from pathlib import Path

import click

from agent_dispatch.config import get_config
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
from agent_dispatch.core.sync import sync_ledger
from agent_dispatch.db.engine import get_db
from agent_dispatch.db.models import AGENT_TYPES, CALENDAR_VIEWS, PRIORITIES, TASK_STATUSES
from agent_dispatch.errors import ConflictingState, DispatchError
from agent_dispatch.serializers import (
    activity_dict,
    agent_dict,
    calendar_dict,
    draft_dict,
    queue_dict,
    sync_dict,
    task_dict,
    tick_dict,
    tree_dict,
)


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _supervisor() -> Supervisor:
    return Supervisor.from_config(get_config())


def _fail(e: Exception):
    click.echo(f"Error: {e}", err=True)
    if isinstance(e, ConflictingState) and e.blocked_by:
        click.echo(f"  Blocked by: {', '.join(e.blocked_by)}", err=True)
    sys.exit(1)


def _echo_json(data):
    click.echo(json.dumps(data, indent=2))


STATUS_ICONS = {
    "queued": "○",
    "blocked": "✗",
    "running": "●",
    "pr_open": "◐",
    "completed": "✓",
    "failed": "!",
    "archived": "-",
}


@click.group()
def main():
    """ad - agent dispatch CLI"""
    pass


@main.command("init")
@click.option("--project", default=None, help="Also create a project with this ID")
@click.option("--name", default=None, help="Project name")
def init_cmd(project, name):
    """Create the database and the default project."""
    config = get_config()
    with _get_db() as db:
        projects_mod.ensure_project(db, config.default_project)
        click.echo(f"Database ready: {config.db_path}")
        if project:
            try:
                created = projects_mod.create_project(db, project, name or project)
            except DispatchError as e:
                _fail(e)
            click.echo(f"Project created: {created.id} ({created.name})")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description sent to the agent")
@click.option("--priority", "-p", default="medium", type=click.Choice(PRIORITIES))
@click.option("--agent-type", default="codex", type=click.Choice(AGENT_TYPES))
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--scheduled-at", default=None, help="ISO timestamp before which the task will not start")
@click.option("--estimate", default=30, type=int, help="Estimated duration in minutes")
def task_add(title, project, description, priority, agent_type, depends_on, scheduled_at, estimate):
    """Create a new task."""
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db,
                title,
                project_id=project,
                description=description,
                priority=priority,
                agent_type=agent_type,
                depends_on=depends_on,
                scheduled_at=scheduled_at,
                estimated_duration_min=estimate,
            )
        except DispatchError as e:
            _fail(e)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.observed_status}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.option("--project", default=None, help="Project ID")
@click.option("--status", default=None, type=click.Choice(TASK_STATUSES + ("blocked",)))
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = store.list_tasks(db, project_id=project, status=status)

        if json_output:
            _echo_json([task_dict(t) for t in tasks])
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            icon = STATUS_ICONS.get(task.observed_status, "?")
            deps = f" [blocked by: {', '.join(task.blocked_by)}]" if task.blocked_by else ""
            click.echo(f"  {icon} {task.priority:<6} {task.id}: {task.title} ({task.observed_status}){deps}")


@task_group.command("show")
@click.argument("task_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_show(task_id, json_output):
    """Show task details."""
    with _get_db() as db:
        task = store.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        if json_output:
            _echo_json(task_dict(task))
            return

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.observed_status}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Agent: {task.agent_type}" + (f" ({task.agent_id})" if task.agent_id else ""))
        click.echo(f"  Project: {task.project_id}")
        click.echo(f"  Retries: {task.retry_count}/{task.max_retries}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.scheduled_at:
            click.echo(f"  Scheduled: {task.scheduled_at}")
        if task.session:
            click.echo(f"  Session: {task.session}")
        if task.branch:
            click.echo(f"  Branch: {task.branch}")
        if task.pr_url:
            click.echo(f"  PR: {task.pr_url}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")
        if task.actual_duration_min is not None:
            click.echo(f"  Duration: {task.actual_duration_min} min")

        events = store.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")

        logs = store.get_task_logs(db, task_id, limit=20)
        if logs:
            click.echo("  Logs:")
            for entry in reversed(logs):
                click.echo(f"    [{entry.level}] {entry.message}")


@task_group.command("update")
@click.argument("task_id")
@click.option("--status", default=None, type=click.Choice(TASK_STATUSES))
@click.option("--priority", "-p", default=None, type=click.Choice(PRIORITIES))
@click.option("--agent-type", default=None, type=click.Choice(AGENT_TYPES))
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--pr-url", default=None)
@click.option("--scheduled-at", default=None)
def task_update(task_id, **options):
    """Update task fields."""
    fields = {k: v for k, v in options.items() if v is not None}
    if not fields:
        click.echo("Nothing to update.", err=True)
        sys.exit(1)
    with _get_db() as db:
        try:
            task = tasks_mod.update_task(db, task_id, **fields)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Updated {task.id}: {task.observed_status}, {task.priority}")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task with its edges and history."""
    with _get_db() as db:
        try:
            tasks_mod.delete_task(db, task_id)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Deleted task: {task_id}")


@task_group.command("deps")
@click.argument("task_id")
@click.option("--set", "set_deps", default=None, help="Comma-separated task IDs; empty string clears")
def task_deps(task_id, set_deps):
    """Show or replace a task's dependencies."""
    with _get_db() as db:
        try:
            if set_deps is not None:
                task = tasks_mod.set_task_dependencies(db, task_id, set_deps)
            else:
                task = store.get_task(db, task_id)
                if not task:
                    click.echo(f"Task not found: {task_id}", err=True)
                    sys.exit(1)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Depends on: {', '.join(task.depends_on) or '(none)'}")
        if task.blocked_by:
            click.echo(f"Blocked by: {', '.join(task.blocked_by)}")


@task_group.command("tree")
@click.argument("task_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_tree(task_id, json_output):
    """Show the transitive dependency tree of a task."""
    with _get_db() as db:
        try:
            tree = graph_mod.dependency_tree(db, task_id)
        except DispatchError as e:
            _fail(e)

        if json_output:
            _echo_json(tree_dict(tree))
            return

        status = {n.id: n.observed_status for n in tree.nodes}
        click.echo(f"{task_id} ({status.get(task_id)})")
        for edge in tree.edges:
            indent = "  " * edge.depth
            click.echo(f"{indent}└─ {edge.to_id} ({status.get(edge.to_id, 'missing')})")


@task_group.command("dispatch")
@click.argument("task_id")
@click.option("--agent-id", default=None, help="Assign a registered agent")
def task_dispatch(task_id, agent_id):
    """Spawn an agent for a task now."""
    supervisor = _supervisor()
    with _get_db() as db:
        try:
            task, spawned = supervisor.scheduler.dispatch(db, task_id, agent_id=agent_id)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Dispatched {task.id}")
        if spawned.session:
            click.echo(f"  Session: {spawned.session}")
        if spawned.branch:
            click.echo(f"  Branch: {spawned.branch}")
        if spawned.worktree_path:
            click.echo(f"  Worktree: {spawned.worktree_path}")


@task_group.command("kill")
@click.argument("task_id")
def task_kill(task_id):
    """Terminate a running task's agent and mark it failed."""
    supervisor = _supervisor()
    with _get_db() as db:
        try:
            task = transitions_mod.kill_task(db, task_id, supervisor.executor)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Killed {task.id}: {task.status}")


@task_group.command("retry")
@click.argument("task_id")
def task_retry(task_id):
    """Requeue a failed task."""
    with _get_db() as db:
        try:
            task = transitions_mod.retry_task(db, task_id)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Requeued {task.id} (retry {task.retry_count}/{task.max_retries})")


@task_group.command("redirect")
@click.argument("task_id")
@click.argument("message")
@click.option("--session", default=None, help="Override the stored session")
def task_redirect(task_id, message, session):
    """Send a message to a running task's agent."""
    supervisor = _supervisor()
    with _get_db() as db:
        try:
            output = transitions_mod.redirect_task(db, task_id, message, supervisor.executor, session=session)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Redirected {task_id}")
        if output:
            click.echo(output)


@task_group.command("from-prompt")
@click.argument("prompt")
@click.option("--project", default="default", help="Project ID")
@click.option("--dry-run", is_flag=True, help="Only show the interpreted draft")
def task_from_prompt(prompt, project, dry_run):
    """Create a task from a free-text request."""
    with _get_db() as db:
        try:
            draft, task = create_task_from_prompt(db, prompt, project_id=project, dry_run=dry_run)
        except DispatchError as e:
            _fail(e)
        if task is None:
            _echo_json(draft_dict(draft))
            return
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Agent: {task.agent_type}")
        if task.scheduled_at:
            click.echo(f"  Scheduled: {task.scheduled_at}")


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("list")
def project_list():
    """List projects."""
    with _get_db() as db:
        for p in projects_mod.list_projects(db):
            click.echo(f"  {p.id}: {p.name}")


@project_group.command("update")
@click.argument("project_id")
@click.option("--name", default=None)
@click.option("--description", "-d", default=None)
def project_update(project_id, name, description):
    """Rename or re-describe a project."""
    with _get_db() as db:
        try:
            project = projects_mod.update_project(db, project_id, name, description)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Updated project: {project.id} ({project.name})")


@project_group.command("delete")
@click.argument("project_id")
def project_delete(project_id):
    """Delete a project and all of its tasks."""
    with _get_db() as db:
        try:
            task_ids = projects_mod.delete_project(db, project_id)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Deleted project: {project_id} ({len(task_ids)} task(s))")


@project_group.command("activity")
@click.argument("project_id")
@click.option("--limit", default=50, type=click.IntRange(min=1), help="Number of records")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_activity(project_id, limit, json_output):
    """Show recent task activity across a project."""
    with _get_db() as db:
        if not projects_mod.get_project(db, project_id):
            click.echo(f"Project not found: {project_id}", err=True)
            sys.exit(1)
        activities = store.get_project_activity(db, project_id, limit)

    if json_output:
        _echo_json([activity_dict(a) for a in activities])
        return
    if not activities:
        click.echo("No activity.")
        return
    for a in activities:
        change = f" {a.event.old_value} -> {a.event.new_value}" if a.event.old_value else ""
        click.echo(f"  {a.event.created_at:%Y-%m-%d %H:%M} {a.event.task_id}: {a.event.event_type}{change}")


@main.command("calendar")
@click.argument("view", default="daily", type=click.Choice(CALENDAR_VIEWS))
@click.option("--date", "anchor", default=None, help="YYYY-MM-DD (daily, weekly) or YYYY-MM (monthly)")
@click.option("--project", default="default", help="Project ID")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def calendar_cmd(view, anchor, project, json_output):
    """Show a project's tasks for a day, ISO week or month."""
    with _get_db() as db:
        try:
            window = calendar_tasks(db, view, anchor, project)
        except DispatchError as e:
            _fail(e)

    if json_output:
        _echo_json(calendar_dict(window))
        return
    click.echo(f"{window.project_id} {window.view} {window.start} .. {window.end}")
    if not window.tasks:
        click.echo("  No tasks.")
    for task in window.tasks:
        when = task.scheduled_at or task.started_at or task.completed_at or task.created_at
        icon = STATUS_ICONS.get(task.observed_status, "?")
        click.echo(f"  {icon} {when:%Y-%m-%d %H:%M} {task.id}: {task.title}")


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage agents."""
    pass


@agent_group.command("add")
@click.argument("name")
@click.option("--type", "agent_type", default="codex", type=click.Choice(AGENT_TYPES))
@click.option("--project", default="default", help="Project ID")
@click.option("--id", "agent_id", default=None, help="Explicit agent ID")
def agent_add(name, agent_type, project, agent_id):
    """Register an agent."""
    with _get_db() as db:
        try:
            agent = agents_mod.create_agent(db, name, type=agent_type, project_id=project, agent_id=agent_id)
        except DispatchError as e:
            _fail(e)
        click.echo(f"Registered agent: {agent.id} ({agent.name}, {agent.type})")


@agent_group.command("list")
@click.option("--project", default=None, help="Project ID")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_list(project, json_output):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, project)
        if json_output:
            _echo_json([agent_dict(a) for a in agents])
            return
        if not agents:
            click.echo("No agents registered.")
            return
        for a in agents:
            current = f" -> {a.current_task_id}" if a.current_task_id else ""
            click.echo(
                f"  {a.id}: {a.name} [{a.type}, {a.status}]{current} "
                f"{a.success_count}/{a.total_tasks} ok, avg {a.avg_duration_min} min"
            )


@agent_group.command("show")
@click.argument("agent_id")
def agent_show(agent_id):
    """Show an agent's counters."""
    with _get_db() as db:
        agent = store.get_agent(db, agent_id)
        if not agent:
            click.echo(f"Agent not found: {agent_id}", err=True)
            sys.exit(1)
        _echo_json(agent_dict(agent))


# ── Scheduler Commands ────────────────────────────────────────────────────────


@main.command("queue")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def queue_cmd(json_output):
    """Show running, queued and blocked tasks."""
    config = get_config()
    with _get_db() as db:
        limit = scheduler_mod.get_max_concurrent_agents(db, config.max_concurrent_agents)
        status = scheduler_mod.queue_status(db, limit)

    if json_output:
        _echo_json(queue_dict(status))
        return

    click.echo(f"Running {status.running_count}/{status.limit} ({status.available} slot(s) free)")
    for t in status.running:
        click.echo(f"  ● {t.id}: {t.title} [{t.session or 'no session'}]")
    if status.queued:
        click.echo("Queued:")
        for entry in status.queued:
            click.echo(f"  {entry.position}. {entry.task.id} ({entry.task.priority}): {entry.task.title}")
    if status.blocked:
        click.echo("Blocked:")
        for t in status.blocked:
            click.echo(f"  ✗ {t.id}: waiting on {', '.join(t.blocked_by)}")


@main.group("config")
def config_group():
    """Show or change runtime settings."""
    pass


@config_group.command("show")
def config_show():
    """Show stored settings."""
    config = get_config()
    with _get_db() as db:
        _echo_json(scheduler_mod.get_system_config(db, config.max_concurrent_agents))


@config_group.command("set")
@click.option("--max-concurrent-agents", required=True, help="Global running-agent ceiling (1..32)")
def config_set(max_concurrent_agents):
    """Change stored settings."""
    config = get_config()
    with _get_db() as db:
        try:
            result = scheduler_mod.update_system_config(db, max_concurrent_agents, config.max_concurrent_agents)
        except DispatchError as e:
            _fail(e)
        click.echo(f"max_concurrent_agents = {result['max_concurrent_agents']}")


@main.command("tick")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def tick_cmd(json_output):
    """Run one scheduler pass now."""
    result = _supervisor().trigger_scheduler()
    if json_output:
        _echo_json(tick_dict(result))
        return
    click.echo(f"Dispatched: {', '.join(result.dispatched) or '(none)'}")
    if result.failed:
        click.echo(f"Spawn failed: {', '.join(result.failed)}")
    click.echo(f"Running {result.running}/{result.limit}")


@main.command("status")
def status_cmd():
    """Show the swarm's own status report."""
    try:
        output = _supervisor().executor.status()
    except DispatchError as e:
        _fail(e)
    click.echo(output)


@main.command("sync")
@click.option("--ledger", "ledger_path", default=None, type=click.Path(path_type=Path), help="Ledger file to read")
def sync_cmd(ledger_path):
    """Reconcile the store against the task ledger."""
    config = get_config()
    with _get_db() as db:
        result = sync_ledger(db, ledger_path or config.ledger_path, default_project=config.default_project)
    _echo_json(sync_dict(result))
    if result.errors and not result.scanned:
        sys.exit(1)


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_cmd(host, port):
    """Run the HTTP API with the scheduler and ledger sync in the background."""
    from agent_dispatch.web.app import run_server

    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"Serving on http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_dispatch.mcp.server import mcp
    from agent_dispatch.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
