"""HTTP API for agent dispatch."""

import contextlib
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

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
from agent_dispatch.core.stats import system_stats
from agent_dispatch.core.supervisor import Supervisor
from agent_dispatch.db.engine import get_db
from agent_dispatch.errors import ConflictingState, ExecutorFailure, NotFound, ValidationError
from agent_dispatch.serializers import (
    activity_dict,
    agent_dict,
    calendar_dict,
    draft_dict,
    event_dict,
    log_dict,
    project_dict,
    queue_dict,
    start_check_dict,
    sync_dict,
    task_dict,
    tick_dict,
    tree_dict,
)

logger = logging.getLogger(__name__)

TASK_CREATE_FIELDS = {
    "title",
    "project_id",
    "description",
    "priority",
    "agent_type",
    "agent_id",
    "status",
    "scheduled_at",
    "estimated_duration_min",
    "max_retries",
    "depends_on",
}
AGENT_CREATE_FIELDS = {"name", "type", "status", "project_id", "id"}


def _get_db(request: Request):
    return get_db(request.app.state.config.db_path)


def _supervisor(request: Request) -> Supervisor:
    return request.app.state.supervisor


async def _body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _only(body: dict, allowed: set) -> dict:
    unknown = set(body) - allowed
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
    return body


def _limit(raw: str | None, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError("limit must be a positive integer") from None
    if value < 1:
        raise ValidationError("limit must be a positive integer")
    return value


def _require_task(db, task_id: str):
    task = store.get_task(db, task_id)
    if not task:
        raise NotFound(f"Task not found: {task_id}")
    return task


# ── Error handlers ────────────────────────────────────────────────────────────


async def validation_error(request: Request, exc: ValidationError):
    return JSONResponse({"error": str(exc)}, status_code=400)


async def not_found(request: Request, exc: NotFound):
    return JSONResponse({"error": str(exc)}, status_code=404)


async def conflicting_state(request: Request, exc: ConflictingState):
    body = {"error": str(exc), "reason": exc.reason}
    if exc.blocked_by:
        body["blocked_by"] = exc.blocked_by
    return JSONResponse(body, status_code=409)


async def executor_failure(request: Request, exc: ExecutorFailure):
    return JSONResponse({"error": str(exc)}, status_code=502)


# ── Health / projects ─────────────────────────────────────────────────────────


async def health(request: Request):
    return JSONResponse({"status": "ok"})


async def api_list_projects(request: Request):
    with _get_db(request) as db:
        return JSONResponse([project_dict(p) for p in projects_mod.list_projects(db)])


async def api_create_project(request: Request):
    body = _only(await _body(request), {"id", "name", "description"})
    project_id = body.get("id") or ""
    with _get_db(request) as db:
        project = projects_mod.create_project(
            db, project_id, body.get("name") or project_id, body.get("description") or ""
        )
        return JSONResponse(project_dict(project), status_code=201)


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    with _get_db(request) as db:
        project = projects_mod.get_project(db, project_id)
        if not project:
            raise NotFound(f"Project not found: {project_id}")
        return JSONResponse(project_dict(project))


async def api_update_project(request: Request):
    body = _only(await _body(request), {"name", "description"})
    with _get_db(request) as db:
        project = projects_mod.update_project(
            db, request.path_params["project_id"], body.get("name"), body.get("description")
        )
        return JSONResponse(project_dict(project))


async def api_delete_project(request: Request):
    project_id = request.path_params["project_id"]
    with _get_db(request) as db:
        task_ids = projects_mod.delete_project(db, project_id, events=_supervisor(request).events)
    return JSONResponse({"deleted": project_id, "tasks": task_ids})


async def api_project_activities(request: Request):
    project_id = request.path_params["project_id"]
    limit = _limit(request.query_params.get("limit"), 50)
    with _get_db(request) as db:
        if not projects_mod.get_project(db, project_id):
            raise NotFound(f"Project not found: {project_id}")
        return JSONResponse([activity_dict(a) for a in store.get_project_activity(db, project_id, limit)])


async def api_calendar(request: Request):
    params = request.query_params
    with _get_db(request) as db:
        window = calendar_tasks(
            db,
            request.path_params["view"],
            params.get("date"),
            params.get("project_id") or "default",
        )
        return JSONResponse(calendar_dict(window))


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    params = request.query_params
    with _get_db(request) as db:
        tasks = store.list_tasks(
            db,
            project_id=params.get("project_id"),
            status=params.get("status"),
            agent_id=params.get("agent_id"),
        )
        return JSONResponse([task_dict(t) for t in tasks])


async def api_create_task(request: Request):
    body = _only(await _body(request), TASK_CREATE_FIELDS)
    with _get_db(request) as db:
        task = tasks_mod.create_task(db, body.pop("title", None), events=_supervisor(request).events, **body)
    _supervisor(request).nudge_scheduler()
    return JSONResponse(task_dict(task), status_code=201)


async def api_task_from_prompt(request: Request):
    body = _only(await _body(request), {"prompt", "project_id", "dry_run"})
    with _get_db(request) as db:
        draft, task = create_task_from_prompt(
            db,
            body.get("prompt"),
            project_id=body.get("project_id") or "default",
            dry_run=bool(body.get("dry_run")),
            events=_supervisor(request).events,
        )
    if task is None:
        return JSONResponse({"draft": draft_dict(draft), "task": None})
    _supervisor(request).nudge_scheduler()
    return JSONResponse({"draft": draft_dict(draft), "task": task_dict(task)}, status_code=201)


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        return JSONResponse(task_dict(_require_task(db, task_id)))


async def api_update_task(request: Request):
    task_id = request.path_params["task_id"]
    body = _only(await _body(request), tasks_mod.UPDATABLE_FIELDS)
    with _get_db(request) as db:
        task = tasks_mod.update_task(db, task_id, events=_supervisor(request).events, **body)
    _supervisor(request).nudge_scheduler()
    return JSONResponse(task_dict(task))


async def api_delete_task(request: Request):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        tasks_mod.delete_task(db, task_id, events=_supervisor(request).events)
    _supervisor(request).nudge_scheduler()
    return JSONResponse({"deleted": task_id})


async def api_get_dependencies(request: Request):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        task = _require_task(db, task_id)
        return JSONResponse({"task_id": task.id, "depends_on": task.depends_on, "blocked_by": task.blocked_by})


async def api_set_dependencies(request: Request):
    task_id = request.path_params["task_id"]
    body = _only(await _body(request), {"depends_on"})
    if "depends_on" not in body:
        raise ValidationError("depends_on is required")
    with _get_db(request) as db:
        task = tasks_mod.set_task_dependencies(
            db, task_id, body.get("depends_on"), events=_supervisor(request).events
        )
    _supervisor(request).nudge_scheduler()
    return JSONResponse(task_dict(task))


async def api_dependency_tree(request: Request):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        return JSONResponse(tree_dict(graph_mod.dependency_tree(db, task_id)))


async def api_can_start(request: Request):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        limit = _supervisor(request).scheduler.limit(db)
        return JSONResponse(start_check_dict(scheduler_mod.can_task_start(db, task_id, limit)))


async def api_task_events(request: Request):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        _require_task(db, task_id)
        return JSONResponse([event_dict(e) for e in store.get_task_events(db, task_id)])


async def api_task_logs(request: Request):
    task_id = request.path_params["task_id"]
    try:
        limit = int(request.query_params.get("limit", 200))
    except ValueError:
        raise ValidationError("limit must be an integer") from None
    with _get_db(request) as db:
        _require_task(db, task_id)
        return JSONResponse([log_dict(entry) for entry in store.get_task_logs(db, task_id, limit)])


async def api_spawn_task(request: Request):
    task_id = request.path_params["task_id"]
    body = _only(await _body(request), {"agent_id"}) if await request.body() else {}
    supervisor = _supervisor(request)

    def dispatch():
        with _get_db(request) as db:
            return supervisor.scheduler.dispatch(db, task_id, agent_id=body.get("agent_id"))

    task, spawned = await run_in_threadpool(dispatch)
    return JSONResponse({
        "task": task_dict(task),
        "spawn": {
            "session": spawned.session,
            "branch": spawned.branch,
            "worktree_path": spawned.worktree_path,
            "log_path": spawned.log_path,
        },
    })


async def api_redirect_task(request: Request):
    task_id = request.path_params["task_id"]
    body = _only(await _body(request), {"message", "session"})
    executor = _supervisor(request).executor

    def redirect():
        with _get_db(request) as db:
            return transitions_mod.redirect_task(
                db, task_id, body.get("message"), executor, session=body.get("session")
            )

    output = await run_in_threadpool(redirect)
    return JSONResponse({"task_id": task_id, "output": output})


async def api_kill_task(request: Request):
    task_id = request.path_params["task_id"]
    supervisor = _supervisor(request)

    def kill():
        with _get_db(request) as db:
            return transitions_mod.kill_task(db, task_id, supervisor.executor, events=supervisor.events)

    task = await run_in_threadpool(kill)
    supervisor.nudge_scheduler()
    return JSONResponse(task_dict(task))


async def api_retry_task(request: Request):
    task_id = request.path_params["task_id"]
    supervisor = _supervisor(request)
    with _get_db(request) as db:
        task = transitions_mod.retry_task(db, task_id, events=supervisor.events)
    supervisor.nudge_scheduler()
    return JSONResponse(task_dict(task))


# ── Agents ────────────────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    with _get_db(request) as db:
        agents = agents_mod.list_agents(db, request.query_params.get("project_id"))
        return JSONResponse([agent_dict(a) for a in agents])


async def api_create_agent(request: Request):
    body = _only(await _body(request), AGENT_CREATE_FIELDS)
    with _get_db(request) as db:
        agent = agents_mod.create_agent(
            db,
            body.get("name"),
            type=body.get("type", "codex"),
            status=body.get("status", "idle"),
            project_id=body.get("project_id", "default"),
            agent_id=body.get("id"),
            events=_supervisor(request).events,
        )
        return JSONResponse(agent_dict(agent), status_code=201)


async def api_get_agent(request: Request):
    agent_id = request.path_params["agent_id"]
    with _get_db(request) as db:
        agent = store.get_agent(db, agent_id)
        if not agent:
            raise NotFound(f"Agent not found: {agent_id}")
        return JSONResponse(agent_dict(agent))


async def api_update_agent(request: Request):
    agent_id = request.path_params["agent_id"]
    body = _only(await _body(request), agents_mod.UPDATABLE_FIELDS | agents_mod.COUNTER_FIELDS)
    with _get_db(request) as db:
        agent = agents_mod.update_agent(db, agent_id, events=_supervisor(request).events, **body)
        return JSONResponse(agent_dict(agent))


async def api_delete_agent(request: Request):
    agent_id = request.path_params["agent_id"]
    with _get_db(request) as db:
        agents_mod.delete_agent(db, agent_id)
    return JSONResponse({"deleted": agent_id})


# ── System ────────────────────────────────────────────────────────────────────


async def api_get_config(request: Request):
    with _get_db(request) as db:
        default = _supervisor(request).scheduler.default_limit
        return JSONResponse(scheduler_mod.get_system_config(db, default))


async def api_update_config(request: Request):
    body = _only(await _body(request), {"max_concurrent_agents"})
    with _get_db(request) as db:
        default = _supervisor(request).scheduler.default_limit
        result = scheduler_mod.update_system_config(db, body.get("max_concurrent_agents"), default)
    _supervisor(request).nudge_scheduler()
    return JSONResponse(result)


async def api_queue(request: Request):
    with _get_db(request) as db:
        limit = _supervisor(request).scheduler.limit(db)
        return JSONResponse(queue_dict(scheduler_mod.queue_status(db, limit)))


async def api_stats(request: Request):
    with _get_db(request) as db:
        return JSONResponse(system_stats(db))


async def api_tick(request: Request):
    result = await run_in_threadpool(_supervisor(request).trigger_scheduler)
    return JSONResponse(tick_dict(result))


async def api_sync(request: Request):
    result = await run_in_threadpool(_supervisor(request).trigger_sync)
    if result is None:
        return JSONResponse({"skipped": True})
    return JSONResponse(sync_dict(result))


async def api_executor_status(request: Request):
    output = await run_in_threadpool(_supervisor(request).executor.status)
    return JSONResponse({"output": output})


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    executor=None,
    supervisor: Supervisor | None = None,
    background: bool = False,
) -> Starlette:
    """Build the app. With `background=True` the scheduler and sync timers
    run for the lifetime of the server."""
    config = config or get_config()
    supervisor = supervisor or Supervisor.from_config(config, executor=executor)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        if background:
            supervisor.start()
        try:
            yield
        finally:
            if background:
                supervisor.stop()

    routes = [
        Route("/health", health),
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route("/api/projects/{project_id}", api_get_project, methods=["GET"]),
        Route("/api/projects/{project_id}", api_update_project, methods=["PATCH", "PUT"]),
        Route("/api/projects/{project_id}", api_delete_project, methods=["DELETE"]),
        Route("/api/projects/{project_id}/activities", api_project_activities, methods=["GET"]),
        Route("/api/calendar/{view}", api_calendar, methods=["GET"]),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/from-prompt", api_task_from_prompt, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH", "PUT"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/dependencies", api_get_dependencies, methods=["GET"]),
        Route("/api/tasks/{task_id}/dependencies", api_set_dependencies, methods=["PUT"]),
        Route("/api/tasks/{task_id}/tree", api_dependency_tree, methods=["GET"]),
        Route("/api/tasks/{task_id}/can-start", api_can_start, methods=["GET"]),
        Route("/api/tasks/{task_id}/events", api_task_events, methods=["GET"]),
        Route("/api/tasks/{task_id}/logs", api_task_logs, methods=["GET"]),
        Route("/api/tasks/{task_id}/spawn", api_spawn_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/redirect", api_redirect_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/kill", api_kill_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/retry", api_retry_task, methods=["POST"]),
        Route("/api/agents", api_list_agents, methods=["GET"]),
        Route("/api/agents", api_create_agent, methods=["POST"]),
        Route("/api/agents/{agent_id}", api_get_agent, methods=["GET"]),
        Route("/api/agents/{agent_id}", api_update_agent, methods=["PATCH", "PUT"]),
        Route("/api/agents/{agent_id}", api_delete_agent, methods=["DELETE"]),
        Route("/api/system/config", api_get_config, methods=["GET"]),
        Route("/api/system/config", api_update_config, methods=["PUT"]),
        Route("/api/system/queue", api_queue, methods=["GET"]),
        Route("/api/system/stats", api_stats, methods=["GET"]),
        Route("/api/system/tick", api_tick, methods=["POST"]),
        Route("/api/system/sync", api_sync, methods=["POST"]),
        Route("/api/system/executor", api_executor_status, methods=["GET"]),
    ]
    exception_handlers = {
        ValidationError: validation_error,
        NotFound: not_found,
        ConflictingState: conflicting_state,
        ExecutorFailure: executor_failure,
    }
    app = Starlette(routes=routes, exception_handlers=exception_handlers, lifespan=lifespan)
    app.state.config = config
    app.state.supervisor = supervisor
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app(background=True)
    logger.info("Serving agent dispatch API on http://%s:%d", host, port)
    uvicorn.run(app, host=host, port=port)
