"""Create tasks from free-text prompts through the normal creation path."""

import sqlite3
from collections.abc import Callable

from agent_dispatch.core.tasks import create_task
from agent_dispatch.db.models import Task, TaskDraft
from agent_dispatch.events import EventBus
from agent_dispatch.integrations.interpreter import interpret


def create_task_from_prompt(
    db: sqlite3.Connection,
    prompt: str,
    project_id: str = "default",
    dry_run: bool = False,
    events: EventBus | None = None,
    interpreter: Callable[[str], TaskDraft] = interpret,
) -> tuple[TaskDraft, Task | None]:
    """Interpret `prompt` and create the task unless `dry_run`.

    Dependency problems in the draft surface as InvalidDependency, exactly
    as they would for a hand-written task.
    """
    draft = interpreter(prompt)
    if dry_run:
        return draft, None
    task = create_task(
        db,
        title=draft.title,
        project_id=project_id,
        description=draft.description,
        priority=draft.priority,
        agent_type=draft.agent_type,
        scheduled_at=draft.scheduled_at,
        estimated_duration_min=draft.estimated_duration_min,
        depends_on=draft.depends_on,
        events=events,
    )
    return draft, task
