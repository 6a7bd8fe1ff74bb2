"""MCP prompt templates for common workflows."""

from agent_dispatch.mcp.server import mcp


@mcp.prompt()
def plan_work(goal: str, project: str = "default") -> str:
    """Generate a prompt to break a goal into dependent agent tasks."""
    return (
        f"I need to accomplish the following goal in the '{project}' project:\n\n"
        f"{goal}\n\n"
        f"Break this down into tasks an autonomous coding agent can finish on its own. For each task:\n"
        f"1. Give it a clear, concise title and a description the agent can act on\n"
        f"2. Pick a priority (low, medium, high, urgent) and an agent type (codex or claude)\n"
        f"3. List which earlier tasks it depends on\n\n"
        f"Create them with the create_task tool in dependency order, passing depends_on "
        f"with the ids returned for earlier tasks. Then call get_queue to show the result."
    )


@mcp.prompt()
def queue_report() -> str:
    """Generate a prompt for a dispatch queue status report."""
    return (
        "Please report on the agent dispatch queue.\n\n"
        "Use get_queue to see running, queued and blocked tasks, then provide:\n"
        "1. What is running and for how long\n"
        "2. What runs next, in queue order\n"
        "3. Which tasks are blocked and on what (use dependency_tree where helpful)\n"
        "4. Failed tasks worth retrying (list_tasks with status='failed')"
    )


@mcp.prompt()
def triage_failure(task_id: str) -> str:
    """Generate a prompt to investigate a failed task."""
    return (
        f"Task '{task_id}' failed. Use get_task to read its history.\n\n"
        f"Then:\n"
        f"1. Summarize what the agent was asked to do and where it stopped\n"
        f"2. Say whether a retry is likely to help, or whether the description needs changing first\n"
        f"3. If a retry makes sense and retries remain, call retry_task"
    )
