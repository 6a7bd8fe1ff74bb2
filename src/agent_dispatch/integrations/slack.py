"""Slack Web API integration."""

import logging
from dataclasses import dataclass

from agent_dispatch.events import TASK_COMPLETED, TASK_FAILED, EventBus

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
    client=None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = client or get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


STATUS_EMOJI = {
    "queued": ":white_circle:",
    "blocked": ":red_circle:",
    "running": ":large_blue_circle:",
    "pr_open": ":eyes:",
    "completed": ":white_check_mark:",
    "failed": ":x:",
    "archived": ":file_folder:",
}


def format_task_notification(task: dict) -> list[dict]:
    """Format a task status change as Slack blocks."""
    status = task.get("observed_status") or task.get("status", "")
    emoji = STATUS_EMOJI.get(status, ":grey_question:")
    text = (
        f"{emoji} *Task {status}*\n*{task.get('title')}* (`{task.get('id')}`)\n"
        f"Agent: {task.get('agent_type')} | Project: {task.get('project_id')}"
    )
    if task.get("actual_duration_min") is not None:
        text += f" | {task['actual_duration_min']} min"
    if task.get("pr_url"):
        text += f"\n<{task['pr_url']}|View Pull Request>"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


class SlackNotifier:
    """Event subscriber posting task completions and failures to a channel."""

    def __init__(self, token: str, channel: str, client=None):
        self.token = token
        self.channel = channel
        self.client = client or get_client(token)

    def attach(self, events: EventBus):
        events.subscribe(TASK_COMPLETED, self.handle)
        events.subscribe(TASK_FAILED, self.handle)

    def handle(self, name: str, payload: dict):
        task = payload.get("task") or {}
        blocks = format_task_notification(task)
        text = f"Task {task.get('id')} {task.get('status')}"
        try:
            send_message(self.token, self.channel, text, blocks=blocks, client=self.client)
        except SlackError as e:
            logger.warning("Slack notification skipped: %s", e)


def attach_notifier(events: EventBus, token: str | None, channel: str | None) -> SlackNotifier | None:
    """Subscribe a notifier when both token and channel are configured."""
    if not token or not channel:
        return None
    notifier = SlackNotifier(token, channel)
    notifier.attach(events)
    return notifier
