"""In-process event fan-out.

Mutations emit events after their transaction commits. Delivery is
fire-and-forget: a failing subscriber is logged and the emitter moves on.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable

logger = logging.getLogger(__name__)

TASK_CREATED = "task:created"
TASK_UPDATED = "task:updated"
TASK_COMPLETED = "task:completed"
TASK_FAILED = "task:failed"
TASK_DELETED = "task:deleted"
AGENT_STATUS = "agent:status"

EVENT_NAMES = (TASK_CREATED, TASK_UPDATED, TASK_COMPLETED, TASK_FAILED, TASK_DELETED, AGENT_STATUS)

Handler = Callable[[str, dict], None]


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: Handler) -> None:
        """Register a handler for an event name, or '*' for every event."""
        with self._lock:
            self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(name, []):
                self._handlers[name].remove(handler)

    def emit(self, name: str, payload: dict) -> None:
        with self._lock:
            handlers = list(self._handlers.get(name, [])) + list(self._handlers.get("*", []))
        for handler in handlers:
            try:
                handler(name, payload)
            except Exception:
                logger.exception("Event handler failed for %s", name)


def emit(events: EventBus | None, name: str, payload: dict) -> None:
    """Emit on an optional bus."""
    if events is not None:
        events.emit(name, payload)


def status_event_name(status: str) -> str:
    """Event name for a task that moved into `status`."""
    if status == "completed":
        return TASK_COMPLETED
    if status == "failed":
        return TASK_FAILED
    return TASK_UPDATED
