"""Keyword-based prompt interpreter.

Turns a free-text request such as "urgent: fix login with claude tomorrow
at 3pm, depends on task-auth" into a TaskDraft. Dates and times are
interpreted in UTC.
"""

import re
from datetime import datetime, timedelta

from agent_dispatch.db.engine import utcnow
from agent_dispatch.db.models import TaskDraft
from agent_dispatch.errors import ValidationError

_URGENT_RE = re.compile(r"\b(urgent|asap|immediately|critical|p0)\b")
_HIGH_RE = re.compile(r"\b(high priority|high-priority|priority high|important)\b")
_LOW_RE = re.compile(r"\b(low priority|priority low)\b")

_TASK_REF_RE = re.compile(r"\btask-[a-z0-9_-]+\b", re.IGNORECASE)
_AFTER_REF_RE = re.compile(r"\b(?:depends on|blocked by|after)\s+([a-z0-9_-]{3,})\b", re.IGNORECASE)

_MERIDIEM_RE = re.compile(r"\b(?:at\s+)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
_CLOCK_RE = re.compile(r"\b(?:at\s+)?([01]?\d|2[0-3]):([0-5]\d)\b")
_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})(?:[\sT](\d{1,2})(?::(\d{2}))?)?\b")

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_TITLE_NOISE = (
    re.compile(r"\bwith\s+(?:low|medium|high|urgent)\s+priority\b", re.IGNORECASE),
    re.compile(r"\b(?:using|with)\s+(?:codex|claude)\b", re.IGNORECASE),
    re.compile(r"\b(?:depends on|blocked by|after)\s+task-[a-z0-9_-]+\b", re.IGNORECASE),
    re.compile(r"\b(?:today|tomorrow|next week)\b(?:\s+at\s+\d{1,2}(?::\d{2})?\s*(?:am|pm)?)?", re.IGNORECASE),
)

DEFAULT_HOUR = 9


def infer_priority(text: str) -> str:
    lowered = text.lower()
    if _URGENT_RE.search(lowered):
        return "urgent"
    if _HIGH_RE.search(lowered):
        return "high"
    if _LOW_RE.search(lowered):
        return "low"
    return "medium"


def infer_agent_type(text: str) -> str:
    lowered = text.lower()
    if "claude" in lowered or "anthropic" in lowered:
        return "claude"
    return "codex"


def infer_depends_on(text: str) -> list[str]:
    ids: list[str] = []
    for match in _TASK_REF_RE.finditer(text):
        if match.group(0).lower() not in ids:
            ids.append(match.group(0).lower())
    for match in _AFTER_REF_RE.finditer(text):
        if match.group(1).lower() not in ids:
            ids.append(match.group(1).lower())
    return ids


def infer_title(text: str) -> str:
    lines = text.strip().splitlines()
    title = lines[0].strip() if lines else ""
    for pattern in _TITLE_NOISE:
        title = pattern.sub("", title)
    title = re.sub(r"\s{2,}", " ", title)
    title = re.sub(r"[\s,;.-]+$", "", title).strip()
    if not title:
        title = " ".join(text.split()[:8])
    return title or "Untitled task"


def _time_of_day(text: str) -> tuple[int, int] | None:
    match = _MERIDIEM_RE.search(text)
    if match:
        hour = int(match.group(1)) % 12 + (12 if match.group(3).lower() == "pm" else 0)
        return hour, int(match.group(2) or 0)
    match = _CLOCK_RE.search(text)
    if match:
        return int(match.group(1)), int(match.group(2))
    return None


def infer_scheduled_at(text: str, now: datetime | None = None) -> datetime | None:
    now = (now or utcnow()).replace(second=0, microsecond=0)
    lowered = text.lower()

    match = _DATE_RE.search(text)
    if match:
        year, month, day = int(match.group(1)), int(match.group(2)), int(match.group(3))
        hour = int(match.group(4)) if match.group(4) else DEFAULT_HOUR
        minute = int(match.group(5)) if match.group(5) else 0
        try:
            return now.replace(year=year, month=month, day=day, hour=hour, minute=minute)
        except ValueError:
            return None

    if "tomorrow" in lowered:
        base = now + timedelta(days=1)
    elif "today" in lowered:
        base = now
    elif "next week" in lowered:
        base = now + timedelta(days=7)
    else:
        for index, name in enumerate(_WEEKDAYS):
            if name in lowered:
                offset = (index - now.weekday()) % 7 or 7
                base = now + timedelta(days=offset)
                break
        else:
            return None

    hour, minute = _time_of_day(text) or (DEFAULT_HOUR, 0)
    return base.replace(hour=hour, minute=minute)


def interpret(text: str, now: datetime | None = None) -> TaskDraft:
    """Build a task draft from free text. Raises ValidationError on empty input."""
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("prompt is required")
    text = text.strip()
    return TaskDraft(
        title=infer_title(text),
        description=text,
        priority=infer_priority(text),
        agent_type=infer_agent_type(text),
        scheduled_at=infer_scheduled_at(text, now),
        depends_on=infer_depends_on(text),
    )
