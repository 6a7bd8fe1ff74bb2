"""Calendar views over a project's tasks: one day, an ISO week, or a month.

A task lands on the UTC day of the first lifecycle timestamp it has,
in the order scheduled_at, started_at, completed_at, created_at.
"""

import calendar
import re
import sqlite3
from datetime import date, timedelta

from agent_dispatch.core.store import list_tasks_between
from agent_dispatch.db.engine import utcnow
from agent_dispatch.db.models import CALENDAR_VIEWS, CalendarWindow
from agent_dispatch.errors import ValidationError

_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")


def window_bounds(view: str, anchor: str | None = None, today: date | None = None) -> tuple[date, date]:
    """Inclusive (first, last) days of the window containing `anchor`.

    `anchor` is YYYY-MM-DD for daily/weekly and YYYY-MM for monthly; a
    monthly view also accepts a full day and uses its month. Missing
    anchors default to today (UTC).
    """
    if view not in CALENDAR_VIEWS:
        raise ValidationError(f"Invalid view: {view} (expected one of {', '.join(CALENDAR_VIEWS)})")
    today = today or utcnow().date()

    if view == "monthly":
        if anchor and _DAY_RE.match(anchor):
            anchor = anchor[:7]
        if anchor is None:
            year, month = today.year, today.month
        elif _MONTH_RE.match(anchor):
            year, month = int(anchor[:4]), int(anchor[5:7])
            if not 1 <= month <= 12:
                raise ValidationError("date must be a valid YYYY-MM month")
        else:
            raise ValidationError("date must be YYYY-MM")
        return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])

    if anchor is None:
        day = today
    else:
        if not _DAY_RE.match(anchor):
            raise ValidationError("date must be YYYY-MM-DD")
        try:
            day = date.fromisoformat(anchor)
        except ValueError:
            raise ValidationError(f"invalid date: {anchor}") from None

    if view == "daily":
        return day, day
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=6)


def calendar_tasks(
    db: sqlite3.Connection,
    view: str = "daily",
    anchor: str | None = None,
    project_id: str = "default",
    today: date | None = None,
) -> CalendarWindow:
    """Tasks of one project falling inside a daily, weekly or monthly window."""
    start, end = window_bounds(view, anchor, today)
    project_id = (project_id or "").strip() or "default"
    tasks = list_tasks_between(db, project_id, start.isoformat(), end.isoformat())
    return CalendarWindow(view=view, start=start, end=end, project_id=project_id, tasks=tasks)
