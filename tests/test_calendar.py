"""Tests for calendar windows and project management."""

import tempfile
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from agent_dispatch.core import projects as projects_mod
from agent_dispatch.core import store
from agent_dispatch.core import tasks as tasks_mod
from agent_dispatch.core import transitions
from agent_dispatch.core.calendar_view import calendar_tasks, window_bounds
from agent_dispatch.db.engine import init_db
from agent_dispatch.errors import ConflictingState, NotFound, ValidationError
from agent_dispatch.events import EventBus


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "test", "Test Project")
        projects_mod.create_project(conn, "other", "Other Project")
        yield conn
        conn.close()


class TestWindowBounds:
    def test_daily(self):
        assert window_bounds("daily", "2026-03-04") == (date(2026, 3, 4), date(2026, 3, 4))

    def test_weekly_runs_monday_to_sunday(self):
        # 2026-03-08 is a Sunday.
        assert window_bounds("weekly", "2026-03-08") == (date(2026, 3, 2), date(2026, 3, 8))
        assert window_bounds("weekly", "2026-03-02") == (date(2026, 3, 2), date(2026, 3, 8))

    def test_monthly(self):
        assert window_bounds("monthly", "2028-02") == (date(2028, 2, 1), date(2028, 2, 29))
        assert window_bounds("monthly", "2026-12-15") == (date(2026, 12, 1), date(2026, 12, 31))

    def test_defaults_to_today(self):
        today = date(2026, 5, 20)
        assert window_bounds("daily", today=today) == (today, today)
        assert window_bounds("monthly", today=today) == (date(2026, 5, 1), date(2026, 5, 31))

    @pytest.mark.parametrize(
        "view,anchor",
        [
            ("daily", "2026-3-4"),
            ("daily", "2026-02-30"),
            ("weekly", "2026-03"),
            ("monthly", "2026-13"),
            ("monthly", "march"),
            ("yearly", "2026"),
        ],
    )
    def test_invalid(self, view, anchor):
        with pytest.raises(ValidationError):
            window_bounds(view, anchor)


class TestCalendarTasks:
    def test_scheduled_day_wins(self, db):
        tasks_mod.create_task(db, "Later", "test", scheduled_at="2026-03-05T09:00:00Z")
        tasks_mod.create_task(db, "Early", "test", scheduled_at="2026-03-05T07:30:00Z")
        tasks_mod.create_task(db, "Next day", "test", scheduled_at="2026-03-06T01:00:00Z")

        window = calendar_tasks(db, "daily", "2026-03-05", "test")
        assert [t.id for t in window.tasks] == ["early", "later"]
        assert (window.start, window.end) == (date(2026, 3, 5), date(2026, 3, 5))

    def test_falls_back_to_started_then_created(self, db):
        tasks_mod.create_task(db, "Run", "test")
        transitions.transition_task(db, "run", "running", now=datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc))
        tasks_mod.create_task(db, "Idle", "test")

        week = calendar_tasks(db, "weekly", "2026-03-04", "test")
        assert [t.id for t in week.tasks] == ["run"]

        today = store.get_task(db, "idle").created_at.date()
        daily = calendar_tasks(db, "daily", today.isoformat(), "test")
        assert "idle" in [t.id for t in daily.tasks]

    def test_scoped_to_project(self, db):
        tasks_mod.create_task(db, "Mine", "test", scheduled_at="2026-03-05T09:00:00Z")
        tasks_mod.create_task(db, "Theirs", "other", scheduled_at="2026-03-05T09:00:00Z")

        window = calendar_tasks(db, "monthly", "2026-03", "other")
        assert [t.id for t in window.tasks] == ["theirs"]

    def test_month_edges(self, db):
        tasks_mod.create_task(db, "First", "test", scheduled_at="2026-04-01T00:00:00Z")
        tasks_mod.create_task(db, "Last", "test", scheduled_at="2026-04-30T23:59:00Z")
        tasks_mod.create_task(db, "Out", "test", scheduled_at="2026-05-01T00:00:00Z")

        window = calendar_tasks(db, "monthly", "2026-04", "test")
        assert [t.id for t in window.tasks] == ["first", "last"]


class TestProjects:
    def test_update(self, db):
        project = projects_mod.update_project(db, "test", name="  Renamed ", description="new")
        assert project.name == "Renamed"
        assert project.description == "new"

    def test_update_keeps_unset_fields(self, db):
        projects_mod.update_project(db, "test", description="kept")
        assert projects_mod.update_project(db, "test", name="Again").description == "kept"

    def test_update_rejects_blank_name(self, db):
        with pytest.raises(ValidationError):
            projects_mod.update_project(db, "test", name="   ")

    def test_update_missing(self, db):
        with pytest.raises(NotFound):
            projects_mod.update_project(db, "ghost", name="x")

    def test_delete_removes_tasks_and_history(self, db):
        tasks_mod.create_task(db, "Base", "test")
        tasks_mod.create_task(db, "Top", "test", depends_on=["base"])
        tasks_mod.create_task(db, "Elsewhere", "other")
        events = EventBus()
        seen = []
        events.subscribe("task:deleted", lambda name, payload: seen.append(payload["task_id"]))

        assert projects_mod.delete_project(db, "test", events=events) == ["base", "top"]
        assert projects_mod.get_project(db, "test") is None
        assert [t.id for t in store.list_tasks(db)] == ["elsewhere"]
        assert db.execute("SELECT COUNT(*) FROM task_dependencies").fetchone()[0] == 0
        assert db.execute("SELECT COUNT(*) FROM task_events WHERE task_id = 'base'").fetchone()[0] == 0
        assert seen == ["base", "top"]

    def test_delete_refused_while_running(self, db):
        tasks_mod.create_task(db, "Job", "test")
        transitions.transition_task(db, "job", "running", sticky={"session": "s1"})
        with pytest.raises(ConflictingState) as exc:
            projects_mod.delete_project(db, "test")
        assert exc.value.reason == "has_running_tasks"
        assert store.get_task(db, "job") is not None

    def test_delete_missing(self, db):
        with pytest.raises(NotFound):
            projects_mod.delete_project(db, "ghost")


class TestActivity:
    def test_newest_first_and_scoped(self, db):
        tasks_mod.create_task(db, "Job", "test")
        tasks_mod.update_task(db, "job", status="completed")
        tasks_mod.create_task(db, "Elsewhere", "other")

        feed = store.get_project_activity(db, "test")
        assert [(a.event.task_id, a.event.event_type) for a in feed] == [
            ("job", "status_changed"),
            ("job", "created"),
        ]
        assert feed[0].title == "Job"
        assert feed[0].project_id == "test"

    def test_limit(self, db):
        for title in ("One", "Two", "Three"):
            tasks_mod.create_task(db, title, "test")
        assert [a.event.task_id for a in store.get_project_activity(db, "test", limit=2)] == ["three", "two"]
