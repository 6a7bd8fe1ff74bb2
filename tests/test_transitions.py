"""Tests for the task state machine and agent statistics."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agent_dispatch.core import agents as agents_mod
from agent_dispatch.core import projects as projects_mod
from agent_dispatch.core import store
from agent_dispatch.core import tasks as tasks_mod
from agent_dispatch.core import transitions
from agent_dispatch.core.stats import next_average, system_stats
from agent_dispatch.db.engine import init_db
from agent_dispatch.errors import ConflictingState, ExecutorFailure, NotFound, ValidationError
from agent_dispatch.events import EventBus

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeExecutor:
    def __init__(self, fail=False):
        self.fail = fail
        self.signals = []
        self.terminated = []

    def signal(self, session, message):
        if self.fail:
            raise ExecutorFailure("tmux session not found")
        self.signals.append((session, message))
        return "delivered"

    def terminate(self, session):
        if self.fail:
            raise ExecutorFailure("tmux session not found")
        self.terminated.append(session)
        return "killed"


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "test", "Test Project")
        agents_mod.create_agent(conn, "Worker", project_id="test", agent_id="w1")
        yield conn
        conn.close()


def _running(db, title="Job", session="sess-1"):
    task = tasks_mod.create_task(db, title, "test", agent_id="w1")
    transitions.transition_task(
        db, task.id, "running", sticky={"session": session}, now=T0
    )
    return store.get_task(db, task.id)


class TestLifecycle:
    def test_running_stamps_started_once(self):
        started, completed, actual = transitions.apply_lifecycle("queued", "running", None, None, None, now=T0)
        assert started == T0 and completed is None and actual is None
        again = transitions.apply_lifecycle("running", "running", T0, None, None, now=T0 + timedelta(hours=1))
        assert again[0] == T0

    def test_terminal_derives_duration(self):
        _, completed, actual = transitions.apply_lifecycle(
            "running", "completed", T0, None, None, now=T0 + timedelta(minutes=42)
        )
        assert completed == T0 + timedelta(minutes=42)
        assert actual == 42

    def test_negative_duration_is_unknown(self):
        assert transitions.derive_duration_minutes(T0, T0 - timedelta(minutes=5)) is None

    def test_invalid_status(self, db):
        tasks_mod.create_task(db, "Job", "test")
        with pytest.raises(ValidationError):
            transitions.transition_task(db, "job", "blocked")


class TestGuardedWrites:
    def test_compare_and_set_rejects_stale_status(self, db):
        tasks_mod.create_task(db, "Job", "test")
        tasks_mod.update_task(db, "job", status="failed")
        assert transitions.transition_task(db, "job", "running", expect_status="queued") is None
        assert store.get_task(db, "job").status == "failed"

    def test_capacity_guard(self, db):
        _running(db, "First")
        tasks_mod.create_task(db, "Second", "test")
        assert transitions.transition_task(db, "second", "running", expect_status="queued", capacity=1) is None
        assert transitions.transition_task(db, "second", "running", expect_status="queued", capacity=2) is not None

    def test_sticky_fields_do_not_overwrite(self, db):
        _running(db, session="first")
        transitions.transition_task(db, "job", "pr_open", sticky={"session": "second", "branch": "feat/x"})
        task = store.get_task(db, "job")
        assert task.session == "first"
        assert task.branch == "feat/x"

    def test_same_status_write_is_not_audited(self, db):
        tasks_mod.create_task(db, "Job", "test")
        before = len(store.get_task_events(db, "job"))
        tasks_mod.update_task(db, "job", priority="high")
        assert len(store.get_task_events(db, "job")) == before


class TestAgentStats:
    def test_running_marks_agent_busy(self, db):
        _running(db)
        agent = store.get_agent(db, "w1")
        assert agent.status == "busy"
        assert agent.current_task_id == "job"

    def test_completion_updates_counters_and_average(self, db):
        _running(db)
        transitions.transition_task(db, "job", "completed", now=T0 + timedelta(minutes=20))
        agent = store.get_agent(db, "w1")
        assert agent.status == "idle"
        assert agent.current_task_id is None
        assert (agent.total_tasks, agent.success_count, agent.fail_count) == (1, 1, 0)
        assert agent.avg_duration_min == 20.0

    def test_repeated_terminal_write_counts_once(self, db):
        _running(db)
        transitions.transition_task(db, "job", "completed", now=T0 + timedelta(minutes=20))
        transitions.transition_task(db, "job", "completed")
        transitions.transition_task(db, "job", "failed")
        agent = store.get_agent(db, "w1")
        assert agent.total_tasks == 1
        assert agent.total_tasks == agent.success_count + agent.fail_count

    def test_running_to_queued_frees_agent(self, db):
        _running(db)
        transitions.transition_task(db, "job", "queued")
        agent = store.get_agent(db, "w1")
        assert agent.status == "idle"
        assert agent.total_tasks == 0

    def test_next_average(self):
        assert next_average(0.0, 0, 30) == 30.0
        assert next_average(30.0, 1, 60) == 45.0
        assert next_average(10.0, 2, 11) == 10.33

    def test_unknown_duration_keeps_average(self):
        assert next_average(25.0, 4, None) == 25.0

    def test_system_stats(self, db):
        _running(db, "One")
        transitions.transition_task(db, "one", "completed", now=T0 + timedelta(minutes=10))
        tasks_mod.create_task(db, "Two", "test")
        stats = system_stats(db)
        assert stats["totals"]["total_tasks"] == 2
        assert stats["totals"]["completed_tasks"] == 1
        assert stats["totals"]["success_rate"] == 1.0
        assert stats["by_status"] == {"completed": 1, "queued": 1}
        assert stats["agent_utilization"][0]["id"] == "w1"


class TestRetry:
    def test_retry_requeues_and_clears_lifecycle(self, db):
        _running(db)
        transitions.transition_task(db, "job", "failed", now=T0 + timedelta(minutes=5))
        task = transitions.retry_task(db, "job")
        assert task.status == "queued"
        assert task.retry_count == 1
        assert task.started_at is None
        assert task.completed_at is None
        assert task.actual_duration_min is None
        assert store.get_task_events(db, "job")[-1].event_type == "retried"

    def test_retry_limit(self, db):
        tasks_mod.create_task(db, "Job", "test", max_retries=1)
        tasks_mod.update_task(db, "job", status="failed")
        transitions.retry_task(db, "job")
        tasks_mod.update_task(db, "job", status="failed")
        with pytest.raises(ConflictingState) as exc:
            transitions.retry_task(db, "job")
        assert exc.value.reason == "max_retries_reached"
        assert "max retries reached (1/1)" in str(exc.value)
        assert store.get_task(db, "job").retry_count == 1

    def test_retry_requires_failed(self, db):
        tasks_mod.create_task(db, "Job", "test")
        with pytest.raises(ConflictingState) as exc:
            transitions.retry_task(db, "job")
        assert exc.value.reason == "wrong_status"

    def test_retry_missing(self, db):
        with pytest.raises(NotFound):
            transitions.retry_task(db, "ghost")


class TestKill:
    def test_kill_terminates_and_fails(self, db):
        _running(db)
        events = EventBus()
        seen = []
        events.subscribe("task:failed", lambda name, payload: seen.append(payload))
        executor = FakeExecutor()
        task = transitions.kill_task(db, "job", executor, events=events)
        assert executor.terminated == ["sess-1"]
        assert task.status == "failed"
        assert store.get_agent(db, "w1").fail_count == 1
        assert seen[0]["error"] == "Task killed manually"
        assert store.get_task_events(db, "job")[-1].event_type == "killed"

    def test_kill_finalizes_even_when_terminate_fails(self, db):
        _running(db)
        with pytest.raises(ExecutorFailure):
            transitions.kill_task(db, "job", FakeExecutor(fail=True))
        assert store.get_task(db, "job").status == "failed"
        types = [e.event_type for e in store.get_task_events(db, "job")]
        assert "killed" in types and "kill_failed" in types
        assert store.get_task_logs(db, "job")[0].message.startswith("kill failed:")

    def test_kill_keeps_completion_that_lands_first(self, db):
        _running(db)

        class FinishingExecutor:
            def terminate(self, session):
                transitions.transition_task(db, "job", "completed", now=T0 + timedelta(minutes=3))
                return "already gone"

        task = transitions.kill_task(db, "job", FinishingExecutor())
        assert task.status == "completed"
        agent = store.get_agent(db, "w1")
        assert (agent.success_count, agent.fail_count) == (1, 0)
        assert "killed" not in [e.event_type for e in store.get_task_events(db, "job")]

    def test_kill_requires_running(self, db):
        tasks_mod.create_task(db, "Job", "test")
        with pytest.raises(ConflictingState):
            transitions.kill_task(db, "job", FakeExecutor())


class TestRedirect:
    def test_redirect_signals_session(self, db):
        _running(db)
        executor = FakeExecutor()
        assert transitions.redirect_task(db, "job", "focus on tests", executor) == "delivered"
        assert executor.signals == [("sess-1", "focus on tests")]
        assert store.get_task_logs(db, "job")[0].message == "redirect: focus on tests"
        assert store.get_task_events(db, "job")[-1].event_type == "redirected"

    def test_redirect_needs_message(self, db):
        _running(db)
        with pytest.raises(ValidationError):
            transitions.redirect_task(db, "job", "   ", FakeExecutor())

    def test_redirect_needs_session(self, db):
        tasks_mod.create_task(db, "Job", "test")
        with pytest.raises(ValidationError):
            transitions.redirect_task(db, "job", "hello", FakeExecutor())

    def test_redirect_failure_writes_nothing(self, db):
        _running(db)
        with pytest.raises(ExecutorFailure):
            transitions.redirect_task(db, "job", "hello", FakeExecutor(fail=True))
        assert store.get_task_logs(db, "job") == []
