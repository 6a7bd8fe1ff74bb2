"""Tests for the background tickers and the supervisor."""

import json
import tempfile
import threading
from pathlib import Path

import pytest

from agent_dispatch.config import Config
from agent_dispatch.core import store
from agent_dispatch.core import tasks as tasks_mod
from agent_dispatch.core.supervisor import Supervisor, Ticker
from agent_dispatch.db.engine import get_db
from agent_dispatch.db.models import SpawnResult


class FakeExecutor:
    def __init__(self):
        self.spawned = []

    def spawn(self, description, agent_type):
        self.spawned.append(description)
        return SpawnResult(session=f"sess-{len(self.spawned)}")


@pytest.fixture
def config():
    with tempfile.TemporaryDirectory() as tmp:
        yield Config(
            db_path=Path(tmp) / "test.db",
            ledger_path=Path(tmp) / "active-tasks.json",
            scheduler_interval=0.05,
            sync_interval=0.05,
        )


class TestTicker:
    def test_run_now_returns_result(self):
        ticker = Ticker("test", lambda: 42, interval=60)
        assert ticker.run_now() == 42

    def test_run_now_skips_when_in_flight(self):
        started = threading.Event()
        release = threading.Event()

        def slow():
            started.set()
            release.wait(5)
            return "done"

        ticker = Ticker("slow", slow, interval=60)
        worker = threading.Thread(target=ticker.run_now)
        worker.start()
        started.wait(5)
        try:
            assert ticker.run_now() is None
        finally:
            release.set()
            worker.join(5)

    def test_loop_survives_errors_and_stops(self):
        calls = []
        ran_twice = threading.Event()

        def flaky():
            calls.append(1)
            if len(calls) >= 2:
                ran_twice.set()
            raise RuntimeError("boom")

        ticker = Ticker("flaky", flaky, interval=0.01)
        ticker.start()
        try:
            assert ran_twice.wait(5)
        finally:
            ticker.stop()
        assert not ticker.running

    def test_nudge_wakes_loop(self):
        calls = []
        second = threading.Event()

        def count():
            calls.append(1)
            if len(calls) == 2:
                second.set()

        ticker = Ticker("nudged", count, interval=60)
        ticker.start()
        try:
            ticker.nudge()
            assert second.wait(5)
        finally:
            ticker.stop()


class TestSupervisor:
    def test_trigger_scheduler_dispatches(self, config):
        executor = FakeExecutor()
        supervisor = Supervisor.from_config(config, executor=executor)
        with get_db(config.db_path) as db:
            tasks_mod.create_task(db, "Job", description="do it")

        result = supervisor.trigger_scheduler()

        assert result.dispatched == ["job"]
        assert executor.spawned == ["do it"]

    def test_trigger_sync_reads_ledger(self, config):
        config.ledger_path.write_text(json.dumps([{"id": "from-ledger", "title": "Imported"}]))
        supervisor = Supervisor.from_config(config, executor=FakeExecutor())

        result = supervisor.trigger_sync()

        assert result.created == 1
        with get_db(config.db_path) as db:
            assert store.get_task(db, "from-ledger").title == "Imported"

    def test_background_loop_dispatches(self, config):
        executor = FakeExecutor()
        supervisor = Supervisor.from_config(config, executor=executor)
        with get_db(config.db_path) as db:
            tasks_mod.create_task(db, "Job")

        dispatched = threading.Event()
        supervisor.events.subscribe("task:updated", lambda name, payload: dispatched.set())
        supervisor.start()
        try:
            assert dispatched.wait(5)
        finally:
            supervisor.stop()
        with get_db(config.db_path) as db:
            assert store.get_task(db, "job").status == "running"
