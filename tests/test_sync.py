"""Tests for ledger reconciliation and the alias tables."""

import json
import tempfile
from pathlib import Path

import pytest

from agent_dispatch.core import aliases
from agent_dispatch.core import projects as projects_mod
from agent_dispatch.core import store
from agent_dispatch.core import sync
from agent_dispatch.db.engine import init_db
from agent_dispatch.errors import ReconciliationRecordSkipped
from agent_dispatch.events import EventBus


@pytest.fixture
def env():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        ledger = Path(tmp) / "active-tasks.json"
        yield conn, ledger
        conn.close()


def _write(ledger: Path, records):
    ledger.write_text(json.dumps(records))


def _audit_count(db):
    return db.execute("SELECT COUNT(*) FROM task_events").fetchone()[0]


class TestAliases:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("done", "completed"),
            ("In_Progress", "running"),
            ("review", "pr_open"),
            ("cancelled", "failed"),
            ("pending", "queued"),
            ("something-new", "queued"),
            (None, "queued"),
        ],
    )
    def test_status(self, raw, expected):
        assert aliases.map_status(raw) == expected

    def test_priority_default(self):
        assert aliases.map_priority("URGENT") == "urgent"
        assert aliases.map_priority("p1") == "medium"

    def test_agent_type(self):
        assert aliases.map_agent_type("claude-code") == "claude"
        assert aliases.map_agent_type("gpt") == "codex"

    def test_ci_status(self):
        assert aliases.map_ci_status("passed") == "passing"
        assert aliases.map_ci_status("unknown") is None

    def test_read_field_first_alias_wins(self):
        assert aliases.read_field({"taskId": "b", "id": "a"}, "id") == "a"
        assert aliases.read_field({"agentType": "claude"}, "agent_type") == "claude"


class TestNormalize:
    def test_session_fallback_id(self):
        rec = sync.normalize_record({"tmuxSession": "codex-42", "task": "Fix the flaky test"})
        assert rec.id == "session:codex-42"
        assert rec.title == "Fix the flaky test"
        assert rec.session == "codex-42"

    def test_requires_id_or_session(self):
        with pytest.raises(ReconciliationRecordSkipped):
            sync.normalize_record({"title": "nothing to key on"})

    def test_non_object_skipped(self):
        with pytest.raises(ReconciliationRecordSkipped):
            sync.normalize_record("task-1")

    def test_bad_numbers_fall_back(self):
        rec = sync.normalize_record({"id": "t1", "retryCount": "lots", "prNumber": -3, "estimatedDurationMin": "45"})
        assert rec.retry_count == 0
        assert rec.pr_number is None
        assert rec.estimated_duration_min == 45

    def test_self_dependency_dropped(self):
        rec = sync.normalize_record({"id": "t1", "dependsOn": ["t1", "t0", "t0"]})
        assert rec.depends_on == ["t0"]

    def test_extract_records_from_wrapper(self):
        assert sync.extract_records({"tasks": [{"id": "a"}]}) == [{"id": "a"}]
        assert sync.extract_records({"nope": 1}) == []


class TestSyncLedger:
    def test_missing_ledger_is_reported(self, env):
        db, ledger = env
        result = sync.sync_ledger(db, ledger)
        assert result.scanned == 0
        assert result.errors and "not found" in result.errors[0]

    def test_unparsable_ledger_is_reported(self, env):
        db, ledger = env
        ledger.write_text("{not json")
        result = sync.sync_ledger(db, ledger)
        assert result.errors and "Unable to parse" in result.errors[0]

    def test_creates_tasks_and_agents(self, env):
        db, ledger = env
        _write(ledger, [
            {
                "id": "task-a",
                "description": "Add pagination",
                "status": "active",
                "agent": "claude",
                "agentId": "agent-1234567890",
                "tmuxSession": "claude-a",
                "branch": "feat/pagination",
                "startedAt": "2026-02-01T10:00:00Z",
            },
        ])
        events = EventBus()
        seen = []
        events.subscribe("*", lambda name, payload: seen.append(name))

        result = sync.sync_ledger(db, ledger, events=events)

        assert (result.scanned, result.created, result.updated) == (1, 1, 0)
        task = store.get_task(db, "task-a")
        assert task.status == "running"
        assert task.agent_type == "claude"
        assert task.session == "claude-a"
        assert task.project_id == "default"
        agent = store.get_agent(db, "agent-1234567890")
        assert agent.status == "busy"
        assert agent.current_task_id == "task-a"
        assert agent.name == "Agent agent-12"
        assert "task:created" in seen and "agent:status" in seen
        assert store.get_task_events(db, "task-a")[0].event_type == "synced_created"

    def test_second_pass_is_silent(self, env):
        db, ledger = env
        _write(ledger, [
            {"id": "a", "title": "A", "status": "running", "agentId": "ag-1"},
            {"id": "b", "title": "B", "status": "done", "dependsOn": ["a"]},
            {"tmuxSession": "s-9", "task": "Session only"},
        ])
        sync.sync_ledger(db, ledger)
        audits = _audit_count(db)

        events = EventBus()
        seen = []
        events.subscribe("*", lambda name, payload: seen.append(name))
        result = sync.sync_ledger(db, ledger, events=events)

        assert result.upserted == 0
        assert seen == []
        assert _audit_count(db) == audits

    def test_status_change_goes_through_state_machine(self, env):
        db, ledger = env
        _write(ledger, [{"id": "a", "title": "A", "status": "running", "agentId": "ag-1",
                         "startedAt": "2026-02-01T10:00:00Z"}])
        sync.sync_ledger(db, ledger)
        _write(ledger, [{"id": "a", "title": "A", "status": "done", "agentId": "ag-1",
                         "completedAt": "2026-02-01T10:30:00Z"}])
        events = EventBus()
        seen = []
        events.subscribe("task:completed", lambda name, payload: seen.append(payload))

        result = sync.sync_ledger(db, ledger, events=events)

        assert result.updated == 1
        task = store.get_task(db, "a")
        assert task.status == "completed"
        assert task.actual_duration_min == 30
        assert seen[0]["source"] == "sync"
        agent = store.get_agent(db, "ag-1")
        assert (agent.total_tasks, agent.success_count, agent.status) == (1, 1, "idle")
        last = store.get_task_events(db, "a")[-1]
        assert (last.event_type, last.old_value, last.new_value) == ("status_changed", "running", "completed")

    def test_null_keeps_sticky_fields(self, env):
        db, ledger = env
        _write(ledger, [{"id": "a", "title": "A", "status": "running", "tmuxSession": "s1", "branch": "b1"}])
        sync.sync_ledger(db, ledger)
        _write(ledger, [{"id": "a", "title": "A", "status": "running"}])
        result = sync.sync_ledger(db, ledger)
        task = store.get_task(db, "a")
        assert (task.session, task.branch) == ("s1", "b1")
        assert result.upserted == 0

    def test_malformed_records_are_skipped(self, env):
        db, ledger = env
        _write(ledger, {"tasks": [{"id": "ok", "title": "Fine"}, {"title": "no id"}, 42]})
        result = sync.sync_ledger(db, ledger)
        assert result.scanned == 3
        assert result.created == 1
        assert result.skipped == 2

    def test_unknown_and_cyclic_dependencies_reported(self, env):
        db, ledger = env
        _write(ledger, [
            {"id": "a", "title": "A", "dependsOn": ["b"]},
            {"id": "b", "title": "B", "dependsOn": ["a", "ghost"]},
        ])
        result = sync.sync_ledger(db, ledger)
        assert store.get_task(db, "a").depends_on == ["b"]
        assert store.get_task(db, "b").depends_on == []
        assert any("ghost" in e for e in result.errors)
        assert any("kept existing dependencies" in e for e in result.errors)

    def test_known_project_is_used(self, env):
        db, ledger = env
        projects_mod.create_project(db, "web", "Web")
        _write(ledger, [{"id": "a", "title": "A", "project": "web"}, {"id": "b", "title": "B", "project": "nope"}])
        sync.sync_ledger(db, ledger)
        assert store.get_task(db, "a").project_id == "web"
        assert store.get_task(db, "b").project_id == "default"

    def test_ledger_candidates_order(self, tmp_path):
        explicit = tmp_path / "explicit.json"
        candidates = sync.ledger_candidates(explicit, cwd=tmp_path / "x", home=tmp_path / "home")
        assert candidates[0] == explicit
        assert candidates[1] == tmp_path / "x" / "active-tasks.json"
        assert candidates[-1] == tmp_path / "home" / ".openclaw" / "active-tasks.json"
