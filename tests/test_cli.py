"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from agent_dispatch import cli
from agent_dispatch.cli import main
from agent_dispatch.config import get_config
from agent_dispatch.core.supervisor import Supervisor
from agent_dispatch.db.models import SpawnResult


class FakeExecutor:
    def __init__(self):
        self.spawned = []
        self.terminated = []

    def spawn(self, description, agent_type):
        self.spawned.append(description)
        return SpawnResult(session=f"sess-{len(self.spawned)}", branch="agent/x", worktree_path="/wt/x")

    def signal(self, session, message):
        return f"sent to {session}"

    def terminate(self, session):
        self.terminated.append(session)
        return "killed"

    def status(self):
        return "sess-1 running"


@pytest.fixture
def cli_env(monkeypatch):
    """Point the CLI at a temp database and a fake executor."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "AD_DB_PATH": str(Path(tmp) / "test.db"),
            "AD_LEDGER_PATH": str(Path(tmp) / "active-tasks.json"),
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        executor = FakeExecutor()
        monkeypatch.setattr(cli, "_supervisor", lambda: Supervisor.from_config(get_config(), executor=executor))

        yield CliRunner(), executor, Path(tmp)

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestInit:
    def test_init(self, cli_env):
        runner, _, tmp = cli_env
        result = runner.invoke(main, ["init", "--project", "web", "--name", "Web App"])
        assert result.exit_code == 0
        assert "Database ready" in result.output
        assert "Project created: web (Web App)" in result.output
        assert (tmp / "test.db").exists()


class TestTaskCommands:
    def test_add_and_list(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Setup database", "-p", "high"])
        assert result.exit_code == 0
        assert "Created task: setup-database" in result.output

        result = runner.invoke(main, ["task", "list"])
        assert "setup-database: Setup database (queued)" in result.output

    def test_add_with_dependency_shows_blocked(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "Base"])
        result = runner.invoke(main, ["task", "add", "Top", "--depends-on", "base"])
        assert "Depends on: base" in result.output
        assert "Status: blocked" in result.output

        result = runner.invoke(main, ["task", "list", "--status", "blocked", "--json"])
        assert [t["id"] for t in json.loads(result.output)] == ["top"]

    def test_add_unknown_dependency_fails(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Top", "--depends-on", "ghost"])
        assert result.exit_code == 1
        assert "dependency task not found: ghost" in result.output

    def test_show(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "Job", "-d", "Do the thing"])
        result = runner.invoke(main, ["task", "show", "job"])
        assert "Description: Do the thing" in result.output
        assert "created: None -> queued" in result.output

        data = json.loads(runner.invoke(main, ["task", "show", "job", "--json"]).output)
        assert data["description"] == "Do the thing"

    def test_show_missing(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "show", "ghost"])
        assert result.exit_code == 1

    def test_update(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "Job"])
        result = runner.invoke(main, ["task", "update", "job", "--status", "completed", "-p", "low"])
        assert result.exit_code == 0
        assert "Updated job: completed, low" in result.output

    def test_update_nothing(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "Job"])
        assert runner.invoke(main, ["task", "update", "job"]).exit_code == 1

    def test_deps_and_tree(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "Base"])
        runner.invoke(main, ["task", "add", "Top"])
        result = runner.invoke(main, ["task", "deps", "top", "--set", "base"])
        assert "Depends on: base" in result.output
        assert "Blocked by: base" in result.output

        result = runner.invoke(main, ["task", "tree", "top"])
        assert "└─ base (queued)" in result.output

        result = runner.invoke(main, ["task", "deps", "base", "--set", "top"])
        assert result.exit_code == 1
        assert "cycle" in result.output

    def test_delete(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "Job"])
        assert "Deleted task: job" in runner.invoke(main, ["task", "delete", "job"]).output
        assert runner.invoke(main, ["task", "delete", "job"]).exit_code == 1

    def test_from_prompt_dry_run(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "from-prompt", "urgent: rotate keys", "--dry-run"])
        assert json.loads(result.output)["priority"] == "urgent"
        assert "No tasks found." in runner.invoke(main, ["task", "list"]).output


class TestControlCommands:
    def test_dispatch_redirect_kill(self, cli_env):
        runner, executor, _ = cli_env
        runner.invoke(main, ["task", "add", "Job", "-d", "Do the thing"])

        result = runner.invoke(main, ["task", "dispatch", "job"])
        assert result.exit_code == 0
        assert "Session: sess-1" in result.output
        assert executor.spawned == ["Do the thing"]

        result = runner.invoke(main, ["task", "redirect", "job", "focus"])
        assert "sent to sess-1" in result.output

        result = runner.invoke(main, ["task", "kill", "job"])
        assert "Killed job: failed" in result.output
        assert executor.terminated == ["sess-1"]

        result = runner.invoke(main, ["task", "retry", "job"])
        assert "Requeued job (retry 1/3)" in result.output

    def test_dispatch_blocked(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "Base"])
        runner.invoke(main, ["task", "add", "Top", "--depends-on", "base"])
        result = runner.invoke(main, ["task", "dispatch", "top"])
        assert result.exit_code == 1
        assert "Blocked by: base" in result.output

    def test_tick_and_queue(self, cli_env):
        runner, executor, _ = cli_env
        runner.invoke(main, ["config", "set", "--max-concurrent-agents", "1"])
        runner.invoke(main, ["task", "add", "Low", "-p", "low"])
        runner.invoke(main, ["task", "add", "Urgent", "-p", "urgent"])

        data = json.loads(runner.invoke(main, ["tick", "--json"]).output)
        assert data["dispatched"] == ["urgent"]

        result = runner.invoke(main, ["queue"])
        assert "Running 1/1" in result.output
        assert "1. low (low): Low" in result.output


class TestAgentAndConfigCommands:
    def test_agents(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["agent", "add", "Worker", "--type", "claude", "--id", "w1"])
        assert "Registered agent: w1 (Worker, claude)" in result.output
        assert "w1: Worker [claude, idle]" in runner.invoke(main, ["agent", "list"]).output
        assert json.loads(runner.invoke(main, ["agent", "show", "w1"]).output)["total_tasks"] == 0

    def test_config(self, cli_env):
        runner, _, _ = cli_env
        assert json.loads(runner.invoke(main, ["config", "show"]).output) == {"max_concurrent_agents": 3}
        result = runner.invoke(main, ["config", "set", "--max-concurrent-agents", "50"])
        assert "max_concurrent_agents = 32" in result.output
        result = runner.invoke(main, ["config", "set", "--max-concurrent-agents", "many"])
        assert result.exit_code == 1


class TestSyncCommand:
    def test_sync_from_ledger(self, cli_env):
        runner, _, tmp = cli_env
        (tmp / "active-tasks.json").write_text(json.dumps([{"id": "t1", "title": "Imported", "status": "done"}]))
        result = runner.invoke(main, ["sync"])
        assert result.exit_code == 0
        assert json.loads(result.output)["created"] == 1
        assert "t1: Imported (completed)" in runner.invoke(main, ["task", "list"]).output

    def test_sync_missing_ledger(self, cli_env):
        runner, _, tmp = cli_env
        result = runner.invoke(main, ["sync", "--ledger", str(tmp / "nope.json")])
        assert result.exit_code == 1


class TestProjectCommands:
    def test_update_and_activity(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["init", "--project", "web"])
        runner.invoke(main, ["task", "add", "Job", "--project", "web"])

        result = runner.invoke(main, ["project", "update", "web", "--name", "Web App"])
        assert "Updated project: web (Web App)" in result.output
        assert "web: Web App" in runner.invoke(main, ["project", "list"]).output

        feed = json.loads(runner.invoke(main, ["project", "activity", "web", "--json"]).output)
        assert [(a["task_id"], a["event_type"]) for a in feed] == [("job", "created")]

    def test_delete(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["init", "--project", "web"])
        runner.invoke(main, ["task", "add", "Job", "--project", "web"])
        result = runner.invoke(main, ["project", "delete", "web"])
        assert "Deleted project: web (1 task(s))" in result.output
        assert runner.invoke(main, ["project", "activity", "web"]).exit_code == 1

    def test_update_missing(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["init"])
        assert runner.invoke(main, ["project", "update", "ghost", "--name", "x"]).exit_code == 1


class TestCalendarAndStatusCommands:
    def test_calendar(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "Release", "--scheduled-at", "2026-03-05T09:00:00Z"])
        result = runner.invoke(main, ["calendar", "weekly", "--date", "2026-03-05"])
        assert "default weekly 2026-03-02 .. 2026-03-08" in result.output
        assert "2026-03-05 09:00 release: Release" in result.output

        data = json.loads(runner.invoke(main, ["calendar", "monthly", "--date", "2026-04", "--json"]).output)
        assert data["tasks"] == []

    def test_calendar_bad_date(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["calendar", "daily", "--date", "tomorrow"])
        assert result.exit_code == 1
        assert "YYYY-MM-DD" in result.output

    def test_status(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "sess-1 running" in result.output
