"""Executor backed by the agent swarm shell scripts.

The scripts (spawn-agent.sh, redirect-agent.sh, kill-agent.sh, status.sh)
live in AD_SCRIPTS_DIR or under a nearby `.openclaw/` directory.
"""

import logging
import re
import subprocess
from pathlib import Path

from agent_dispatch.db.models import SpawnResult
from agent_dispatch.errors import ExecutorFailure

logger = logging.getLogger(__name__)

SPAWN_SCRIPT = "spawn-agent.sh"
REDIRECT_SCRIPT = "redirect-agent.sh"
KILL_SCRIPT = "kill-agent.sh"
STATUS_SCRIPT = "status.sh"

_SESSION_RE = re.compile(r"(?:tmux\s*session|session)\s*[:=]\s*([\w.-]+)", re.IGNORECASE)
_BRANCH_RE = re.compile(r"branch\s*[:=]\s*([^\s]+)", re.IGNORECASE)
_WORKTREE_RE = re.compile(r"worktree(?:\s*path)?\s*[:=]\s*(.+)$", re.IGNORECASE)
_LOG_RE = re.compile(r"log(?:\s*path)?\s*[:=]\s*(.+)$", re.IGNORECASE)


def parse_spawn_output(stdout: str) -> SpawnResult:
    """Pick session/branch/worktree/log values out of spawn script output.

    For each field the first matching line wins.
    """
    lines = stdout.splitlines()

    def pick(pattern: re.Pattern) -> str | None:
        for line in lines:
            match = pattern.search(line)
            if match and match.group(1).strip():
                return match.group(1).strip()
        return None

    return SpawnResult(
        session=pick(_SESSION_RE),
        branch=pick(_BRANCH_RE),
        worktree_path=pick(_WORKTREE_RE),
        log_path=pick(_LOG_RE),
        output=stdout,
    )


def script_candidates(name: str, scripts_dir: Path | None = None, cwd: Path | None = None, home: Path | None = None) -> list[Path]:
    cwd = cwd or Path.cwd()
    home = home or Path.home()
    roots = [scripts_dir] if scripts_dir else []
    roots += [
        cwd / ".openclaw",
        cwd.parent / ".openclaw",
        cwd.parent.parent / ".openclaw",
        home / ".openclaw",
    ]
    candidates = []
    for root in roots:
        candidates += [root / name, root / "scripts" / name, root / "bin" / name]
    return candidates


class ScriptExecutor:
    """Spawns, signals and terminates agents by running the swarm scripts."""

    def __init__(self, scripts_dir: Path | None = None, timeout: float | None = None):
        self.scripts_dir = scripts_dir
        self.timeout = timeout

    def resolve_script(self, name: str) -> Path:
        for candidate in script_candidates(name, self.scripts_dir):
            if candidate.exists():
                return candidate
        raise ExecutorFailure(
            f"Could not locate {name}. Set AD_SCRIPTS_DIR or place scripts under .openclaw/."
        )

    def run_script(self, name: str, args: list[str] | None = None) -> str:
        """Run a script and return its stdout. Raises ExecutorFailure on failure."""
        cmd = [str(self.resolve_script(name))] + list(args or [])
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
            return result.stdout.strip()
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or e.stdout or "").strip() or f"exit status {e.returncode}"
            raise ExecutorFailure(f"{name} failed: {detail}") from e
        except subprocess.TimeoutExpired as e:
            raise ExecutorFailure(f"{name} timed out after {self.timeout}s") from e
        except OSError as e:
            raise ExecutorFailure(f"{name} could not be run: {e}") from e

    def spawn(self, description: str, agent_type: str) -> SpawnResult:
        output = self.run_script(SPAWN_SCRIPT, [description, agent_type])
        result = parse_spawn_output(output)
        logger.debug("Spawned %s agent, session=%s", agent_type, result.session)
        return result

    def signal(self, session: str, message: str) -> str:
        return self.run_script(REDIRECT_SCRIPT, [session, message])

    def terminate(self, session: str) -> str:
        return self.run_script(KILL_SCRIPT, [session])

    def status(self) -> str:
        return self.run_script(STATUS_SCRIPT)
