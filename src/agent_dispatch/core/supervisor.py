"""Background timers for the scheduler and the ledger sync."""

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from agent_dispatch.config import Config
from agent_dispatch.core.scheduler import Scheduler
from agent_dispatch.core.sync import sync_ledger
from agent_dispatch.db.engine import get_db
from agent_dispatch.db.models import SyncResult, TickResult
from agent_dispatch.events import EventBus
from agent_dispatch.integrations.slack import attach_notifier
from agent_dispatch.integrations.swarm import ScriptExecutor

logger = logging.getLogger(__name__)


class Ticker:
    """Runs a callable every `interval` seconds on a daemon thread.

    `nudge()` wakes the loop early. Runs never overlap: `run_now()` returns
    None when a run is already in flight.
    """

    def __init__(self, name: str, func: Callable, interval: float):
        self.name = name
        self.func = func
        self.interval = interval
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._in_flight = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started (every %.1fs)", self.name, self.interval)

    def stop(self):
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        logger.info("%s stopped", self.name)

    def nudge(self):
        self._wake_event.set()

    def run_now(self):
        if not self._in_flight.acquire(blocking=False):
            logger.debug("%s run already in flight, skipping", self.name)
            return None
        try:
            return self.func()
        finally:
            self._in_flight.release()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.run_now()
            except Exception:
                logger.exception("Error in %s loop", self.name)
            self._wake_event.wait(self.interval)
            self._wake_event.clear()


class Supervisor:
    """Owns the scheduler and sync timers for one process."""

    def __init__(
        self,
        db_path: Path,
        scheduler: Scheduler,
        events: EventBus | None = None,
        ledger_path: Path | None = None,
        default_project: str = "default",
        scheduler_interval: float = 30.0,
        sync_interval: float = 10.0,
    ):
        self.db_path = db_path
        self.scheduler = scheduler
        self.events = events
        self.ledger_path = ledger_path
        self.default_project = default_project
        self.scheduler_ticker = Ticker("scheduler", self._tick, scheduler_interval)
        self.sync_ticker = Ticker("ledger-sync", self._sync, sync_interval)

    @classmethod
    def from_config(cls, config: Config, executor=None, events: EventBus | None = None) -> "Supervisor":
        """Build a supervisor and its collaborators from a Config."""
        events = events if events is not None else EventBus()
        attach_notifier(events, config.slack_bot_token, config.slack_channel)
        executor = executor or ScriptExecutor(config.scripts_dir, config.executor_timeout)
        scheduler = Scheduler(executor, events, config.max_concurrent_agents)
        return cls(
            config.db_path,
            scheduler,
            events=events,
            ledger_path=config.ledger_path,
            default_project=config.default_project,
            scheduler_interval=config.scheduler_interval,
            sync_interval=config.sync_interval,
        )

    @property
    def executor(self):
        return self.scheduler.executor

    def start(self):
        self.scheduler_ticker.start()
        self.sync_ticker.start()

    def stop(self):
        self.sync_ticker.stop()
        self.scheduler_ticker.stop()

    def trigger_scheduler(self) -> TickResult:
        """Run a scheduler tick now, on the calling thread."""
        result = self.scheduler_ticker.run_now()
        return result if result is not None else TickResult(skipped=True)

    def nudge_scheduler(self):
        """Ask the background scheduler to tick soon."""
        self.scheduler_ticker.nudge()

    def trigger_sync(self) -> SyncResult | None:
        return self.sync_ticker.run_now()

    def _tick(self) -> TickResult:
        with get_db(self.db_path) as db:
            return self.scheduler.tick(db)

    def _sync(self) -> SyncResult:
        with get_db(self.db_path) as db:
            result = sync_ledger(db, self.ledger_path, self.events, self.default_project)
        if result.upserted:
            self.nudge_scheduler()
        return result
