"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_dispatch" / "ad.db")
    ledger_path: Path | None = None
    scripts_dir: Path | None = None
    default_project: str = "default"
    max_concurrent_agents: int = 3
    scheduler_interval: float = 30.0
    sync_interval: float = 10.0
    executor_timeout: float | None = None
    log_level: str = "INFO"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("AD_DB_PATH"):
            config.db_path = Path(db)

        if ledger := os.environ.get("AD_LEDGER_PATH"):
            config.ledger_path = Path(ledger)

        if scripts := os.environ.get("AD_SCRIPTS_DIR"):
            config.scripts_dir = Path(scripts)

        if project := os.environ.get("AD_DEFAULT_PROJECT"):
            config.default_project = project

        if limit := os.environ.get("AD_MAX_CONCURRENT_AGENTS"):
            config.max_concurrent_agents = int(limit)

        if interval := os.environ.get("AD_SCHEDULER_INTERVAL"):
            config.scheduler_interval = float(interval)

        if interval := os.environ.get("AD_SYNC_INTERVAL"):
            config.sync_interval = float(interval)

        if timeout := os.environ.get("AD_EXECUTOR_TIMEOUT"):
            config.executor_timeout = float(timeout)

        if level := os.environ.get("AD_LOG_LEVEL"):
            config.log_level = level.upper()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("AD_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
