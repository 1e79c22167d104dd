"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

_TRUTHY = ("1", "true", "yes", "on")


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".constellation" / "cst.db")
    base_dir: Path = field(default_factory=lambda: Path.home() / ".constellation" / "projects")
    data_dir: Path = field(default_factory=lambda: Path.home() / ".constellation")
    worktree_dir: str = ".worktrees"
    branch_prefix: str = "work/"
    git_timeout: float = 30.0
    agent_command: str = "claude --dangerously-skip-permissions"
    max_workers: int | None = None
    auto_approve: bool = False
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("CST_DB_PATH"):
            config.db_path = Path(db)

        if base := os.environ.get("CST_BASE_DIR"):
            config.base_dir = Path(base)

        if data := os.environ.get("CST_DATA_DIR"):
            config.data_dir = Path(data)

        if wt_dir := os.environ.get("CST_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if prefix := os.environ.get("CST_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        if timeout := os.environ.get("CST_GIT_TIMEOUT"):
            config.git_timeout = float(timeout)

        if command := os.environ.get("CST_AGENT_COMMAND"):
            config.agent_command = command

        if workers := os.environ.get("CST_MAX_WORKERS"):
            config.max_workers = int(workers) or None

        if approve := os.environ.get("CST_AUTO_APPROVE"):
            config.auto_approve = approve.strip().lower() in _TRUTHY

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("CST_SLACK_CHANNEL")

        if level := os.environ.get("CST_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
