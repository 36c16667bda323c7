# crewboard: configuration
# Override paths and tunables via config/crewboard.yaml or environment variables.

import os
import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ConfigError

CONFIG_PATH = Path(__file__).parent.parent / "config" / "crewboard.yaml"
DEFAULT_DB = str(Path.home() / ".local" / "share" / "crewboard" / "tasks.db")


@dataclass
class Config:
    """Runtime configuration for the task store, server and scheduler."""

    db_path: str = DEFAULT_DB
    api_secret: str = ""

    # Deadline scheduler
    scan_interval_secs: int = 300
    lookahead_hours: float = 24.0
    dedup_window_hours: float = 4.0

    # Stale tasks and snoozing
    stale_after_days: float = 3.0
    snooze_days: float = 3.0

    # Directory: either static users/teams or a remote directory URL
    directory_users: List[str] = field(default_factory=list)
    directory_teams: Dict[str, List[str]] = field(default_factory=dict)
    directory_url: Optional[str] = None
    directory_timeout: float = 2.0

    # Notification delivery (optional)
    webhook_url: Optional[str] = None
    telegram_token_env: Optional[str] = None
    telegram_chats: Dict[str, str] = field(default_factory=dict)

    # Change stream
    stream_queue_size: int = 256

    def apply_env(self):
        """Environment variables win over the file."""
        if os.environ.get("CREWBOARD_DB"):
            self.db_path = os.environ["CREWBOARD_DB"]
        if os.environ.get("CREWBOARD_API_SECRET"):
            self.api_secret = os.environ["CREWBOARD_API_SECRET"]
        self.db_path = str(Path(self.db_path).expanduser())

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Flatten the nested YAML layout into the dataclass fields."""
        cfg = cls()
        if not isinstance(data, dict):
            raise ConfigError("Config root must be a mapping")

        for key in ("db_path", "api_secret"):
            if key in data:
                setattr(cfg, key, data[key])

        deadline = data.get("deadline", {}) or {}
        cfg.scan_interval_secs = int(deadline.get("scan_interval_secs", cfg.scan_interval_secs))
        cfg.lookahead_hours = float(deadline.get("lookahead_hours", cfg.lookahead_hours))
        cfg.dedup_window_hours = float(deadline.get("dedup_window_hours", cfg.dedup_window_hours))

        stale = data.get("stale", {}) or {}
        cfg.stale_after_days = float(stale.get("after_days", cfg.stale_after_days))
        cfg.snooze_days = float(stale.get("snooze_days", cfg.snooze_days))

        directory = data.get("directory", {}) or {}
        cfg.directory_users = [str(u) for u in directory.get("users", []) or []]
        teams = directory.get("teams", {}) or {}
        if not isinstance(teams, dict):
            raise ConfigError("directory.teams must map team tags to member lists")
        cfg.directory_teams = {str(tag): [str(m) for m in (members or [])] for tag, members in teams.items()}
        cfg.directory_url = directory.get("url")
        cfg.directory_timeout = float(directory.get("timeout", cfg.directory_timeout))

        delivery = data.get("delivery", {}) or {}
        cfg.webhook_url = delivery.get("webhook_url")
        cfg.telegram_token_env = delivery.get("telegram_token_env")
        cfg.telegram_chats = {str(k): str(v) for k, v in (delivery.get("telegram_chats", {}) or {}).items()}

        stream = data.get("stream", {}) or {}
        cfg.stream_queue_size = int(stream.get("queue_size", cfg.stream_queue_size))

        if cfg.scan_interval_secs <= 0:
            raise ConfigError("deadline.scan_interval_secs must be positive")
        if cfg.lookahead_hours < 0 or cfg.dedup_window_hours < 0:
            raise ConfigError("deadline windows must not be negative")
        return cfg

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults when absent."""
        env_path = os.environ.get("CREWBOARD_CONFIG")
        cfg_path = Path(path or env_path) if (path or env_path) else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {cfg_path}: {e}")
            cfg = cls.from_dict(data)
        else:
            cfg = cls()
        cfg.apply_env()
        return cfg


def build_directory(cfg: Config):
    """Remote directory if a URL is configured, otherwise the static one."""
    from .directory import HttpDirectory, StaticDirectory

    if cfg.directory_url:
        return HttpDirectory(cfg.directory_url, timeout=cfg.directory_timeout)
    return StaticDirectory(users=cfg.directory_users, teams=cfg.directory_teams)


def build_deliveries(cfg: Config) -> list:
    """Delivery channels enabled by the config (may be empty)."""
    from .notifications import TelegramDelivery, WebhookDelivery

    channels = []
    if cfg.webhook_url:
        channels.append(WebhookDelivery(cfg.webhook_url))
    if cfg.telegram_token_env:
        token = os.environ.get(cfg.telegram_token_env)
        if not token:
            raise ConfigError(
                f"Environment variable {cfg.telegram_token_env} is not set.\n"
                f"Set it:  export {cfg.telegram_token_env}=your_bot_token"
            )
        channels.append(TelegramDelivery(token, cfg.telegram_chats))
    return channels
