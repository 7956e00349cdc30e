"""Configuration utilities for the live board client."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from live_board.models import SortCriteria
from live_board.streams import ReconnectPolicy


CONFIG_ENV_VAR = "LIVE_BOARD_CONFIG"
TOKEN_ENV_VAR = "LIVE_BOARD_TOKEN"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "live-board" / "config.json"


@dataclass
class LiveBoardConfig:
    """Serializable configuration for the live board."""

    api_url: str = "http://localhost:8080/api"
    stream_url: str = "http://localhost:8080/api/sse"
    page_size: int = 20
    sort: str = "createdAt,desc"
    project_id: Optional[str] = None
    reconnect_delay: float = 5.0
    reconnect_factor: float = 1.8
    reconnect_max_delay: float = 60.0
    reconnect_attempts: int = 5
    fallback_interval: float = 60.0
    token: Optional[str] = None

    def to_dict(self) -> dict:
        """Return the config as a JSON-serializable dictionary."""

        data = asdict(self)
        # Tokens are read from the environment, never written back to disk.
        data.pop("token", None)
        return data

    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            initial_delay=self.reconnect_delay,
            factor=self.reconnect_factor,
            max_delay=self.reconnect_max_delay,
            max_attempts=self.reconnect_attempts,
        )

    def sort_criteria(self) -> SortCriteria:
        return SortCriteria.parse(self.sort)

    def credential(self) -> Optional[str]:
        """Return the bearer token from the environment, then the config."""

        return os.getenv(TOKEN_ENV_VAR) or self.token or None


def config_path() -> Path:
    """Return the filesystem path where config is stored."""

    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()

    return DEFAULT_CONFIG_PATH


def load_config() -> LiveBoardConfig:
    """Load configuration from disk, falling back to defaults."""

    load_dotenv()
    path = config_path()
    if not path.exists():
        return LiveBoardConfig()

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError:
        # Malformed config; fall back to defaults but keep original file for inspection.
        return LiveBoardConfig()

    config = LiveBoardConfig()
    for key, value in data.items():
        if key == "token" or not hasattr(config, key):
            continue
        setattr(config, key, value)

    try:
        config.sort_criteria()
    except ValueError:
        config.sort = LiveBoardConfig.sort
    config.page_size = max(int(config.page_size), 1)
    return config


def save_config(config: LiveBoardConfig) -> None:
    """Persist configuration to disk."""

    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2))
