"""Configuration for the sync engine and its adapters"""

import os
from dataclasses import dataclass, field, fields, asdict
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

import yaml

logger = logging.getLogger(__name__)

TOKEN_ENV_VAR = "HABITSYNC_GITHUB_TOKEN"


@dataclass
class SyncConfig:
    """Timing and policy knobs of the sync engine"""
    auto_sync: bool = True
    sync_interval: float = 300.0  # seconds
    debounce_delay: float = 2.0  # seconds
    retry_attempts: int = 3
    retry_delay: float = 1.0  # seconds, doubled per retry
    conflict_window: float = 3600.0  # seconds
    tombstone_retention_days: float = 7.0
    remote_path: str = "data.json"
    connectivity_interval: float = 15.0  # seconds

    def __post_init__(self):
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.debounce_delay < 0 or self.sync_interval < 0:
            raise ValueError("Timer intervals must not be negative")

    @property
    def conflict_window_delta(self) -> timedelta:
        return timedelta(seconds=self.conflict_window)

    @property
    def tombstone_retention(self) -> timedelta:
        return timedelta(days=self.tombstone_retention_days)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SyncConfig':
        """Build from a mapping, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def updated(self, **changes) -> 'SyncConfig':
        return SyncConfig.from_dict({**self.to_dict(), **changes})


@dataclass
class RemoteConfig:
    """Where the shared dataset object lives"""
    backend: str = "file"  # file | github
    directory: str = "./remote"
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    token: str = ""
    api_url: str = "https://api.github.com"


@dataclass
class StorageConfig:
    """Local replica storage"""
    data_dir: str = "./habitsync_data"
    keys_dir: str = "./habitsync_data/keys"


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _section(data: Dict[str, Any], name: str, cls):
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        logger.warning(f"Ignoring unknown keys in '{name}': {', '.join(sorted(unknown))}")

    return cls(**{k: v for k, v in section.items() if k in known})


def load_config(config_path: Union[str, Path, None] = None) -> AppConfig:
    """
    Load configuration from a YAML file
    Missing file or sections keep defaults; the GitHub token may come
    from the environment
    """
    config = AppConfig()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}

            if not isinstance(data, dict):
                raise ValueError(f"{path} must contain a mapping")

            config = AppConfig(
                sync=_section(data, 'sync', SyncConfig),
                remote=_section(data, 'remote', RemoteConfig),
                storage=_section(data, 'storage', StorageConfig)
            )
            logger.info(f"Loaded configuration from {path}")
        else:
            logger.warning(f"Config file {path} not found, using defaults")

    env_token = os.environ.get(TOKEN_ENV_VAR)
    if env_token:
        config.remote.token = env_token

    return config
