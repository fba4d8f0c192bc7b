"""Configuration management for xynoxa-sync."""

import json
from pathlib import Path
from typing import List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from xynoxa_sync.services.exceptions import ConfigError

DATABASE_NAME = "index.db"
CONFIG_FILE_NAME = "server.conf"
STATUS_DIR_NAME = "status"
LOG_FILE_NAME = "xynoxa-sync.log"

Environment = Literal["test", "dev", "user"]


def default_config_dir() -> Path:
    return Path.home() / ".config" / "xynoxa"


class SyncConfig(BaseSettings):
    """Engine settings, read from the environment (XYNOXA_*) or a .env file."""

    env: Environment = Field(default="dev", description="Environment name")

    config_dir: Path = Field(
        default_factory=default_config_dir,
        description="Directory holding the index database, config file and logs",
    )

    # Change detection
    debounce_ms: int = Field(
        default=500, description="Quiet period before a path's events are considered settled"
    )
    event_queue_size: int = Field(
        default=1000, description="Capacity of the watcher -> debouncer queue"
    )
    poll_interval: float = Field(
        default=20.0, description="Seconds between periodic remote change checks"
    )

    # Worker pool
    global_concurrency: int = Field(
        default=8, description="Maximum concurrent I/O units across all group folders"
    )
    folder_concurrency: int = Field(
        default=4, description="Maximum concurrent I/O units within one group folder"
    )

    # Network retries
    max_retries: int = Field(default=5, description="Retries for transient network errors")
    initial_backoff: float = Field(default=1.0, description="First retry delay in seconds")
    max_backoff: float = Field(default=60.0, description="Upper bound on a retry delay")

    hash_chunk_size: int = Field(
        default=1024 * 1024, description="Bytes read per step when fingerprinting files"
    )

    ignore_patterns: List[str] = Field(
        default_factory=list, description="Extra glob patterns never synchronized"
    )

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="XYNOXA_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def database_path(self) -> Path:
        """Get SQLite database path."""
        return self.config_dir / DATABASE_NAME

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME

    @property
    def status_dir(self) -> Path:
        return self.config_dir / STATUS_DIR_NAME

    @property
    def is_test_env(self) -> bool:
        return self.env == "test"

    @field_validator("config_dir")
    @classmethod
    def ensure_path_exists(cls, v: Path) -> Path:
        """Ensure config path exists."""
        v = v.expanduser()
        if not v.exists():
            v.mkdir(parents=True)
        return v

    @field_validator(
        "debounce_ms",
        "event_queue_size",
        "global_concurrency",
        "folder_concurrency",
        "hash_chunk_size",
    )
    @classmethod
    def ensure_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


class AppConfig(BaseModel):
    """Setup state persisted for the presentation layer."""

    server_url: Optional[str] = None
    sync_path: Optional[str] = None
    setup_completed: bool = False

    @property
    def sync_root(self) -> Optional[Path]:
        """The configured sync path with ``~`` expanded."""
        if not self.sync_path:
            return None
        return Path(self.sync_path).expanduser()


class ConfigManager:
    """Loads and saves AppConfig as JSON next to the index database."""

    def __init__(self, sync_config: Optional[SyncConfig] = None):
        self.sync_config = sync_config or SyncConfig()
        self.config_dir = self.sync_config.config_dir
        self.config_file = self.sync_config.config_file
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config = self.load_config()

    def load_config(self) -> AppConfig:
        """Load configuration from file, falling back to defaults if it is unreadable."""
        if not self.config_file.exists():
            return AppConfig()
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
            return AppConfig.model_validate(data)
        except Exception as e:
            logger.warning(f"Failed to load config from {self.config_file}: {e}")
            return AppConfig()

    def save_config(self, config: AppConfig) -> None:
        """Save configuration to file."""
        try:
            self.config_file.write_text(config.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Failed to write config {self.config_file}: {e}") from e
        self.config = config

    def update(
        self,
        url: Optional[str] = None,
        path: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> AppConfig:
        """Apply the given fields and persist. ``None`` leaves a field unchanged."""
        data = self.config.model_dump()
        if url is not None:
            url = url.strip().rstrip("/")
            if not url.startswith(("http://", "https://")):
                raise ConfigError(f"Server URL must start with http:// or https://: {url}")
            data["server_url"] = url
        if path is not None:
            if not path.strip():
                raise ConfigError("Sync path must not be empty")
            data["sync_path"] = path
        if completed is not None:
            data["setup_completed"] = completed

        config = AppConfig.model_validate(data)
        self.save_config(config)
        logger.info(f"Saved config to {self.config_file}")
        return config
