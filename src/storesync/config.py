"""Configuration management for storesync.

Loads configuration from environment variables and provides defaults.
Per-store policy lives in the sync_configurations table; the values here
are the node-wide defaults used when a store configuration is created.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()

VALID_ROLES = ("hq", "store")


@dataclass
class Config:
    """Application configuration."""

    # Database
    db_path: Path

    # Node identity
    node_role: str  # hq or store
    node_id: int

    # Per-store defaults
    sync_interval_seconds: int
    max_batch_size: int
    retry_attempts: int
    retry_delay_seconds: int
    retry_max_delay_seconds: int

    # Workers
    worker_count: int
    stuck_timeout_minutes: int

    # Logging
    log_level: str

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        db_path_str = os.environ.get(
            "STORESYNC_DB_PATH",
            str(Path.home() / ".storesync" / "storesync.db"),
        )
        db_path = Path(db_path_str).expanduser() if db_path_str != ":memory:" else Path(db_path_str)

        return cls(
            db_path=db_path,
            node_role=os.environ.get("STORESYNC_NODE_ROLE", "store").lower(),
            node_id=int(os.environ.get("STORESYNC_NODE_ID", "0")),
            sync_interval_seconds=int(os.environ.get("STORESYNC_SYNC_INTERVAL", "30")),
            max_batch_size=int(os.environ.get("STORESYNC_MAX_BATCH_SIZE", "100")),
            retry_attempts=int(os.environ.get("STORESYNC_RETRY_ATTEMPTS", "3")),
            retry_delay_seconds=int(os.environ.get("STORESYNC_RETRY_DELAY", "60")),
            retry_max_delay_seconds=int(
                os.environ.get("STORESYNC_RETRY_MAX_DELAY", "3600")
            ),
            worker_count=int(os.environ.get("STORESYNC_WORKERS", "4")),
            stuck_timeout_minutes=int(os.environ.get("STORESYNC_STUCK_TIMEOUT", "30")),
            log_level=os.environ.get("STORESYNC_LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.node_role not in VALID_ROLES:
            errors.append(f"Invalid node role: {self.node_role!r} (expected hq or store)")

        for name in (
            "sync_interval_seconds",
            "max_batch_size",
            "retry_attempts",
            "retry_delay_seconds",
            "worker_count",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if self.retry_max_delay_seconds < self.retry_delay_seconds:
            errors.append("retry_max_delay_seconds must be >= retry_delay_seconds")

        # Check database directory is writable
        if str(self.db_path) != ":memory:" and not self.db_path.parent.exists():
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                errors.append(f"Cannot create database directory: {self.db_path.parent}")

        return errors

    @property
    def is_hq(self) -> bool:
        return self.node_role == "hq"


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global config instance. Used for testing."""
    global _config
    _config = None
