"""
Engine configuration schema.

``EngineSettings`` is the runtime artifact: everything the engine needs
from a configuration file, parsed and type-checked once.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings for one engine deployment."""

    database_url: str
    directory_timeout_seconds: float = 2.0
    notification_max_retries: int = 3
    log_level: str = "INFO"
    config_id: str = "default"

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url is required")
        if self.directory_timeout_seconds <= 0:
            raise ValueError(
                f"directory_timeout_seconds must be positive, got {self.directory_timeout_seconds}"
            )
        if self.notification_max_retries < 1:
            raise ValueError(
                f"notification_max_retries must be at least 1, got {self.notification_max_retries}"
            )
