"""
approval_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain engine settings at runtime through
    ``get_engine_settings()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- YAML-driven.  Sits above ``approval_kernel`` and
    beside ``approval_services``.  The kernel MUST NEVER import from
    ``approval_config``.

Invariants enforced:
    - Single entrypoint: runtime settings flow through
      ``get_engine_settings()``.
    - Resolution order: explicit path, then the ``APPROVAL_ENGINE_CONFIG``
      environment variable, then the packaged ``sets/default/engine.yaml``.

Failure modes:
    - ``FileNotFoundError`` -- the resolved configuration file is missing.
    - ``KeyError`` -- a required key is missing.
    - ``ValueError`` -- a value fails ``EngineSettings`` validation.
    - ``yaml.YAMLError`` -- malformed YAML.

Audit relevance:
    Every successful ``get_engine_settings()`` call emits an
    ``APPROVAL_CONFIG_TRACE`` log entry naming the file and config id.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from approval_config.loader import (
    load_definition_specs,
    load_engine_settings,
    load_pipeline_templates,
)
from approval_config.schema import EngineSettings

_logger = logging.getLogger("approval_kernel.config")

CONFIG_ENV_VAR = "APPROVAL_ENGINE_CONFIG"

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
DEFAULT_SET_DIR = _DEFAULT_CONFIG_DIR / "default"


def get_engine_settings(path: Path | str | None = None) -> EngineSettings:
    """The ONLY public configuration entrypoint."""
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or DEFAULT_SET_DIR / "engine.yaml"
    path = Path(path)
    settings = load_engine_settings(path)
    _logger.info(
        "APPROVAL_CONFIG_TRACE",
        extra={
            "config_path": str(path),
            "config_id": settings.config_id,
            "directory_timeout_seconds": settings.directory_timeout_seconds,
            "notification_max_retries": settings.notification_max_retries,
        },
    )
    return settings


__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_SET_DIR",
    "EngineSettings",
    "get_engine_settings",
    "load_definition_specs",
    "load_pipeline_templates",
]
