"""
approval_engines.tracer -- ``@traced_engine``, the APPROVAL_ENGINE_TRACE emitter.

Every public engine function is wrapped so that one DEBUG record per call
names the engine, its version, how long it ran, whether it raised, and a
short fingerprint of the keyword inputs picked by ``fingerprint_fields``.
Two calls with the same picked inputs get the same fingerprint, which
makes it possible to line a decision up with the step it was applied to
when reading logs.

The decorator only logs.  Engines stay pure: the wrapped function's
result and exceptions pass through untouched.
"""

from __future__ import annotations

import functools
import hashlib
import json
import time
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any

from approval_kernel.logging_config import get_logger

logger = get_logger("engines.tracer")


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return str(value)


def input_fingerprint(fingerprint_fields: tuple[str, ...], kwargs: dict[str, Any]) -> str:
    """First 16 hex chars of SHA-256 over the picked keyword inputs."""
    picked = {name: kwargs.get(name) for name in fingerprint_fields}
    canonical = json.dumps(picked, sort_keys=True, default=_plain)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            outcome = "ok"
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                outcome = type(exc).__name__
                raise
            finally:
                logger.debug(
                    "APPROVAL_ENGINE_TRACE",
                    extra={
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "function": func.__qualname__,
                        "input_fingerprint": (
                            input_fingerprint(fingerprint_fields, kwargs)
                            if fingerprint_fields else ""
                        ),
                        "outcome": outcome,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                    },
                )

        return wrapper

    return decorator
