"""Run lock factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowgateConfig, load_config
from .base import RunLock
from .inmemory import InMemoryRunLock


def get_run_lock(
    backend: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> RunLock:
    """Factory function to get the configured run lock."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("FLOWGATE_LOCK_BACKEND")
        or config.locks.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryRunLock()
    elif backend == "redis":
        from .redis import RedisRunLock

        redis_conf = config.locks.redis
        return RedisRunLock(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            timeout=config.locks.timeout_seconds,
            blocking_timeout=config.locks.blocking_timeout_seconds,
        )
    else:
        raise ValueError(f"Unsupported lock backend: {backend}")


__all__ = ["RunLock", "InMemoryRunLock", "get_run_lock"]
