"""Redis run lock for multi-process deployments."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError

from ..exceptions import TransientStoreError
from .base import RunLock

logger = logging.getLogger(__name__)


class RedisRunLock(RunLock):
    """Distributed lock keyed by run id using ``redis.asyncio`` locks."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        timeout: float = 60.0,
        blocking_timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self._redis: Optional[Any] = None

    def _client(self) -> Any:
        if self._redis is None:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
            )
        return self._redis

    @asynccontextmanager
    async def acquire(self, run_id: str) -> AsyncIterator[None]:
        lock = self._client().lock(
            f"flowgate:run:{run_id}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisConnectionError as e:
            raise TransientStoreError(f"Run lock backend unavailable: {e}") from e
        if not acquired:
            raise TransientStoreError(f"Run {run_id} is busy in another invocation")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning(
                    f"Run lock for {run_id} expired before release; "
                    "consider raising locks.timeout_seconds"
                )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
