"""Base interface for per-run invocation locks."""

from __future__ import annotations

import abc
from typing import AsyncContextManager


class RunLock(metaclass=abc.ABCMeta):
    """Serializes orchestrator invocations for the same run id.

    The step claim compare-and-set already prevents double dispatch; the lock
    keeps concurrent resumes from racing each other into needless conflicts.
    """

    @abc.abstractmethod
    def acquire(self, run_id: str) -> AsyncContextManager[None]:
        """Return an async context manager holding the lock for ``run_id``."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
        pass
