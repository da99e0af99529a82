"""Tenant-scoped business data store used by action steps.

The real store (projects, tasks, notifications, ...) lives outside the engine;
action steps only see this narrow contract.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Protocol

from .exceptions import NotFoundError, TenantAccessDenied


class TenantDataStore(Protocol):
    """Protocol for the tenant's business records."""

    async def insert(
        self, tenant_id: str, table: str, values: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Insert a record and return it including its ``id``."""

    async def update(
        self, tenant_id: str, table: str, record_id: str, values: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update a record and return the new state."""

    async def get(
        self, tenant_id: str, table: str, record_id: str
    ) -> Optional[Dict[str, Any]]:
        """Fetch a record or ``None``."""


class InMemoryDataStore(TenantDataStore):
    """Dictionary-backed store for tests and local runs."""

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def insert(
        self, tenant_id: str, table: str, values: Dict[str, Any]
    ) -> Dict[str, Any]:
        record = {"id": str(uuid.uuid4()), **values, "tenant_id": tenant_id}
        self.tables.setdefault(table, {})[record["id"]] = record
        return dict(record)

    async def update(
        self, tenant_id: str, table: str, record_id: str, values: Dict[str, Any]
    ) -> Dict[str, Any]:
        record = self.tables.get(table, {}).get(record_id)
        if record is None:
            raise NotFoundError(f"{table} record {record_id} not found")
        if record["tenant_id"] != tenant_id:
            raise TenantAccessDenied(table, record_id, tenant_id)
        record.update({k: v for k, v in values.items() if k not in ("id", "tenant_id")})
        return dict(record)

    async def get(
        self, tenant_id: str, table: str, record_id: str
    ) -> Optional[Dict[str, Any]]:
        record = self.tables.get(table, {}).get(record_id)
        if record is None:
            return None
        if record["tenant_id"] != tenant_id:
            raise TenantAccessDenied(table, record_id, tenant_id)
        return dict(record)

    def rows(self, table: str) -> list[Dict[str, Any]]:
        return [dict(r) for r in self.tables.get(table, {}).values()]
