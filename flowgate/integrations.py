"""Contracts for asynchronous external integrations (outbound calls, ...).

An integration accepts a request, starts work on its side and later reports
the outcome through the callback surface using the token it was handed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

import requests
from pydantic import BaseModel, Field

from .exceptions import StepFailed

logger = logging.getLogger(__name__)


class IntegrationRequest(BaseModel):
    """Payload handed to an integration when an ``integration_call`` step runs."""

    integration: str
    tenant_id: str
    run_id: str
    step_execution_id: str
    callback_token: str
    config: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)


class IntegrationClient(Protocol):
    async def start(self, request: IntegrationRequest) -> str:
        """Start the external work and return its call id."""


class HttpIntegrationClient(IntegrationClient):
    """Posts the request as JSON to an HTTP endpoint.

    The endpoint must answer with ``{"call_id": ...}`` (or ``callId``).
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout

    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = requests.post(
            self.url, json=body, headers=self.headers, timeout=self.timeout
        )
        resp.raise_for_status()
        return resp.json()

    async def start(self, request: IntegrationRequest) -> str:
        try:
            data = await asyncio.to_thread(self._post, request.model_dump(mode="json"))
        except requests.RequestException as e:
            raise StepFailed(f"Integration {request.integration} failed to start: {e}") from e
        call_id = data.get("call_id") or data.get("callId")
        if not call_id:
            raise StepFailed(
                f"Integration {request.integration} did not return a call id"
            )
        logger.info(
            f"Started {request.integration} call {call_id} for run {request.run_id}"
        )
        return str(call_id)


class RecordingIntegrationClient(IntegrationClient):
    """Keeps requests in memory instead of calling out; for tests and demos."""

    def __init__(self) -> None:
        self.requests: List[IntegrationRequest] = []
        self.call_ids: List[str] = []

    async def start(self, request: IntegrationRequest) -> str:
        call_id = str(uuid.uuid4())
        self.requests.append(request)
        self.call_ids.append(call_id)
        return call_id
