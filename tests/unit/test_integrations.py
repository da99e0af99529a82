import pytest
import requests

import flowgate.integrations as integrations
from flowgate import WorkflowEngine
from flowgate.config import EngineConfig, FlowgateConfig, IntegrationConfig
from flowgate.contracts import StepKind, StepSpec, StepStatus, WorkflowDefinition
from flowgate.exceptions import StepFailed
from flowgate.integrations import (
    HttpIntegrationClient,
    IntegrationRequest,
    RecordingIntegrationClient,
)
from flowgate.locks import InMemoryRunLock
from flowgate.persistence import InMemoryWorkflowRepository

TENANT = "tenant-a"


class _Response:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return self._payload


def _request():
    return IntegrationRequest(
        integration="voice",
        tenant_id=TENANT,
        run_id="run-1",
        step_execution_id="step-1",
        callback_token="token-1",
        config={"phone": "+15550100"},
    )


def _fake_post(calls, response):
    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json, headers, timeout))
        if isinstance(response, Exception):
            raise response
        return response

    return fake_post


@pytest.mark.asyncio
async def test_http_client_posts_request_and_returns_call_id(monkeypatch):
    calls = []
    monkeypatch.setattr(
        integrations.requests, "post", _fake_post(calls, _Response({"call_id": "c-1"}))
    )
    client = HttpIntegrationClient(
        "https://voice.example.com/calls", headers={"X-Key": "k"}, timeout=3
    )

    assert await client.start(_request()) == "c-1"

    [(url, body, headers, timeout)] = calls
    assert url == "https://voice.example.com/calls"
    assert body["callback_token"] == "token-1"
    assert body["config"] == {"phone": "+15550100"}
    assert headers == {"X-Key": "k"}
    assert timeout == 3


@pytest.mark.asyncio
async def test_http_client_accepts_camel_case_call_id(monkeypatch):
    monkeypatch.setattr(
        integrations.requests, "post", _fake_post([], _Response({"callId": 42}))
    )

    assert await HttpIntegrationClient("https://x").start(_request()) == "42"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, message",
    [
        (requests.ConnectionError("refused"), "failed to start"),
        (_Response({}, status_code=503), "failed to start"),
        (_Response({"status": "queued"}), "did not return a call id"),
    ],
)
async def test_http_client_failures_raise_step_failed(monkeypatch, response, message):
    monkeypatch.setattr(integrations.requests, "post", _fake_post([], response))

    with pytest.raises(StepFailed, match=message):
        await HttpIntegrationClient("https://x").start(_request())


@pytest.mark.asyncio
async def test_engine_builds_http_integrations_from_config(monkeypatch):
    calls = []
    monkeypatch.setattr(
        integrations.requests, "post", _fake_post(calls, _Response({"call_id": "c-9"}))
    )
    config = FlowgateConfig(
        engine=EngineConfig(callback_secret="secret"),
        integrations={
            "voice": IntegrationConfig(url="https://voice.example.com/calls"),
            "sms": IntegrationConfig(url="https://sms.example.com"),
        },
    )
    recording = RecordingIntegrationClient()
    engine = WorkflowEngine(
        repository=InMemoryWorkflowRepository(),
        integrations={"sms": recording},
        config=config,
        run_lock=InMemoryRunLock(),
    )
    assert isinstance(engine.services.integrations["voice"], HttpIntegrationClient)
    assert engine.services.integrations["sms"] is recording

    await engine.save_definition(
        WorkflowDefinition(
            id="call-lead",
            tenant_id=TENANT,
            trigger_type="lead_created",
            steps=[
                StepSpec(
                    position=1,
                    kind=StepKind.INTEGRATION_CALL,
                    config={"integration": "voice", "phone": "{{phone}}"},
                )
            ],
        )
    )
    [run_id] = await engine.check_triggers("lead_created", {"phone": "+1"}, TENANT, "user-1")

    [step] = await engine.list_step_executions(run_id, TENANT)
    assert step.status == StepStatus.WAITING_CALLBACK
    assert step.external_ref == "c-9"
    assert calls[0][1]["config"] == {"phone": "+1"}
