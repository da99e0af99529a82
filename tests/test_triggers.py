"""Trigger matching tests."""

import logging

import pytest

from flowgate.contracts import StepKind, StepSpec, WorkflowDefinition
from flowgate.triggers import DEPTH_KEY, compile_trigger_config, definition_matches

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


def _notify_workflow(workflow_id, tenant_id=TENANT, trigger_type="lead_created", **kwargs):
    return WorkflowDefinition(
        id=workflow_id,
        tenant_id=tenant_id,
        trigger_type=trigger_type,
        steps=[
            StepSpec(
                position=1,
                kind=StepKind.ACTION,
                config={"action": "send_notification", "message": "{{lead_name}}"},
            )
        ],
        **kwargs,
    )


@pytest.mark.asyncio
async def test_only_matching_definition_starts_a_run(engine):
    await engine.save_definition(_notify_workflow("all-leads"))
    await engine.save_definition(
        _notify_workflow(
            "web-leads",
            trigger_condition={"field": "lead_source", "op": "eq", "value": "website"},
        )
    )

    run_ids = await engine.check_triggers(
        "lead_created", {"lead_name": "Ada", "lead_source": "referral"}, TENANT, "user-1"
    )

    assert len(run_ids) == 1
    run = await engine.get_run(run_ids[0], TENANT)
    assert run.workflow_id == "all-leads"
    assert len(await engine.list_runs(TENANT)) == 1


@pytest.mark.asyncio
async def test_inactive_other_event_and_other_tenant_are_ignored(engine):
    await engine.save_definition(_notify_workflow("inactive", is_active=False))
    await engine.save_definition(_notify_workflow("other-event", trigger_type="task_created"))
    await engine.save_definition(_notify_workflow("other-tenant", tenant_id=OTHER_TENANT))

    assert await engine.check_triggers("lead_created", {}, TENANT, "user-1") == []


@pytest.mark.asyncio
async def test_run_snapshots_payload_with_depth(engine):
    await engine.save_definition(_notify_workflow("all-leads"))
    payload = {"lead_name": "Ada"}

    [run_id] = await engine.check_triggers("lead_created", payload, TENANT, "user-1")

    run = await engine.get_run(run_id, TENANT)
    assert run.trigger_data == {"lead_name": "Ada", DEPTH_KEY: 1}
    assert run.triggered_by == "user-1"
    assert payload == {"lead_name": "Ada"}


@pytest.mark.asyncio
async def test_loop_guard_drops_deep_events(engine, caplog):
    await engine.save_definition(_notify_workflow("all-leads"))

    with caplog.at_level(logging.WARNING):
        run_ids = await engine.check_triggers(
            "lead_created", {DEPTH_KEY: 5}, TENANT, "user-1"
        )

    assert run_ids == []
    assert "Max trigger depth" in caplog.text


@pytest.mark.asyncio
async def test_event_id_suppresses_duplicate_runs(engine):
    await engine.save_definition(_notify_workflow("all-leads"))

    first = await engine.check_triggers("lead_created", {}, TENANT, "user-1", event_id="evt-1")
    second = await engine.check_triggers("lead_created", {}, TENANT, "user-1", event_id="evt-1")
    third = await engine.check_triggers("lead_created", {}, TENANT, "user-1", event_id="evt-2")

    assert first == second
    assert third != first
    assert len(await engine.list_runs(TENANT)) == 2


@pytest.mark.asyncio
async def test_without_event_id_every_call_starts_a_run(engine):
    await engine.save_definition(_notify_workflow("all-leads"))

    await engine.check_triggers("lead_created", {}, TENANT, "user-1")
    await engine.check_triggers("lead_created", {}, TENANT, "user-1")

    assert len(await engine.list_runs(TENANT)) == 2


@pytest.mark.asyncio
async def test_failing_definition_does_not_block_others(engine, repository, caplog):
    broken = WorkflowDefinition(
        id="broken",
        tenant_id=TENANT,
        trigger_type="lead_created",
        steps=[StepSpec(position=1, kind=StepKind.ACTION, config={"action": "send_notification"})],
    )
    await repository.save_definition(broken)
    await engine.save_definition(_notify_workflow("all-leads"))

    original = engine.orchestrator.start_run

    async def start_run(definition, *args, **kwargs):
        if definition.id == "broken":
            raise RuntimeError("boom")
        return await original(definition, *args, **kwargs)

    engine.orchestrator.start_run = start_run

    with caplog.at_level(logging.ERROR):
        run_ids = await engine.check_triggers("lead_created", {}, TENANT, "user-1")

    assert len(run_ids) == 1
    assert (await engine.get_run(run_ids[0], TENANT)).workflow_id == "all-leads"
    assert "broken" in caplog.text


@pytest.mark.asyncio
async def test_trigger_config_filters_status_changes(engine):
    definition = _notify_workflow(
        "to-done",
        trigger_type="task_status_changed",
        trigger_config={"to_status": "done"},
    )
    await engine.save_definition(definition)

    assert await engine.check_triggers(
        "task_status_changed", {"from_status": "todo", "to_status": "in_progress"}, TENANT, "u"
    ) == []
    assert len(
        await engine.check_triggers(
            "task_status_changed", {"from_status": "todo", "to_status": "done"}, TENANT, "u"
        )
    ) == 1


def test_compile_trigger_config_numeric_minimum():
    expression = compile_trigger_config("payment_received", {"min_amount": 500})

    assert expression == {"field": "payment_amount", "op": "gte", "value": 500}
    definition = _notify_workflow(
        "big", trigger_type="payment_received", trigger_config={"min_amount": 500}
    )
    assert definition_matches(definition, {"payment_amount": 750})
    assert not definition_matches(definition, {"payment_amount": 100})


def test_compile_trigger_config_ignores_unknown_and_empty_keys():
    assert compile_trigger_config("task_completed", {"anything": 1}) is None
    assert compile_trigger_config("task_status_changed", {"from_status": ""}) is None
    assert compile_trigger_config("event_ended", {"event_id": "e1", "event_type": "gala"}) == {
        "all": [
            {"field": "event_id", "op": "eq", "value": "e1"},
            {"field": "event_type", "op": "eq", "value": "gala"},
        ]
    }
