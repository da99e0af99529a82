"""Approval resume protocol tests."""

import asyncio

import pytest

from flowgate import WorkflowEngine
from flowgate.contracts import ApprovalStatus, RunStatus, StepStatus
from flowgate.exceptions import (
    ApprovalAlreadyResolved,
    AuthorizationError,
    NotFoundError,
    StepClaimConflict,
    TenantAccessDenied,
)
from flowgate.datastore import InMemoryDataStore
from flowgate.locks import InMemoryRunLock

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


async def _suspended_run(engine, project_workflow):
    await engine.save_definition(project_workflow)
    run_id = await engine.execute_workflow(
        project_workflow.id, {"project_name": "Website"}, TENANT, "user-1"
    )
    approvals = await engine.list_pending_approvals(TENANT)
    assert len(approvals) == 1
    return run_id, approvals[0]


async def _snapshot(engine, run_id):
    run = await engine.get_run(run_id, TENANT)
    steps = await engine.list_step_executions(run_id, TENANT)
    approvals = await engine.repository.list_approvals(TENANT)
    return run, steps, approvals


@pytest.mark.asyncio
async def test_approval_step_suspends_with_single_waiting_execution(engine, project_workflow, data_store):
    run_id, approval = await _suspended_run(engine, project_workflow)

    steps = await engine.list_step_executions(run_id, TENANT)
    waiting = [s for s in steps if s.status == StepStatus.WAITING_APPROVAL]
    assert len(waiting) == 1
    assert waiting[0].position == 2
    assert approval.requested_from == "manager-1"
    assert approval.instructions == "Sign off Website"
    assert approval.step_execution_id == waiting[0].id

    notes = [n for n in data_store.rows("notifications") if n["type"] == "approval"]
    assert [n["user_id"] for n in notes] == ["manager-1"]


@pytest.mark.asyncio
async def test_approving_completes_the_run(engine, project_workflow, data_store):
    run_id, approval = await _suspended_run(engine, project_workflow)

    decided = await engine.resolve_approval(approval.id, "approved", "looks good", "manager-1", TENANT)

    assert decided.status == ApprovalStatus.APPROVED
    assert decided.decided_at is not None
    run = await engine.get_run(run_id, TENANT)
    assert run.status == RunStatus.COMPLETED
    assert run.completed_at is not None
    steps = {s.position: s for s in await engine.list_step_executions(run_id, TENANT)}
    assert steps[2].status == StepStatus.COMPLETED
    assert steps[2].output["decision"] == "approved"
    assert steps[2].output["comment"] == "looks good"
    assert steps[2].output["decided_by"] == "manager-1"
    assert steps[3].status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_rejection_is_terminal(engine, project_workflow, data_store):
    run_id, approval = await _suspended_run(engine, project_workflow)

    await engine.resolve_approval(approval.id, "rejected", "over budget", "manager-1", TENANT)

    run = await engine.get_run(run_id, TENANT)
    assert run.status == RunStatus.FAILED
    assert run.completed_at is not None
    steps = {s.position: s for s in await engine.list_step_executions(run_id, TENANT)}
    assert steps[2].status == StepStatus.FAILED
    assert steps[2].error_message == "Rejected by manager-1: over budget"
    assert 3 not in steps

    await engine.execute_workflow(project_workflow.id, {}, TENANT, "user-1", run_id=run_id)

    steps = {s.position: s for s in await engine.list_step_executions(run_id, TENANT)}
    assert 3 not in steps
    assert (await engine.get_run(run_id, TENANT)).status == RunStatus.FAILED
    assert not [n for n in data_store.rows("notifications") if n["type"] == "workflow"]


@pytest.mark.asyncio
async def test_wrong_tenant_cannot_resolve(engine, project_workflow):
    run_id, approval = await _suspended_run(engine, project_workflow)
    before = await _snapshot(engine, run_id)

    with pytest.raises(TenantAccessDenied):
        await engine.resolve_approval(approval.id, "approved", None, "manager-1", OTHER_TENANT)

    assert await _snapshot(engine, run_id) == before


@pytest.mark.asyncio
async def test_only_requested_approver_can_resolve(engine, project_workflow):
    run_id, approval = await _suspended_run(engine, project_workflow)
    before = await _snapshot(engine, run_id)

    with pytest.raises(AuthorizationError):
        await engine.resolve_approval(approval.id, "approved", None, "intern-7", TENANT)

    assert await _snapshot(engine, run_id) == before


@pytest.mark.asyncio
async def test_second_decision_is_rejected(engine, project_workflow):
    run_id, approval = await _suspended_run(engine, project_workflow)
    await engine.resolve_approval(approval.id, "approved", None, "manager-1", TENANT)

    with pytest.raises(ApprovalAlreadyResolved):
        await engine.resolve_approval(approval.id, "rejected", None, "manager-1", TENANT)
    with pytest.raises(ApprovalAlreadyResolved):
        await engine.resolve_approval(approval.id, "approved", None, "manager-1", TENANT)

    assert (await engine.get_run(run_id, TENANT)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_half_applied_decision_is_finished_on_retry(engine, project_workflow, repository):
    run_id, approval = await _suspended_run(engine, project_workflow)
    # Simulate a crash after the approval was decided but before the step moved.
    await repository.decide_approval(
        approval.id, TENANT, ApprovalStatus.APPROVED, None, "manager-1"
    )

    await engine.resolve_approval(approval.id, "approved", None, "manager-1", TENANT)

    assert (await engine.get_run(run_id, TENANT)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_invalid_decision_and_missing_approval(engine, project_workflow):
    _, approval = await _suspended_run(engine, project_workflow)

    with pytest.raises(ValueError):
        await engine.resolve_approval(approval.id, "maybe", None, "manager-1", TENANT)
    with pytest.raises(NotFoundError):
        await engine.resolve_approval("nope", "approved", None, "manager-1", TENANT)


@pytest.mark.asyncio
async def test_approver_defaults_to_triggering_actor(engine, project_workflow):
    project_workflow.steps[1].config.pop("approver_id")
    _, approval = await _suspended_run(engine, project_workflow)

    assert approval.requested_from == "user-1"
    assert await engine.list_pending_approvals(TENANT, user_id="user-1") == [approval]
    assert await engine.list_pending_approvals(TENANT, user_id="manager-1") == []


class DecidingDataStore(InMemoryDataStore):
    """Approves the request from inside the approval notification, before the
    step has recorded its suspension."""

    def __init__(self):
        super().__init__()
        self.engine = None
        self.errors = []

    async def insert(self, tenant_id, table, values):
        record = await super().insert(tenant_id, table, values)
        if table == "notifications" and values.get("type") == "approval":
            [approval] = await self.engine.list_pending_approvals(tenant_id)
            try:
                await self.engine.resolve_approval(
                    approval.id, "approved", None, approval.requested_from, tenant_id
                )
            except StepClaimConflict as e:
                self.errors.append(e)
        return record


@pytest.mark.asyncio
async def test_decision_before_suspension_is_retryable(config, repository, project_workflow):
    store = DecidingDataStore()
    engine = WorkflowEngine(
        repository=repository, data_store=store, config=config, run_lock=InMemoryRunLock()
    )
    store.engine = engine
    await engine.save_definition(project_workflow)

    run_id = await engine.execute_workflow(
        project_workflow.id, {"project_name": "Website"}, TENANT, "user-1"
    )

    assert len(store.errors) == 1
    [approval] = await engine.list_pending_approvals(TENANT)
    assert approval.status == ApprovalStatus.PENDING
    steps = {s.position: s for s in await engine.list_step_executions(run_id, TENANT)}
    assert steps[2].status == StepStatus.WAITING_APPROVAL

    await engine.resolve_approval(approval.id, "approved", None, "manager-1", TENANT)

    assert (await engine.get_run(run_id, TENANT)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_decisions_resume_once(engine, project_workflow, data_store):
    run_id, approval = await _suspended_run(engine, project_workflow)

    results = await asyncio.gather(
        engine.resolve_approval(approval.id, "approved", "a", "manager-1", TENANT),
        engine.resolve_approval(approval.id, "approved", "b", "manager-1", TENANT),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert all(isinstance(e, ApprovalAlreadyResolved) for e in errors)
    assert len(errors) < 2
    assert (await engine.get_run(run_id, TENANT)).status == RunStatus.COMPLETED
    assert len(data_store.rows("tasks")) == 1
    finals = [n for n in data_store.rows("notifications") if n["user_id"] == "owner-1"]
    assert len(finals) == 1
