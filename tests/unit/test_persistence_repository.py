from datetime import timedelta

import pytest

from flowgate.contracts import (
    ApprovalStatus,
    RunStatus,
    StepKind,
    StepSpec,
    StepStatus,
    WorkflowDefinition,
)
from flowgate.exceptions import DuplicateRun, TenantAccessDenied
from flowgate.persistence import (
    InMemoryWorkflowRepository,
    SQLWorkflowRepository,
    WorkflowApproval,
    WorkflowRun,
)
from flowgate.persistence.models import utcnow

TENANT = "tenant-a"
OTHER = "tenant-b"


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryWorkflowRepository()
    return SQLWorkflowRepository(f"sqlite+aiosqlite:///{tmp_path / 'wf.db'}")


def _definition(version=1, **kwargs):
    return WorkflowDefinition(
        id="wf-1",
        tenant_id=TENANT,
        name=f"v{version}",
        version=version,
        trigger_type="project_created",
        steps=[
            StepSpec(position=2, kind=StepKind.APPROVAL, config={"approver_id": "m"}),
            StepSpec(position=1, kind=StepKind.ACTION, config={"action": "create_task"}),
        ],
        **kwargs,
    )


async def _run(repo, event_id=None):
    await repo.save_definition(_definition())
    return await repo.create_run(
        WorkflowRun(
            workflow_id="wf-1",
            workflow_version=1,
            tenant_id=TENANT,
            triggered_by="u1",
            trigger_data={"project_name": "Website"},
            trigger_event_id=event_id,
        )
    )


@pytest.mark.asyncio
async def test_definition_versions_roundtrip(repo):
    await repo.save_definition(_definition(1))
    await repo.save_definition(_definition(2, is_active=False))

    latest = await repo.get_definition("wf-1", TENANT)
    pinned = await repo.get_definition("wf-1", TENANT, version=1)
    assert latest.version == 2
    assert pinned.name == "v1"
    assert [s.position for s in pinned.steps] == [1, 2]
    assert pinned.steps[0].config == {"action": "create_task"}

    assert [d.version for d in await repo.list_definitions(TENANT)] == [2]
    assert await repo.list_definitions(TENANT, active_only=True) == []
    assert await repo.list_definitions(TENANT, trigger_type="other") == []
    assert await repo.list_definitions(OTHER) == []
    assert await repo.get_definition("missing", TENANT) is None


@pytest.mark.asyncio
async def test_other_tenant_cannot_read_or_overwrite(repo):
    run = await _run(repo)

    with pytest.raises(TenantAccessDenied):
        await repo.get_definition("wf-1", OTHER)
    with pytest.raises(TenantAccessDenied):
        await repo.get_run(run.id, OTHER)
    with pytest.raises(TenantAccessDenied):
        await repo.update_run_status(run.id, OTHER, RunStatus.CANCELLED)
    with pytest.raises(TenantAccessDenied):
        await repo.save_definition(_definition(3).model_copy(update={"tenant_id": OTHER}))
    with pytest.raises(TenantAccessDenied):
        await repo.claim_step(run.id, OTHER, 1, StepKind.ACTION)

    assert (await repo.get_run(run.id, TENANT)).status == RunStatus.RUNNING
    assert await repo.list_step_executions(run.id, TENANT) == []
    assert await repo.list_runs(OTHER) == []


@pytest.mark.asyncio
async def test_run_status_compare_and_set(repo):
    run = await _run(repo)

    assert await repo.update_run_status(run.id, TENANT, RunStatus.COMPLETED)
    assert not await repo.update_run_status(run.id, TENANT, RunStatus.FAILED)
    assert not await repo.update_run_status("missing", TENANT, RunStatus.FAILED)

    stored = await repo.get_run(run.id, TENANT)
    assert stored.status == RunStatus.COMPLETED
    assert stored.completed_at is not None
    assert stored.trigger_data == {"project_name": "Website"}


@pytest.mark.asyncio
async def test_duplicate_event_id_is_rejected(repo):
    run = await _run(repo, event_id="evt-1")

    with pytest.raises(DuplicateRun) as exc_info:
        await repo.create_run(
            WorkflowRun(
                workflow_id="wf-1", workflow_version=1, tenant_id=TENANT, trigger_event_id="evt-1"
            )
        )

    assert exc_info.value.existing_run_id == run.id
    found = await repo.find_run_by_event(TENANT, "wf-1", "evt-1")
    assert found.id == run.id
    assert len(await repo.list_runs(TENANT)) == 1


@pytest.mark.asyncio
async def test_claim_step_is_compare_and_set(repo):
    run = await _run(repo)

    first = await repo.claim_step(run.id, TENANT, 1, StepKind.ACTION)
    assert first.status == StepStatus.RUNNING
    assert first.started_at is not None
    assert await repo.claim_step(run.id, TENANT, 1, StepKind.ACTION) is None

    assert await repo.transition_step(
        first.id, TENANT, expected=(StepStatus.RUNNING,), status=StepStatus.COMPLETED,
        output={"created_task_id": "t1"}, next_position=2,
    )
    # Completed steps are never claimed again.
    assert await repo.claim_step(run.id, TENANT, 1, StepKind.ACTION) is None
    assert not await repo.transition_step(
        first.id, TENANT, expected=(StepStatus.RUNNING,), status=StepStatus.FAILED
    )

    [stored] = await repo.list_step_executions(run.id, TENANT)
    assert stored.status == StepStatus.COMPLETED
    assert stored.output == {"created_task_id": "t1"}
    assert stored.next_position == 2
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_released_and_delayed_steps_can_be_reclaimed(repo):
    run = await _run(repo)
    step = await repo.claim_step(run.id, TENANT, 1, StepKind.DELAY)
    due = utcnow() - timedelta(minutes=1)
    later = utcnow() + timedelta(hours=1)

    assert await repo.transition_step(
        step.id, TENANT, expected=(StepStatus.RUNNING,), status=StepStatus.WAITING_DELAY,
        resume_at=due,
    )
    assert [s.id for s in await repo.list_due_delays(utcnow())] == [step.id]
    assert await repo.list_due_delays(due - timedelta(seconds=1)) == []
    assert await repo.list_due_delays(later - timedelta(hours=2)) == []

    reclaimed = await repo.claim_step(run.id, TENANT, 1, StepKind.DELAY)
    assert reclaimed.id == step.id
    assert reclaimed.resume_at == due
    assert await repo.list_due_delays(utcnow()) == []


@pytest.mark.asyncio
async def test_approval_decided_once(repo):
    run = await _run(repo)
    step = await repo.claim_step(run.id, TENANT, 2, StepKind.APPROVAL)
    approval = await repo.create_approval(
        WorkflowApproval(
            tenant_id=TENANT, run_id=run.id, step_execution_id=step.id, requested_from="m"
        )
    )

    assert (await repo.get_approval_for_step(step.id, TENANT)).id == approval.id
    assert [a.id for a in await repo.list_approvals(TENANT, requested_from="m")] == [approval.id]
    assert await repo.list_approvals(TENANT, requested_from="someone-else") == []

    assert await repo.decide_approval(approval.id, TENANT, ApprovalStatus.APPROVED, "ok", "m")
    assert not await repo.decide_approval(
        approval.id, TENANT, ApprovalStatus.REJECTED, "no", "m"
    )
    with pytest.raises(TenantAccessDenied):
        await repo.get_approval(approval.id, OTHER)

    stored = await repo.get_approval(approval.id, TENANT)
    assert stored.status == ApprovalStatus.APPROVED
    assert stored.comment == "ok"
    assert stored.decided_by == "m"
    assert stored.decided_at is not None
    assert await repo.list_approvals(TENANT, status=ApprovalStatus.PENDING) == []


@pytest.mark.asyncio
async def test_repository_copies_records(repo):
    run = await _run(repo)
    run.trigger_data["project_name"] = "mutated"

    assert (await repo.get_run(run.id, TENANT)).trigger_data == {"project_name": "Website"}
