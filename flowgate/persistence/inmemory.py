"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from ..contracts import (
    CLAIMABLE_STATUSES,
    ApprovalStatus,
    RunStatus,
    StepKind,
    StepStatus,
    WorkflowDefinition,
)
from ..exceptions import DuplicateRun, TenantAccessDenied
from .models import StepExecution, WorkflowApproval, WorkflowRun, utcnow
from .repository import WorkflowRepository

_TERMINAL_RUN = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
_TERMINAL_STEP = {StepStatus.COMPLETED, StepStatus.FAILED}


def _check_tenant(record: Any, record_type: str, tenant_id: str) -> None:
    if record.tenant_id != tenant_id:
        raise TenantAccessDenied(record_type, record.id, tenant_id)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers can never mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: Dict[str, StepExecution] = {}
        self._approvals: Dict[str, WorkflowApproval] = {}

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        existing = self._latest(definition.id)
        if existing is not None:
            _check_tenant(existing, "Workflow", definition.tenant_id)
        self._definitions[(definition.id, definition.version)] = definition.model_copy(
            deep=True
        )

    def _latest(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        versions = [d for (wid, _), d in self._definitions.items() if wid == workflow_id]
        return max(versions, key=lambda d: d.version) if versions else None

    async def get_definition(
        self, workflow_id: str, tenant_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            definition = self._latest(workflow_id)
        else:
            definition = self._definitions.get((workflow_id, version))
        if definition is None:
            return None
        _check_tenant(definition, "Workflow", tenant_id)
        return definition.model_copy(deep=True)

    async def list_definitions(
        self,
        tenant_id: str,
        trigger_type: Optional[str] = None,
        active_only: bool = False,
    ) -> list[WorkflowDefinition]:
        latest: Dict[str, WorkflowDefinition] = {}
        for definition in self._definitions.values():
            if definition.tenant_id != tenant_id:
                continue
            current = latest.get(definition.id)
            if current is None or definition.version > current.version:
                latest[definition.id] = definition
        return [
            d.model_copy(deep=True)
            for d in latest.values()
            if (trigger_type is None or d.trigger_type == trigger_type)
            and (not active_only or d.is_active)
        ]

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        if run.trigger_event_id is not None:
            existing = await self.find_run_by_event(
                run.tenant_id, run.workflow_id, run.trigger_event_id
            )
            if existing is not None:
                raise DuplicateRun(
                    f"Run already exists for event {run.trigger_event_id}",
                    existing_run_id=existing.id,
                )
        self._runs[run.id] = run.model_copy(deep=True)
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str, tenant_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        _check_tenant(run, "Run", tenant_id)
        return run.model_copy(deep=True)

    async def find_run_by_event(
        self, tenant_id: str, workflow_id: str, event_id: str
    ) -> WorkflowRun | None:
        for run in self._runs.values():
            if (
                run.tenant_id == tenant_id
                and run.workflow_id == workflow_id
                and run.trigger_event_id == event_id
            ):
                return run.model_copy(deep=True)
        return None

    async def list_runs(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
    ) -> list[WorkflowRun]:
        runs = [
            r
            for r in self._runs.values()
            if r.tenant_id == tenant_id
            and (workflow_id is None or r.workflow_id == workflow_id)
            and (status is None or r.status == status)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs]

    async def update_run_status(
        self,
        run_id: str,
        tenant_id: str,
        status: RunStatus,
        expected: Iterable[RunStatus] = (RunStatus.RUNNING,),
    ) -> bool:
        run = self._runs.get(run_id)
        if run is None:
            return False
        _check_tenant(run, "Run", tenant_id)
        if run.status not in set(expected):
            return False
        run.status = status
        if status in _TERMINAL_RUN:
            run.completed_at = utcnow()
        return True

    # ------------------------------------------------------------------
    async def list_step_executions(
        self, run_id: str, tenant_id: str
    ) -> list[StepExecution]:
        run = self._runs.get(run_id)
        if run is not None:
            _check_tenant(run, "Run", tenant_id)
        steps = [
            s
            for s in self._steps.values()
            if s.run_id == run_id and s.tenant_id == tenant_id
        ]
        steps.sort(key=lambda s: s.position)
        return [s.model_copy(deep=True) for s in steps]

    async def get_step_execution(
        self, execution_id: str, tenant_id: str
    ) -> StepExecution | None:
        step = self._steps.get(execution_id)
        if step is None:
            return None
        _check_tenant(step, "Step execution", tenant_id)
        return step.model_copy(deep=True)

    async def claim_step(
        self, run_id: str, tenant_id: str, position: int, step_kind: StepKind
    ) -> StepExecution | None:
        run = self._runs.get(run_id)
        if run is not None:
            _check_tenant(run, "Run", tenant_id)
        for step in self._steps.values():
            if step.run_id == run_id and step.position == position:
                _check_tenant(step, "Step execution", tenant_id)
                if step.status not in CLAIMABLE_STATUSES:
                    return None
                step.status = StepStatus.RUNNING
                step.started_at = utcnow()
                return step.model_copy(deep=True)
        step = StepExecution(
            run_id=run_id,
            tenant_id=tenant_id,
            position=position,
            step_kind=step_kind,
            status=StepStatus.RUNNING,
            started_at=utcnow(),
        )
        self._steps[step.id] = step
        return step.model_copy(deep=True)

    async def transition_step(
        self,
        execution_id: str,
        tenant_id: str,
        expected: Iterable[StepStatus],
        status: StepStatus,
        **changes: Any,
    ) -> bool:
        step = self._steps.get(execution_id)
        if step is None:
            return False
        _check_tenant(step, "Step execution", tenant_id)
        if step.status not in set(expected):
            return False
        step.status = status
        for key, value in changes.items():
            setattr(step, key, value)
        if status in _TERMINAL_STEP:
            step.completed_at = utcnow()
        return True

    async def list_due_delays(self, now: datetime) -> list[StepExecution]:
        due = [
            s
            for s in self._steps.values()
            if s.status == StepStatus.WAITING_DELAY
            and s.resume_at is not None
            and s.resume_at <= now
        ]
        due.sort(key=lambda s: s.resume_at)
        return [s.model_copy(deep=True) for s in due]

    # ------------------------------------------------------------------
    async def create_approval(self, approval: WorkflowApproval) -> WorkflowApproval:
        self._approvals[approval.id] = approval.model_copy(deep=True)
        return approval.model_copy(deep=True)

    async def get_approval(
        self, approval_id: str, tenant_id: str
    ) -> WorkflowApproval | None:
        approval = self._approvals.get(approval_id)
        if approval is None:
            return None
        _check_tenant(approval, "Approval", tenant_id)
        return approval.model_copy(deep=True)

    async def get_approval_for_step(
        self, step_execution_id: str, tenant_id: str
    ) -> WorkflowApproval | None:
        for approval in self._approvals.values():
            if approval.step_execution_id == step_execution_id:
                _check_tenant(approval, "Approval", tenant_id)
                return approval.model_copy(deep=True)
        return None

    async def list_approvals(
        self,
        tenant_id: str,
        requested_from: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[WorkflowApproval]:
        approvals = [
            a
            for a in self._approvals.values()
            if a.tenant_id == tenant_id
            and (requested_from is None or a.requested_from == requested_from)
            and (status is None or a.status == status)
        ]
        approvals.sort(key=lambda a: a.created_at)
        return [a.model_copy(deep=True) for a in approvals]

    async def decide_approval(
        self,
        approval_id: str,
        tenant_id: str,
        status: ApprovalStatus,
        comment: Optional[str],
        decided_by: str,
    ) -> bool:
        approval = self._approvals.get(approval_id)
        if approval is None:
            return False
        _check_tenant(approval, "Approval", tenant_id)
        if approval.status != ApprovalStatus.PENDING:
            return False
        approval.status = status
        approval.comment = comment
        approval.decided_by = decided_by
        approval.decided_at = utcnow()
        return True

    async def close(self) -> None:
        pass
