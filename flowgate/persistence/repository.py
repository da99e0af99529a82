"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from ..contracts import (
    ApprovalStatus,
    RunStatus,
    StepKind,
    StepStatus,
    WorkflowDefinition,
)
from .models import StepExecution, WorkflowApproval, WorkflowRun


class WorkflowRepository(Protocol):
    """Protocol for tenant-scoped workflow persistence backends.

    Every method that addresses an existing record takes the caller's
    ``tenant_id``. Backends raise :class:`~flowgate.exceptions.TenantAccessDenied`
    when the record belongs to another tenant and leave it untouched. Status
    transitions are compare-and-set: they name the status(es) they expect and
    report whether the update happened.
    """

    # Definitions -------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a definition version (insert or replace that version)."""

    async def get_definition(
        self, workflow_id: str, tenant_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        """Return ``version`` of a definition, or its latest version."""

    async def list_definitions(
        self,
        tenant_id: str,
        trigger_type: Optional[str] = None,
        active_only: bool = False,
    ) -> list[WorkflowDefinition]:
        """Return the latest version of each of the tenant's definitions."""

    # Runs --------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Insert a run. Raises ``DuplicateRun`` on a repeated trigger event id."""

    async def get_run(self, run_id: str, tenant_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def find_run_by_event(
        self, tenant_id: str, workflow_id: str, event_id: str
    ) -> WorkflowRun | None:
        """Return the run started for ``event_id``, if any."""

    async def list_runs(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
    ) -> list[WorkflowRun]:
        """Return the tenant's runs, newest first."""

    async def update_run_status(
        self,
        run_id: str,
        tenant_id: str,
        status: RunStatus,
        expected: Iterable[RunStatus] = (RunStatus.RUNNING,),
    ) -> bool:
        """Move a run to ``status`` if it is currently in ``expected``."""

    # Step executions ---------------------------------------------------
    async def list_step_executions(
        self, run_id: str, tenant_id: str
    ) -> list[StepExecution]:
        """Return a run's step executions ordered by position."""

    async def get_step_execution(
        self, execution_id: str, tenant_id: str
    ) -> StepExecution | None:
        """Retrieve a step execution by id."""

    async def claim_step(
        self, run_id: str, tenant_id: str, position: int, step_kind: StepKind
    ) -> StepExecution | None:
        """Mark the step at ``position`` as ``running``.

        Inserts the execution when none exists, otherwise moves it from a
        claimable status. Returns ``None`` when another invocation won.
        """

    async def transition_step(
        self,
        execution_id: str,
        tenant_id: str,
        expected: Iterable[StepStatus],
        status: StepStatus,
        **changes: Any,
    ) -> bool:
        """Set ``status`` (and ``changes``) if the step is in ``expected``."""

    async def list_due_delays(self, now: datetime) -> list[StepExecution]:
        """Return ``waiting_delay`` steps whose deadline has passed (all tenants)."""

    # Approvals ---------------------------------------------------------
    async def create_approval(self, approval: WorkflowApproval) -> WorkflowApproval:
        """Insert an approval request."""

    async def get_approval(
        self, approval_id: str, tenant_id: str
    ) -> WorkflowApproval | None:
        """Retrieve an approval by id."""

    async def get_approval_for_step(
        self, step_execution_id: str, tenant_id: str
    ) -> WorkflowApproval | None:
        """Return the approval created for a step execution, if any."""

    async def list_approvals(
        self,
        tenant_id: str,
        requested_from: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[WorkflowApproval]:
        """Return the tenant's approvals, oldest first."""

    async def decide_approval(
        self,
        approval_id: str,
        tenant_id: str,
        status: ApprovalStatus,
        comment: Optional[str],
        decided_by: str,
    ) -> bool:
        """Record a decision if the approval is still pending."""

    async def close(self) -> None:
        """Release connections held by the repository."""
