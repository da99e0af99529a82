"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import ApprovalStatus, RunStatus, StepKind, StepStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowRun(BaseModel):
    """One instantiation of a workflow definition triggered by one event.

    ``trigger_data`` is a snapshot taken at creation and never changes.
    """

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int
    tenant_id: str
    triggered_by: Optional[str] = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    trigger_event_id: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class StepExecution(BaseModel):
    """Record of one step attempted within a run; unique per position."""

    id: str = Field(default_factory=new_id)
    run_id: str
    tenant_id: str
    position: int
    step_kind: StepKind
    status: StepStatus = StepStatus.PENDING
    output: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    next_position: Optional[int] = None
    ends_run: bool = False
    external_ref: Optional[str] = None
    resume_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowApproval(BaseModel):
    """Human decision requested by an approval step."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    run_id: str
    step_execution_id: str
    requested_from: str
    instructions: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    comment: Optional[str] = None
    decided_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: Optional[datetime] = None
