from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


class WorkflowDefinitionRow(SQLModel, table=True):
    """One version of a tenant's workflow definition; steps embedded as JSON."""

    __tablename__ = "workflow_definitions"

    id: str = Field(primary_key=True)
    version: int = Field(default=1, primary_key=True)
    tenant_id: str = Field(index=True)
    name: str = ""
    trigger_type: str = Field(index=True)
    trigger_condition: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    trigger_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    steps: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_active: bool = True


class WorkflowRunRow(SQLModel, table=True):
    """Represents an instance of a workflow execution."""

    __tablename__ = "workflow_runs"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "workflow_id", "trigger_event_id", name="uq_run_trigger_event"
        ),
    )

    id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    workflow_version: int
    tenant_id: str = Field(index=True)
    triggered_by: Optional[str] = None
    trigger_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    trigger_event_id: Optional[str] = None
    status: str = Field(default="running")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )


class StepExecutionRow(SQLModel, table=True):
    """Tracks execution details for a single workflow step."""

    __tablename__ = "workflow_step_executions"
    __table_args__ = (
        UniqueConstraint("run_id", "position", name="uq_step_run_position"),
        Index("ix_step_status_resume_at", "status", "resume_at"),
    )

    id: str = Field(primary_key=True)
    run_id: str = Field(foreign_key="workflow_runs.id", index=True)
    tenant_id: str = Field(index=True)
    position: int
    step_kind: str
    status: str = Field(default="pending")
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None
    next_position: Optional[int] = None
    ends_run: bool = False
    external_ref: Optional[str] = None
    resume_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    started_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )


class WorkflowApprovalRow(SQLModel, table=True):
    """Human decision requested by an approval step."""

    __tablename__ = "workflow_approvals"

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    run_id: str = Field(foreign_key="workflow_runs.id")
    step_execution_id: str = Field(
        foreign_key="workflow_step_executions.id", index=True
    )
    requested_from: str = Field(index=True)
    instructions: Optional[str] = None
    status: str = Field(default="pending")
    comment: Optional[str] = None
    decided_by: Optional[str] = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    decided_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
