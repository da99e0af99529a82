"""Core contracts for flowgate workflow definitions and step outcomes."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .exceptions import ConfigurationError

END_OF_WORKFLOW = "end"


class StepKind(str, Enum):
    """Closed set of step kinds; each has exactly one executor."""

    ACTION = "action"
    CONDITION = "condition"
    APPROVAL = "approval"
    INTEGRATION_CALL = "integration_call"
    DELAY = "delay"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_APPROVAL = "waiting_approval"
    WAITING_CALLBACK = "waiting_callback"
    WAITING_DELAY = "waiting_delay"


WAITING_STATUSES = frozenset(
    {StepStatus.WAITING_APPROVAL, StepStatus.WAITING_CALLBACK, StepStatus.WAITING_DELAY}
)

# States from which the orchestrator may (re)claim a step for dispatch.
CLAIMABLE_STATUSES = frozenset({StepStatus.PENDING, StepStatus.WAITING_DELAY})


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class StepSpec(BaseModel):
    """Defines one step in a workflow."""

    position: int
    kind: StepKind
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.name or f"{self.kind.value}#{self.position}"


class WorkflowDefinition(BaseModel):
    """Tenant-authored rule: a trigger plus an ordered list of steps.

    Definitions are immutable per version. Editing a workflow saves a new
    version; runs stay pinned to the version they were started with.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    name: str = ""
    version: int = 1
    trigger_type: str
    trigger_condition: Optional[Dict[str, Any]] = None
    trigger_config: Optional[Dict[str, Any]] = None
    steps: List[StepSpec] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("steps")
    @classmethod
    def _order_steps(cls, steps: List[StepSpec]) -> List[StepSpec]:
        positions = [step.position for step in steps]
        if len(positions) != len(set(positions)):
            raise ValueError("step positions must be unique")
        return sorted(steps, key=lambda step: step.position)

    def first_position(self) -> Optional[int]:
        """Position of the first step, or ``None`` for an empty workflow."""
        return self.steps[0].position if self.steps else None

    def get_step(self, position: int) -> Optional[StepSpec]:
        for step in self.steps:
            if step.position == position:
                return step
        return None

    def position_after(self, position: int) -> Optional[int]:
        """Next position in order after ``position``."""
        for step in self.steps:
            if step.position > position:
                return step.position
        return None

    def resolve_branch_target(
        self, current: int, target: Union[int, str, None]
    ) -> tuple[Optional[int], bool]:
        """Translate a branch output into ``(next_position, ends_run)``.

        ``None`` means "advance to the following step". Explicit targets must
        name a defined position strictly after ``current``; anything else is a
        configuration error.
        """
        if target is None or target == "":
            return None, False
        if isinstance(target, str):
            if target.strip().lower() == END_OF_WORKFLOW:
                return None, True
            try:
                target = int(target.strip())
            except ValueError:
                raise ConfigurationError(
                    f"Branch target {target!r} of step {current} is not a position"
                ) from None
        if isinstance(target, bool) or not isinstance(target, int):
            raise ConfigurationError(
                f"Branch target {target!r} of step {current} is not a position"
            )
        if self.get_step(target) is None:
            raise ConfigurationError(
                f"Branch target {target} of step {current} does not exist in "
                f"workflow {self.id} v{self.version}"
            )
        if target <= current:
            raise ConfigurationError(
                f"Branch target {target} of step {current} must come after it"
            )
        return target, False


class Completed(BaseModel):
    """Step finished; ``next_position`` overrides sequential advance."""

    output: Dict[str, Any] = Field(default_factory=dict)
    next_position: Optional[Union[int, str]] = None


class Suspended(BaseModel):
    """Step is waiting on an external event before the run may continue."""

    status: StepStatus
    output: Dict[str, Any] = Field(default_factory=dict)
    external_ref: Optional[str] = None
    resume_at: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def _must_wait(cls, status: StepStatus) -> StepStatus:
        if status not in WAITING_STATUSES:
            raise ValueError(f"{status.value} is not a waiting status")
        return status


class Failed(BaseModel):
    """Step failed; the run fails with it."""

    error: str


StepOutcome = Union[Completed, Suspended, Failed]
