"""Step executors, one per :class:`~flowgate.contracts.StepKind`."""

from __future__ import annotations

from typing import Dict, Type

from ..contracts import StepKind
from .action import ActionStep
from .actions import ACTION_HANDLERS, action
from .approval import ApprovalStep
from .base import StepContext, StepExecutor, StepServices
from .condition import ConditionStep
from .delay import DelayStep
from .integration import IntegrationCallStep

EXECUTORS: Dict[StepKind, Type[StepExecutor]] = {
    cls.kind: cls
    for cls in (ActionStep, ConditionStep, ApprovalStep, IntegrationCallStep, DelayStep)
}

_missing = set(StepKind) - set(EXECUTORS)
if _missing:  # pragma: no cover - guards against adding a kind without an executor
    raise RuntimeError(f"No executor for step kinds: {sorted(k.value for k in _missing)}")


def build_executors(services: StepServices) -> Dict[StepKind, StepExecutor]:
    """Instantiate one executor per step kind bound to ``services``."""
    return {kind: cls(services) for kind, cls in EXECUTORS.items()}


__all__ = [
    "ACTION_HANDLERS",
    "EXECUTORS",
    "StepContext",
    "StepExecutor",
    "StepServices",
    "action",
    "build_executors",
]
