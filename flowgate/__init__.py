"""Flowgate: durable, multi-tenant workflow automation."""

from .config import FlowgateConfig, load_config
from .contracts import (
    Completed,
    Failed,
    RunStatus,
    StepKind,
    StepSpec,
    StepStatus,
    Suspended,
    WorkflowDefinition,
)
from .datastore import InMemoryDataStore, TenantDataStore
from .engine import WorkflowEngine
from .execute import RunOrchestrator
from .persistence import get_repository
from .resume import ResumeProtocol
from .triggers import TriggerMatcher

__version__ = "0.1.0"
__all__ = [
    "Completed",
    "Failed",
    "FlowgateConfig",
    "InMemoryDataStore",
    "ResumeProtocol",
    "RunOrchestrator",
    "RunStatus",
    "StepKind",
    "StepSpec",
    "StepStatus",
    "Suspended",
    "TenantDataStore",
    "TriggerMatcher",
    "WorkflowDefinition",
    "WorkflowEngine",
    "get_repository",
    "load_config",
]
