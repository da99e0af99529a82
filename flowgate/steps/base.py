"""Base classes shared by all step executors."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional

from ..config import EngineConfig
from ..contracts import StepKind, StepOutcome, StepSpec, WorkflowDefinition
from ..datastore import TenantDataStore
from ..integrations import IntegrationClient
from ..persistence.models import StepExecution, WorkflowRun, utcnow
from ..persistence.repository import WorkflowRepository
from ..security.callbacks import CallbackTokenService


@dataclass
class StepServices:
    """Collaborators available to every executor."""

    repository: WorkflowRepository
    data_store: TenantDataStore
    callback_tokens: CallbackTokenService
    integrations: Dict[str, IntegrationClient] = field(default_factory=dict)
    config: EngineConfig = field(default_factory=EngineConfig)
    clock: Callable[[], datetime] = utcnow


@dataclass
class StepContext:
    """Everything a step may read while it executes.

    ``outputs`` maps positions of completed steps to their output;
    ``variables`` is the trigger data overlaid with those outputs in
    execution order, and is what ``{{placeholders}}`` resolve against.
    """

    run: WorkflowRun
    definition: WorkflowDefinition
    step: StepSpec
    execution: StepExecution
    config: Dict[str, Any]
    outputs: Mapping[int, Dict[str, Any]]
    variables: Mapping[str, Any]

    @property
    def tenant_id(self) -> str:
        return self.run.tenant_id

    @property
    def actor_id(self) -> Optional[str]:
        return self.run.triggered_by


class StepExecutor(metaclass=abc.ABCMeta):
    """Executes one step kind and reports a :data:`StepOutcome`.

    Executors raise for failures; the orchestrator turns exceptions into
    ``Failed`` outcomes so an executor can never crash a run loop.
    """

    kind: ClassVar[StepKind]

    def __init__(self, services: StepServices) -> None:
        self.services = services

    @abc.abstractmethod
    async def execute(self, ctx: StepContext) -> StepOutcome:
        raise NotImplementedError
