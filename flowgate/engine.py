"""Engine facade wiring persistence, executors and the resume protocol."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .config import FlowgateConfig, load_config
from .contracts import ApprovalStatus, RunStatus, WorkflowDefinition
from .datastore import InMemoryDataStore, TenantDataStore
from .definitions import validate_definition
from .exceptions import ConfigurationError, NotFoundError
from .execute import RunOrchestrator
from .integrations import HttpIntegrationClient, IntegrationClient
from .locks import RunLock, get_run_lock
from .persistence import get_repository
from .persistence.models import StepExecution, WorkflowApproval, WorkflowRun, utcnow
from .persistence.repository import WorkflowRepository
from .resume import ResumeProtocol
from .security import CallbackTokenService
from .steps import StepServices, build_executors
from .triggers import TriggerMatcher

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Single entry point for the request-handling layer.

    Every method runs to completion or to the next suspension point and then
    returns; nothing about a run is kept in memory between calls.
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        data_store: Optional[TenantDataStore] = None,
        integrations: Optional[Dict[str, IntegrationClient]] = None,
        config: Optional[FlowgateConfig] = None,
        run_lock: Optional[RunLock] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.data_store = data_store or InMemoryDataStore()
        self.clock = clock or utcnow
        engine_conf = self.config.engine

        self.callback_tokens = CallbackTokenService(
            engine_conf.callback_secret, engine_conf.callback_token_ttl_seconds
        )
        self.services = StepServices(
            repository=self.repository,
            data_store=self.data_store,
            callback_tokens=self.callback_tokens,
            integrations=self._build_integrations(integrations),
            config=engine_conf,
            clock=self.clock,
        )
        self.orchestrator = RunOrchestrator(
            self.repository,
            build_executors(self.services),
            run_lock or get_run_lock(config=self.config),
        )
        self.triggers = TriggerMatcher(
            self.repository, self.orchestrator, max_depth=engine_conf.max_trigger_depth
        )
        self.resume = ResumeProtocol(
            self.repository, self.orchestrator, self.callback_tokens, clock=self.clock
        )

    def _build_integrations(
        self, integrations: Optional[Dict[str, IntegrationClient]]
    ) -> Dict[str, IntegrationClient]:
        """HTTP clients from config, overridden by explicitly passed clients."""
        clients: Dict[str, IntegrationClient] = {
            name: HttpIntegrationClient(conf.url, conf.headers, conf.timeout_seconds)
            for name, conf in self.config.integrations.items()
        }
        clients.update(integrations or {})
        return clients

    # Definitions ---------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store a definition version.

        Raises:
            ConfigurationError: the definition would fail at run time.
        """
        problems = validate_definition(definition)
        if problems:
            raise ConfigurationError(
                f"Workflow {definition.id} v{definition.version} is invalid: "
                + "; ".join(problems)
            )
        await self.repository.save_definition(definition)
        logger.info(
            f"Saved workflow {definition.id} v{definition.version} "
            f"({definition.trigger_type}, tenant={definition.tenant_id})"
        )
        return definition

    async def list_definitions(self, tenant_id: str) -> list[WorkflowDefinition]:
        return await self.repository.list_definitions(tenant_id)

    # Entry points ----------------------------------------------------------
    async def check_triggers(
        self,
        event_type: str,
        payload: Dict[str, Any],
        tenant_id: str,
        actor_id: Optional[str],
        event_id: Optional[str] = None,
    ) -> list[str]:
        return await self.triggers.check_triggers(
            event_type, payload, tenant_id, actor_id, event_id=event_id
        )

    async def execute_workflow(
        self,
        workflow_id: str,
        trigger_data: Dict[str, Any],
        tenant_id: str,
        actor_id: Optional[str],
        run_id: Optional[str] = None,
    ) -> str:
        return await self.orchestrator.execute_workflow(
            workflow_id, trigger_data, tenant_id, actor_id, run_id=run_id
        )

    async def resolve_approval(
        self,
        approval_id: str,
        decision: str,
        comment: Optional[str],
        actor_id: str,
        tenant_id: str,
    ) -> WorkflowApproval:
        return await self.resume.resolve_approval(
            approval_id, decision, comment, actor_id, tenant_id
        )

    async def handle_integration_callback(
        self,
        token: str,
        call_id: str,
        status: str,
        output: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> str:
        return await self.resume.handle_integration_callback(
            token, call_id, status, output=output, error_message=error_message
        )

    async def resume_due_delays(self, now: Optional[datetime] = None) -> list[str]:
        return await self.resume.resume_due_delays(now)

    async def cancel_run(self, run_id: str, tenant_id: str, actor_id: Optional[str]) -> bool:
        """Mark a running run ``cancelled``; returns ``False`` if it already ended.

        A step that is mid-dispatch finishes on its own, but nothing after it
        is dispatched.
        """
        run = await self.get_run(run_id, tenant_id)
        cancelled = await self.repository.update_run_status(
            run.id, tenant_id, RunStatus.CANCELLED
        )
        if cancelled:
            logger.info(f"Run {run_id} cancelled by {actor_id}")
        else:
            logger.warning(f"Run {run_id} is {run.status.value}; cannot cancel")
        return cancelled

    # Read helpers ----------------------------------------------------------
    async def get_run(self, run_id: str, tenant_id: str) -> WorkflowRun:
        run = await self.repository.get_run(run_id, tenant_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    async def list_runs(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
    ) -> list[WorkflowRun]:
        return await self.repository.list_runs(tenant_id, workflow_id=workflow_id, status=status)

    async def list_step_executions(self, run_id: str, tenant_id: str) -> list[StepExecution]:
        await self.get_run(run_id, tenant_id)
        return await self.repository.list_step_executions(run_id, tenant_id)

    async def list_pending_approvals(
        self, tenant_id: str, user_id: Optional[str] = None
    ) -> list[WorkflowApproval]:
        return await self.repository.list_approvals(
            tenant_id, requested_from=user_id, status=ApprovalStatus.PENDING
        )

    async def close(self) -> None:
        await self.orchestrator.close()
        await self.repository.close()
