"""Run orchestration: walks a run's steps from its persisted checkpoint."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from .contracts import (
    Completed,
    Failed,
    RunStatus,
    StepOutcome,
    StepStatus,
    Suspended,
    WorkflowDefinition,
)
from .exceptions import (
    ConfigurationError,
    NotFoundError,
    TransientStoreError,
)
from .locks import InMemoryRunLock, RunLock
from .persistence.models import StepExecution, WorkflowRun
from .persistence.repository import WorkflowRepository
from .steps import StepContext, StepExecutor
from .templating import resolve_templates

logger = logging.getLogger(__name__)

# Steps in these states are owned by someone else (another invocation or an
# external actor); the orchestrator leaves them alone.
_NOT_DISPATCHABLE = {
    StepStatus.RUNNING,
    StepStatus.WAITING_APPROVAL,
    StepStatus.WAITING_CALLBACK,
}


def next_position(
    definition: WorkflowDefinition, executions: Mapping[int, StepExecution]
) -> Optional[int]:
    """Return the first position on the run's path without a completed step.

    Walks from the first step, following the successor each completed step
    recorded (its branch target or the next position). ``None`` means the
    path is exhausted and the run is complete.
    """
    position = definition.first_position()
    visited = set()
    while position is not None:
        if position in visited:
            raise ConfigurationError(f"Step path loops back to position {position}")
        visited.add(position)
        execution = executions.get(position)
        if execution is None or execution.status != StepStatus.COMPLETED:
            return position
        if execution.ends_run:
            return None
        if execution.next_position is not None:
            if definition.get_step(execution.next_position) is None:
                raise ConfigurationError(
                    f"Recorded next position {execution.next_position} does not exist"
                )
            position = execution.next_position
        else:
            position = definition.position_after(position)
    return None


def build_variables(
    run: WorkflowRun,
    definition: WorkflowDefinition,
    executions: Mapping[int, StepExecution],
) -> tuple[Dict[int, Dict[str, Any]], Dict[str, Any]]:
    """Collect prior outputs and the merged variable namespace for a step."""
    outputs: Dict[int, Dict[str, Any]] = {}
    variables: Dict[str, Any] = dict(run.trigger_data)
    variables.setdefault("run_id", run.id)
    variables.setdefault("workflow_id", run.workflow_id)
    for step in definition.steps:
        execution = executions.get(step.position)
        if execution is None or execution.status != StepStatus.COMPLETED:
            continue
        output = execution.output or {}
        outputs[step.position] = output
        variables.update(output)
    variables["steps"] = {str(pos): out for pos, out in outputs.items()}
    return outputs, variables


class RunOrchestrator:
    """Drives runs forward until they suspend, fail or complete.

    The orchestrator keeps no run state in memory between calls. Every
    invocation reloads the run, derives the next step from persisted step
    executions and claims it with a compare-and-set, so calling
    :meth:`execute_workflow` again on a run is always safe: completed steps
    are never dispatched twice.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executors: Mapping[Any, StepExecutor],
        run_lock: Optional[RunLock] = None,
    ) -> None:
        self._repository = repository
        self._executors = dict(executors)
        self._lock = run_lock or InMemoryRunLock()

    async def start_run(
        self,
        definition: WorkflowDefinition,
        trigger_data: Dict[str, Any],
        tenant_id: str,
        actor_id: Optional[str],
        event_id: Optional[str] = None,
    ) -> WorkflowRun:
        """Create a ``running`` run pinned to ``definition``'s version."""
        if definition.tenant_id != tenant_id:
            raise NotFoundError(f"Workflow {definition.id} not found")
        run = await self._repository.create_run(
            WorkflowRun(
                workflow_id=definition.id,
                workflow_version=definition.version,
                tenant_id=tenant_id,
                triggered_by=actor_id,
                trigger_data=dict(trigger_data),
                trigger_event_id=event_id,
            )
        )
        logger.info(
            f"Created run {run.id} for workflow {definition.id} v{definition.version} "
            f"(tenant={tenant_id})"
        )
        return run

    async def execute_workflow(
        self,
        workflow_id: str,
        trigger_data: Dict[str, Any],
        tenant_id: str,
        actor_id: Optional[str],
        run_id: Optional[str] = None,
    ) -> str:
        """Start a new run, or resume ``run_id``, and drive it forward.

        When resuming, ``trigger_data`` is ignored: a run's context always
        comes from its stored snapshot. Returns the run id.
        """
        if run_id is None:
            definition = await self._repository.get_definition(workflow_id, tenant_id)
            if definition is None:
                raise NotFoundError(f"Workflow {workflow_id} not found")
            run = await self.start_run(definition, trigger_data, tenant_id, actor_id)
            run_id = run.id
        else:
            run = await self._repository.get_run(run_id, tenant_id)
            if run is None:
                raise NotFoundError(f"Run {run_id} not found")
            if run.workflow_id != workflow_id:
                raise NotFoundError(f"Run {run_id} does not belong to workflow {workflow_id}")
            logger.debug(f"Resuming run {run_id} (actor={actor_id})")

        async with self._lock.acquire(run_id):
            await self._drive(run_id, tenant_id)
        return run_id

    async def _drive(self, run_id: str, tenant_id: str) -> None:
        while True:
            run = await self._repository.get_run(run_id, tenant_id)
            if run is None:
                raise NotFoundError(f"Run {run_id} not found")
            if run.status != RunStatus.RUNNING:
                logger.info(f"Run {run_id} is {run.status.value}; not dispatching")
                return

            definition = await self._repository.get_definition(
                run.workflow_id, tenant_id, version=run.workflow_version
            )
            if definition is None:
                await self._fail_run(
                    run,
                    f"Configuration error: workflow {run.workflow_id} "
                    f"v{run.workflow_version} no longer exists",
                )
                return

            executions = {
                e.position: e
                for e in await self._repository.list_step_executions(run_id, tenant_id)
            }
            if any(e.status == StepStatus.FAILED for e in executions.values()):
                await self._fail_run(run, "Run has a failed step")
                return

            try:
                position = next_position(definition, executions)
            except ConfigurationError as e:
                await self._fail_run(run, f"Configuration error: {e}")
                return
            if position is None:
                if await self._repository.update_run_status(
                    run_id, tenant_id, RunStatus.COMPLETED
                ):
                    logger.info(f"Run {run_id} completed")
                return

            step = definition.get_step(position)
            existing = executions.get(position)
            if existing is not None and existing.status in _NOT_DISPATCHABLE:
                logger.debug(
                    f"Run {run_id} step {position} is {existing.status.value}; returning"
                )
                return

            claimed = await self._repository.claim_step(
                run_id, tenant_id, position, step.kind
            )
            if claimed is None:
                logger.info(f"Run {run_id} step {position} claimed elsewhere; returning")
                return

            outputs, variables = build_variables(run, definition, executions)
            outcome = await self._dispatch(run, definition, claimed, outputs, variables)
            if not await self._record(run, definition, claimed, outcome):
                return

    async def _dispatch(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        execution: StepExecution,
        outputs: Dict[int, Dict[str, Any]],
        variables: Dict[str, Any],
    ) -> StepOutcome:
        step = definition.get_step(execution.position)
        executor = self._executors.get(step.kind)
        if executor is None:
            return Failed(error=f"Configuration error: no executor for step kind {step.kind.value}")
        try:
            ctx = StepContext(
                run=run,
                definition=definition,
                step=step,
                execution=execution,
                config=resolve_templates(step.config, variables),
                outputs=outputs,
                variables=variables,
            )
            return await executor.execute(ctx)
        except TransientStoreError:
            await self._release(execution)
            raise
        except ConfigurationError as e:
            return Failed(error=f"Configuration error: {e}")
        except Exception as e:
            logger.warning(
                f"Step {step.label} of run {run.id} raised {e.__class__.__name__}: {e}",
                exc_info=True,
            )
            return Failed(error=str(e) or e.__class__.__name__)

    async def _record(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        execution: StepExecution,
        outcome: StepOutcome,
    ) -> bool:
        """Persist ``outcome``; return whether the loop should continue."""
        if isinstance(outcome, Completed):
            try:
                target, ends_run = definition.resolve_branch_target(
                    execution.position, outcome.next_position
                )
            except ConfigurationError as e:
                outcome = Failed(error=f"Configuration error: {e}")
            else:
                changed = await self._transition(
                    execution,
                    StepStatus.COMPLETED,
                    output=outcome.output,
                    next_position=target,
                    ends_run=ends_run,
                )
                return changed

        if isinstance(outcome, Suspended):
            changed = await self._transition(
                execution,
                outcome.status,
                output=outcome.output,
                external_ref=outcome.external_ref,
                resume_at=outcome.resume_at,
            )
            if changed:
                logger.info(
                    f"Run {run.id} suspended at step {execution.position} "
                    f"({outcome.status.value})"
                )
            return False

        await self._transition(
            execution, StepStatus.FAILED, error_message=outcome.error
        )
        await self._fail_run(run, outcome.error, step_position=execution.position)
        return False

    async def _transition(
        self, execution: StepExecution, status: StepStatus, **changes: Any
    ) -> bool:
        try:
            changed = await self._repository.transition_step(
                execution.id,
                execution.tenant_id,
                expected=(StepStatus.RUNNING,),
                status=status,
                **changes,
            )
        except TransientStoreError:
            await self._release(execution)
            raise
        if not changed:
            logger.warning(
                f"Step {execution.position} of run {execution.run_id} changed underneath "
                f"us; dropping {status.value} outcome"
            )
        return changed

    async def _release(self, execution: StepExecution) -> None:
        """Hand a claimed step back so a retried invocation can pick it up."""
        try:
            await self._repository.transition_step(
                execution.id,
                execution.tenant_id,
                expected=(StepStatus.RUNNING,),
                status=StepStatus.PENDING,
            )
        except Exception:
            logger.warning(
                f"Could not release step {execution.position} of run {execution.run_id}",
                exc_info=True,
            )

    async def _fail_run(
        self, run: WorkflowRun, reason: str, step_position: Optional[int] = None
    ) -> None:
        if await self._repository.update_run_status(run.id, run.tenant_id, RunStatus.FAILED):
            where = f" at step {step_position}" if step_position is not None else ""
            logger.info(f"Run {run.id} failed{where}: {reason}")

    async def close(self) -> None:
        await self._lock.close()
