"""Resuming suspended runs after an external decision, callback or deadline."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .contracts import ApprovalStatus, RunStatus, StepStatus
from .exceptions import (
    ApprovalAlreadyResolved,
    AuthorizationError,
    InvalidCallbackToken,
    NotFoundError,
    StepClaimConflict,
)
from .execute import RunOrchestrator
from .persistence.models import StepExecution, WorkflowApproval, WorkflowRun, utcnow
from .persistence.repository import WorkflowRepository
from .security.callbacks import CallbackTokenService

logger = logging.getLogger(__name__)

CALLBACK_SUCCESS_STATUSES = frozenset({"completed", "success", "succeeded"})

# The executor has not recorded the suspension yet.
_NOT_YET_SUSPENDED = frozenset({StepStatus.PENDING, StepStatus.RUNNING})


class ResumeProtocol:
    """Closes out suspended steps and hands the run back to the orchestrator.

    Every state change is a compare-and-set, so two concurrent decisions or
    duplicated webhooks resolve a step at most once. Calling an entry point
    again after a transient failure finishes whatever the first call left
    half done.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        orchestrator: RunOrchestrator,
        callback_tokens: CallbackTokenService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._tokens = callback_tokens
        self._clock = clock

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------
    async def resolve_approval(
        self,
        approval_id: str,
        decision: str,
        comment: Optional[str],
        actor_id: str,
        tenant_id: str,
    ) -> WorkflowApproval:
        """Record ``actor_id``'s decision on an approval and resume its run.

        Raises:
            NotFoundError: the approval does not exist.
            AuthorizationError: the approval belongs to another tenant or is
                addressed to someone else. Nothing is modified.
            ApprovalAlreadyResolved: the approval was already decided.
            StepClaimConflict: the approval step has not finished suspending
                yet. Nothing is modified; retry shortly.
        """
        status = _parse_decision(decision)
        approval = await self._repository.get_approval(approval_id, tenant_id)
        if approval is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        if approval.requested_from != actor_id:
            raise AuthorizationError(
                f"Approval {approval_id} is not addressed to user {actor_id}"
            )

        step = await self._repository.get_step_execution(
            approval.step_execution_id, tenant_id
        )
        if step is None:
            raise NotFoundError(
                f"Step execution {approval.step_execution_id} for approval {approval_id} not found"
            )
        if step.status in _NOT_YET_SUSPENDED:
            raise StepClaimConflict(
                f"Approval step {step.id} is still {step.status.value}; retry the decision"
            )

        if approval.status != ApprovalStatus.PENDING:
            # Same decision again while the step is still waiting: a previous
            # call stopped between the two writes.
            if approval.status != status or step.status != StepStatus.WAITING_APPROVAL:
                raise ApprovalAlreadyResolved(
                    f"Approval {approval_id} is already {approval.status.value}"
                )
            logger.info(f"Finishing half-applied decision on approval {approval_id}")
        elif not await self._repository.decide_approval(
            approval_id, tenant_id, status, comment, actor_id
        ):
            raise ApprovalAlreadyResolved(f"Approval {approval_id} was decided concurrently")
        else:
            approval = await self._repository.get_approval(approval_id, tenant_id)

        logger.info(f"Approval {approval_id} {status.value} by {actor_id}")
        run = await self._load_run(step.run_id, tenant_id)
        if status == ApprovalStatus.APPROVED:
            changed = await self._repository.transition_step(
                step.id,
                tenant_id,
                expected=(StepStatus.WAITING_APPROVAL,),
                status=StepStatus.COMPLETED,
                output={
                    **(step.output or {}),
                    "decision": status.value,
                    "comment": approval.comment,
                    "decided_by": approval.decided_by,
                },
            )
            if changed:
                await self._resume(run, actor_id)
        else:
            reason = f"Rejected by {actor_id}"
            if approval.comment:
                reason = f"{reason}: {approval.comment}"
            await self._fail(run, step, StepStatus.WAITING_APPROVAL, reason)
        return approval

    # ------------------------------------------------------------------
    # Integration callbacks
    # ------------------------------------------------------------------
    async def handle_integration_callback(
        self,
        token: str,
        call_id: str,
        status: str,
        output: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> str:
        """Apply an integration's reported outcome to its waiting step.

        The token scopes the callback to one step of one tenant. Returns the
        id of the run the step belongs to.

        Raises :class:`~flowgate.exceptions.StepClaimConflict` when the
        callback races ahead of the step recording its suspension; that error
        is retryable and leaves the step untouched.
        """
        claims = self._tokens.verify(token)
        step = await self._repository.get_step_execution(
            claims.step_execution_id, claims.tenant_id
        )
        if step is None or step.run_id != claims.run_id:
            raise InvalidCallbackToken("Callback token does not match a step execution")
        if step.status in _NOT_YET_SUSPENDED:
            # The call is still being started; the sender must retry.
            raise StepClaimConflict(
                f"Step {step.id} has not started waiting for call {call_id} yet"
            )
        if step.external_ref != call_id:
            raise InvalidCallbackToken(
                f"Callback for call {call_id} does not match step {step.id}"
            )

        run = await self._load_run(step.run_id, claims.tenant_id)
        succeeded = str(status).lower() in CALLBACK_SUCCESS_STATUSES

        if step.status != StepStatus.WAITING_CALLBACK:
            logger.info(
                f"Duplicate callback for call {call_id}; step {step.id} is {step.status.value}"
            )
            if step.status == StepStatus.COMPLETED:
                await self._resume(run, run.triggered_by)
            return run.id

        if succeeded:
            changed = await self._repository.transition_step(
                step.id,
                claims.tenant_id,
                expected=(StepStatus.WAITING_CALLBACK,),
                status=StepStatus.COMPLETED,
                output={**(step.output or {}), **(output or {}), "call_status": status},
            )
            if changed:
                logger.info(f"Call {call_id} completed; resuming run {run.id}")
                await self._resume(run, run.triggered_by)
        else:
            reason = error_message or f"Integration call {call_id} reported {status}"
            await self._fail(run, step, StepStatus.WAITING_CALLBACK, reason)
        return run.id

    # ------------------------------------------------------------------
    # Delays
    # ------------------------------------------------------------------
    async def resume_due_delays(self, now: Optional[datetime] = None) -> list[str]:
        """Re-invoke every run whose delay step is due.

        Runs are resumed one at a time; a failure in one is logged and does
        not stop the others.
        """
        now = now or self._clock()
        resumed: list[str] = []
        for step in await self._repository.list_due_delays(now):
            if step.run_id in resumed:
                continue
            try:
                run = await self._load_run(step.run_id, step.tenant_id)
                if run.status != RunStatus.RUNNING:
                    continue
                await self._resume(run, run.triggered_by)
            except Exception:
                logger.exception(f"Failed to resume delayed run {step.run_id}")
                continue
            resumed.append(step.run_id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} delayed run(s)")
        return resumed

    # ------------------------------------------------------------------
    async def _load_run(self, run_id: str, tenant_id: str) -> WorkflowRun:
        run = await self._repository.get_run(run_id, tenant_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    async def _resume(self, run: WorkflowRun, actor_id: Optional[str]) -> None:
        await self._orchestrator.execute_workflow(
            run.workflow_id, run.trigger_data, run.tenant_id, actor_id, run_id=run.id
        )

    async def _fail(
        self,
        run: WorkflowRun,
        step: StepExecution,
        waiting: StepStatus,
        reason: str,
    ) -> None:
        await self._repository.transition_step(
            step.id,
            run.tenant_id,
            expected=(waiting,),
            status=StepStatus.FAILED,
            error_message=reason,
        )
        if await self._repository.update_run_status(run.id, run.tenant_id, RunStatus.FAILED):
            logger.info(f"Run {run.id} failed at step {step.position}: {reason}")


def _parse_decision(decision: str) -> ApprovalStatus:
    try:
        status = ApprovalStatus(str(decision).lower())
    except ValueError:
        status = None
    if status not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
        raise ValueError(f"Decision must be 'approved' or 'rejected', got {decision!r}")
    return status
