from __future__ import annotations

import logging

from ..contracts import StepKind, StepOutcome, StepStatus, Suspended
from ..exceptions import ConfigurationError
from ..persistence.models import WorkflowApproval
from .base import StepContext, StepExecutor

logger = logging.getLogger(__name__)


class ApprovalStep(StepExecutor):
    """Opens an approval request and suspends the run.

    The step never completes on its own; only a decision through
    :meth:`~flowgate.resume.ResumeProtocol.resolve_approval` closes it.
    """

    kind = StepKind.APPROVAL

    async def execute(self, ctx: StepContext) -> StepOutcome:
        approver = ctx.config.get("approver_id") or ctx.actor_id
        if not approver:
            raise ConfigurationError(
                f"Approval step {ctx.step.label} has no approver_id and no triggering actor"
            )
        repository = self.services.repository

        # A step released after a transient error may already have its request.
        approval = await repository.get_approval_for_step(ctx.execution.id, ctx.tenant_id)
        if approval is None:
            approval = await repository.create_approval(
                WorkflowApproval(
                    tenant_id=ctx.tenant_id,
                    run_id=ctx.run.id,
                    step_execution_id=ctx.execution.id,
                    requested_from=str(approver),
                    instructions=ctx.config.get("instructions"),
                )
            )
            await self._notify(ctx, approval)

        logger.info(
            f"Run {ctx.run.id} waiting for approval {approval.id} from {approval.requested_from}"
        )
        return Suspended(
            status=StepStatus.WAITING_APPROVAL,
            output={"approval_id": approval.id, "requested_from": approval.requested_from},
        )

    async def _notify(self, ctx: StepContext, approval: WorkflowApproval) -> None:
        try:
            await self.services.data_store.insert(
                ctx.tenant_id,
                "notifications",
                {
                    "user_id": approval.requested_from,
                    "type": "approval",
                    "title": "Approval Required",
                    "message": approval.instructions
                    or "A workflow step requires your approval.",
                    "action_url": ctx.config.get("action_url"),
                },
            )
        except Exception:
            # The approval itself is persisted; a missed notification is not fatal.
            logger.warning(
                f"Failed to notify {approval.requested_from} about approval {approval.id}",
                exc_info=True,
            )
