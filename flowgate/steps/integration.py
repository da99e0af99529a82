from __future__ import annotations

import logging

from ..contracts import StepKind, StepOutcome, StepStatus, Suspended
from ..exceptions import ConfigurationError
from ..integrations import IntegrationRequest
from .base import StepContext, StepExecutor

logger = logging.getLogger(__name__)


class IntegrationCallStep(StepExecutor):
    """Starts an asynchronous external call and waits for its callback."""

    kind = StepKind.INTEGRATION_CALL

    async def execute(self, ctx: StepContext) -> StepOutcome:
        name = ctx.config.get("integration")
        client = self.services.integrations.get(name) if isinstance(name, str) else None
        if client is None:
            raise ConfigurationError(f"Unknown integration {name!r} in step {ctx.step.label}")

        token = self.services.callback_tokens.issue(
            tenant_id=ctx.tenant_id,
            run_id=ctx.run.id,
            step_execution_id=ctx.execution.id,
            now=self.services.clock(),
        )
        request = IntegrationRequest(
            integration=name,
            tenant_id=ctx.tenant_id,
            run_id=ctx.run.id,
            step_execution_id=ctx.execution.id,
            callback_token=token,
            config={k: v for k, v in ctx.config.items() if k != "integration"},
            variables=dict(ctx.variables),
        )
        call_id = await client.start(request)
        logger.info(f"Run {ctx.run.id} waiting for {name} callback on call {call_id}")
        return Suspended(
            status=StepStatus.WAITING_CALLBACK,
            output={"integration": name, "call_id": call_id},
            external_ref=call_id,
        )
