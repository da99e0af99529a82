from __future__ import annotations

from ..contracts import Completed, StepKind, StepOutcome
from ..exceptions import ConfigurationError
from .actions import ACTION_HANDLERS
from .base import StepContext, StepExecutor


class ActionStep(StepExecutor):
    """Performs one direct side effect; never suspends."""

    kind = StepKind.ACTION

    async def execute(self, ctx: StepContext) -> StepOutcome:
        name = ctx.config.get("action")
        handler = ACTION_HANDLERS.get(name) if isinstance(name, str) else None
        if handler is None:
            raise ConfigurationError(f"Unknown action {name!r} in step {ctx.step.label}")
        output = await handler(ctx.config, ctx, self.services)
        return Completed(output=output or {})
