from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from ..contracts import Completed, StepKind, StepOutcome, StepStatus, Suspended
from ..exceptions import ConfigurationError
from .base import StepContext, StepExecutor

_UNITS = ("seconds", "minutes", "hours", "days")


def delay_deadline(config: Dict[str, Any], now: datetime) -> datetime:
    """Compute the wall-clock deadline for a delay step."""
    if config.get("until"):
        try:
            until = datetime.fromisoformat(str(config["until"]))
        except ValueError:
            raise ConfigurationError(f"Invalid delay 'until': {config['until']!r}") from None
        return until if until.tzinfo else until.replace(tzinfo=timezone.utc)
    try:
        amounts = {unit: float(config.get(unit) or 0) for unit in _UNITS}
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid delay duration in {config!r}") from None
    if not any(amounts.values()):
        raise ConfigurationError("Delay step needs 'until' or a duration")
    return now + timedelta(**amounts)


class DelayStep(StepExecutor):
    """Suspends until a deadline; the scheduler re-invokes the run afterwards."""

    kind = StepKind.DELAY

    async def execute(self, ctx: StepContext) -> StepOutcome:
        now = self.services.clock()
        resume_at = ctx.execution.resume_at or delay_deadline(ctx.config, now)
        if now >= resume_at:
            return Completed(output={"waited_until": resume_at.isoformat()})
        return Suspended(
            status=StepStatus.WAITING_DELAY,
            output={"resume_at": resume_at.isoformat()},
            resume_at=resume_at,
        )
