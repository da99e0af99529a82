from __future__ import annotations

from typing import Any, Dict

from ..conditions import evaluate, from_legacy, validate_expression
from ..contracts import END_OF_WORKFLOW, Completed, StepKind, StepOutcome
from ..exceptions import ConfigurationError
from .base import StepContext, StepExecutor


def condition_expression(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return the step's expression, accepting the legacy field/operator form."""
    if "expression" in config:
        return config["expression"]
    if config.get("condition_field") and config.get("condition_operator"):
        return from_legacy(
            config["condition_field"],
            config["condition_operator"],
            config.get("condition_value"),
        )
    raise ConfigurationError("Condition step needs 'expression' or condition_field/operator")


class ConditionStep(StepExecutor):
    """Evaluates an expression and tells the orchestrator where to go next.

    ``on_true``/``on_false`` name a later position or ``"end"``; when absent
    the run advances to the following step. The legacy field/operator form
    keeps its original behaviour of ending the run when the condition is not
    met unless ``skip_on_fail`` is false.
    """

    kind = StepKind.CONDITION

    async def execute(self, ctx: StepContext) -> StepOutcome:
        expression = condition_expression(ctx.config)
        problems = validate_expression(expression)
        if problems:
            raise ConfigurationError(f"Invalid condition: {'; '.join(problems)}")

        result = evaluate(expression, ctx.variables)
        target = ctx.config.get("on_true" if result else "on_false")
        legacy = "expression" not in ctx.config
        if (
            not result
            and target is None
            and legacy
            and ctx.config.get("skip_on_fail", True) is not False
        ):
            target = END_OF_WORKFLOW
        return Completed(output={"condition_result": result}, next_position=target)
