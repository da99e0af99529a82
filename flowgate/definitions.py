"""Loading and validating workflow definitions."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from .conditions import validate_expression
from .contracts import StepKind, WorkflowDefinition
from .exceptions import ConfigurationError
from .persistence.models import utcnow
from .steps.actions import ACTION_HANDLERS
from .steps.condition import condition_expression
from .steps.delay import delay_deadline
from .triggers import compile_trigger_config


def load_definitions(
    path: Union[str, Path], tenant_id: Optional[str] = None
) -> List[WorkflowDefinition]:
    """Read workflow definitions from a YAML file.

    The file holds either one definition, a list of them, or a mapping with a
    ``workflows`` list (and optionally a shared ``tenant_id``). Steps without
    an explicit ``position`` are numbered from 1 in file order. ``tenant_id``
    overrides whatever the file says.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    default_tenant = None
    if isinstance(data, dict) and "workflows" in data:
        default_tenant = data.get("tenant_id")
        entries = data["workflows"] or []
    elif isinstance(data, list):
        entries = data
    else:
        entries = [data]

    definitions = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{path}: workflow #{index + 1} is not a mapping")
        definitions.append(
            parse_definition(entry, tenant_id or entry.get("tenant_id") or default_tenant)
        )
    return definitions


def parse_definition(data: Dict[str, Any], tenant_id: Optional[str]) -> WorkflowDefinition:
    if not tenant_id:
        raise ConfigurationError(f"Workflow {data.get('id') or data.get('name')!r} has no tenant_id")
    steps = []
    for number, step in enumerate(data.get("steps") or [], start=1):
        if isinstance(step, dict):
            step = {"position": number, **step}
        steps.append(step)
    try:
        return WorkflowDefinition(**{**data, "tenant_id": tenant_id, "steps": steps})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid workflow {data.get('id') or data.get('name')!r}: {e}") from e


def validate_definition(definition: WorkflowDefinition) -> list[str]:
    """Return the problems that would make ``definition`` fail at run time.

    Catches what can be known statically: malformed conditions, unknown
    actions, missing delay durations and branch targets that do not point
    forward to a defined position.
    """
    problems: list[str] = []
    if definition.trigger_condition:
        problems += [
            f"trigger_condition: {p}"
            for p in validate_expression(definition.trigger_condition)
        ]
    if definition.trigger_config:
        compiled = compile_trigger_config(definition.trigger_type, definition.trigger_config)
        if compiled:
            problems += [f"trigger_config: {p}" for p in validate_expression(compiled)]

    for step in definition.steps:
        prefix = f"step {step.label}"
        config = step.config
        if step.kind == StepKind.ACTION:
            action = config.get("action")
            if action not in ACTION_HANDLERS:
                problems.append(f"{prefix}: unknown action {action!r}")
        elif step.kind == StepKind.CONDITION:
            try:
                expression = condition_expression(config)
            except ConfigurationError as e:
                problems.append(f"{prefix}: {e}")
            else:
                # Templated expressions are only checkable after rendering.
                if "{{" not in str(expression):
                    problems += [f"{prefix}: {p}" for p in validate_expression(expression)]
            for key in ("on_true", "on_false"):
                if config.get(key) is None or "{{" in str(config.get(key)):
                    continue
                try:
                    definition.resolve_branch_target(step.position, config[key])
                except ConfigurationError as e:
                    problems.append(f"{prefix}: {key}: {e}")
        elif step.kind == StepKind.DELAY:
            try:
                delay_deadline(config, utcnow())
            except ConfigurationError as e:
                problems.append(f"{prefix}: {e}")
        elif step.kind == StepKind.INTEGRATION_CALL:
            if not config.get("integration"):
                problems.append(f"{prefix}: missing 'integration'")
    return problems

