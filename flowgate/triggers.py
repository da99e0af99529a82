"""Matching fired business events to tenant workflow definitions."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .conditions import evaluate
from .contracts import RunStatus, WorkflowDefinition
from .exceptions import DuplicateRun
from .execute import RunOrchestrator
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

DEPTH_KEY = "__workflow_depth"

# (trigger_config key, payload field, operator) per event type.
_STATUS_CHANGE = (("from_status", "from_status", "eq"), ("to_status", "to_status", "eq"))
_EVENT_FILTER = (("event_id", "event_id", "eq"), ("event_type", "event_type", "eq"))
_BOOKING_FILTER = (("booking_page_id", "booking_page_id", "eq"),)

TRIGGER_FILTERS: Dict[str, Tuple[Tuple[str, str, str], ...]] = {
    "task_status_changed": _STATUS_CHANGE,
    "project_status_changed": _STATUS_CHANGE,
    "lead_status_changed": _STATUS_CHANGE,
    "client_status_changed": _STATUS_CHANGE,
    "vendor_status_changed": _STATUS_CHANGE,
    "lead_created": (("source", "lead_source", "eq"),),
    "payment_received": (("min_amount", "payment_amount", "gte"),),
    "invoice_overdue": (("min_days_overdue", "days_overdue", "gte"),),
    "invoice_created": (("min_amount", "invoice_amount", "gte"),),
    "event_registration": _EVENT_FILTER,
    "event_ended": _EVENT_FILTER,
    "task_created": (("priority", "priority", "eq"),),
    "form_submitted": (("form_id", "form_id", "eq"),),
    "booking_created": _BOOKING_FILTER,
    "booking_cancelled": _BOOKING_FILTER,
    "booking_rescheduled": _BOOKING_FILTER,
    "survey_response_submitted": (("survey_id", "survey_id", "eq"),),
}


def compile_trigger_config(
    trigger_type: str, trigger_config: Optional[Mapping[str, Any]]
) -> Optional[Dict[str, Any]]:
    """Turn a legacy ``trigger_config`` dict into a condition expression.

    Only the keys known for ``trigger_type`` are used; empty values are
    ignored. Returns ``None`` when nothing applies.
    """
    if not trigger_config:
        return None
    leaves: List[Dict[str, Any]] = []
    for key, field, op in TRIGGER_FILTERS.get(trigger_type, ()):
        value = trigger_config.get(key)
        if value in (None, ""):
            continue
        leaves.append({"field": field, "op": op, "value": value})
    if not leaves:
        return None
    return leaves[0] if len(leaves) == 1 else {"all": leaves}


def definition_matches(definition: WorkflowDefinition, payload: Mapping[str, Any]) -> bool:
    """Whether ``payload`` passes both the trigger filter and the condition."""
    expressions = [
        e
        for e in (
            compile_trigger_config(definition.trigger_type, definition.trigger_config),
            definition.trigger_condition,
        )
        if e
    ]
    return all(evaluate(e, payload) for e in expressions)


def event_depth(payload: Mapping[str, Any]) -> int:
    try:
        return int(payload.get(DEPTH_KEY) or 0)
    except (TypeError, ValueError):
        return 0


class TriggerMatcher:
    """Fans a business event out to every matching active definition."""

    def __init__(
        self,
        repository: WorkflowRepository,
        orchestrator: RunOrchestrator,
        max_depth: int = 5,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self.max_depth = max_depth

    async def check_triggers(
        self,
        event_type: str,
        payload: Dict[str, Any],
        tenant_id: str,
        actor_id: Optional[str],
        event_id: Optional[str] = None,
    ) -> list[str]:
        """Start (or, for a replayed ``event_id``, return) one run per match.

        A failure while matching or driving one definition is logged and does
        not affect the others. Returns the ids of the runs started or reused.
        """
        depth = event_depth(payload)
        if depth >= self.max_depth:
            logger.warning(
                f"Max trigger depth ({self.max_depth}) reached for {event_type} "
                f"(tenant={tenant_id}); skipping to prevent a workflow loop"
            )
            return []
        trigger_data = {**payload, DEPTH_KEY: depth + 1}

        definitions = await self._repository.list_definitions(
            tenant_id, trigger_type=event_type, active_only=True
        )
        logger.debug(
            f"Event {event_type} for tenant {tenant_id}: {len(definitions)} candidate workflow(s)"
        )

        run_ids: list[str] = []
        for definition in definitions:
            try:
                if not definition_matches(definition, payload):
                    logger.debug(f"Workflow {definition.id} condition not met for {event_type}")
                    continue
                run_id = await self._start(
                    definition, trigger_data, tenant_id, actor_id, event_id
                )
            except Exception:
                logger.exception(
                    f"Workflow {definition.id} failed to start for {event_type} "
                    f"(tenant={tenant_id})"
                )
                continue
            run_ids.append(run_id)
        return run_ids

    async def _start(
        self,
        definition: WorkflowDefinition,
        trigger_data: Dict[str, Any],
        tenant_id: str,
        actor_id: Optional[str],
        event_id: Optional[str],
    ) -> str:
        existing_id = None
        if event_id is not None:
            existing = await self._repository.find_run_by_event(
                tenant_id, definition.id, event_id
            )
            existing_id = existing.id if existing else None

        if existing_id is None:
            try:
                run = await self._orchestrator.start_run(
                    definition, trigger_data, tenant_id, actor_id, event_id=event_id
                )
                existing_id, is_new = run.id, True
            except DuplicateRun as e:
                existing_id, is_new = e.existing_run_id, False
        else:
            is_new = False

        if not is_new:
            logger.info(
                f"Event {event_id} already started run {existing_id} of workflow {definition.id}"
            )
            run = await self._repository.get_run(existing_id, tenant_id)
            if run is None or run.status != RunStatus.RUNNING:
                return existing_id

        return await self._orchestrator.execute_workflow(
            definition.id, trigger_data, tenant_id, actor_id, run_id=existing_id
        )
