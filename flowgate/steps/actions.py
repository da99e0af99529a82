"""Built-in side effects available to ``action`` steps.

Each handler receives the step's resolved config, the step context and the
engine services, performs one side effect and returns the step output.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import requests

from ..exceptions import StepFailed
from ..utils.retry import compute_backoff
from .base import StepContext, StepServices

logger = logging.getLogger(__name__)

ActionHandler = Callable[
    [Dict[str, Any], StepContext, StepServices], Awaitable[Dict[str, Any]]
]

ACTION_HANDLERS: Dict[str, ActionHandler] = {}

_ENTITY_TABLES = {"project": "projects", "event": "events", "task": "tasks"}


def action(name: str) -> Callable[[ActionHandler], ActionHandler]:
    """Register ``func`` as the handler for ``name``."""

    def decorator(func: ActionHandler) -> ActionHandler:
        ACTION_HANDLERS[name] = func
        return func

    return decorator


def _entity_from(params: Dict[str, Any], ctx: StepContext) -> tuple[str, str]:
    entity_id = params.get("entity_id") or ctx.variables.get("entity_id")
    entity_type = params.get("entity_type") or ctx.variables.get("entity_type")
    return entity_id, entity_type


def _table_for(entity_type: str) -> str:
    return _ENTITY_TABLES.get(entity_type, "tasks")


def _linked(params: Dict[str, Any], ctx: StepContext, key: str, entity_type: str) -> Optional[str]:
    if params.get(key):
        return params[key]
    if ctx.variables.get("entity_type") == entity_type:
        return ctx.variables.get("entity_id")
    return None


def _offset_date(ctx: StepContext, services: StepServices, days: Any) -> str:
    when = services.clock()
    if days:
        when += timedelta(days=float(days))
    return when.isoformat()


@action("create_task")
async def create_task(params, ctx, services):
    task = await services.data_store.insert(
        ctx.tenant_id,
        "tasks",
        {
            "title": params.get("title") or "Untitled Task",
            "description": params.get("description"),
            "assigned_to": params.get("assigned_to") or None,
            "project_id": _linked(params, ctx, "project_id", "project"),
            "priority": params.get("priority") or "medium",
            "due_date": _offset_date(ctx, services, params.get("due_date_offset_days")),
            "created_by": ctx.actor_id,
            "status": "todo",
        },
    )
    return {"created_task_id": task["id"]}


@action("create_project")
async def create_project(params, ctx, services):
    project = await services.data_store.insert(
        ctx.tenant_id,
        "projects",
        {
            "name": params.get("name") or "Untitled Project",
            "description": params.get("description"),
            "status": params.get("status") or "planning",
            "client_id": _linked(params, ctx, "client_id", "client"),
            "project_manager_id": params.get("project_manager_id") or None,
            "created_by": ctx.actor_id,
        },
    )
    return {"created_project_id": project["id"]}


@action("create_event")
async def create_event(params, ctx, services):
    event = await services.data_store.insert(
        ctx.tenant_id,
        "events",
        {
            "title": params.get("title") or "Untitled Event",
            "description": params.get("description"),
            "start_date": _offset_date(ctx, services, params.get("start_date_offset_days")),
            "status": "upcoming",
            "event_type": params.get("event_type") or "general",
            "client_id": _linked(params, ctx, "client_id", "client"),
            "assigned_to": params.get("assigned_to") or None,
            "created_by": ctx.actor_id,
        },
    )
    return {"created_event_id": event["id"]}


@action("send_notification")
async def send_notification(params, ctx, services):
    await services.data_store.insert(
        ctx.tenant_id,
        "notifications",
        {
            "user_id": params.get("recipient_id") or ctx.actor_id,
            "type": "workflow",
            "title": params.get("title") or "Workflow Notification",
            "message": params.get("message") or "",
            "action_url": params.get("action_url") or None,
        },
    )
    return {"notification_sent": True}


@action("send_email")
async def send_email(params, ctx, services):
    # Delivery happens in the notification pipeline; the engine only queues it.
    await services.data_store.insert(
        ctx.tenant_id,
        "notifications",
        {
            "user_id": params.get("recipient_id") or ctx.actor_id,
            "type": "email",
            "title": params.get("subject") or params.get("title") or "Workflow Email",
            "message": params.get("body") or params.get("message") or "",
        },
    )
    return {"email_sent": True}


@action("update_status")
async def update_status(params, ctx, services):
    entity_id, entity_type = _entity_from(params, ctx)
    new_status = params.get("new_status")
    if not entity_id or not entity_type or not new_status:
        raise StepFailed("Missing entity_id, entity_type, or new_status for update_status")
    await services.data_store.update(
        ctx.tenant_id, _table_for(entity_type), entity_id, {"status": new_status}
    )
    return {"status_updated": True, "entity_id": entity_id, "new_status": new_status}


@action("update_field")
async def update_field(params, ctx, services):
    entity_id, entity_type = _entity_from(params, ctx)
    field_name = params.get("field_name")
    if not entity_id or not entity_type or not field_name:
        raise StepFailed("Missing entity_id, entity_type, or field_name for update_field")
    await services.data_store.update(
        ctx.tenant_id,
        _table_for(entity_type),
        entity_id,
        {field_name: params.get("field_value")},
    )
    return {"field_updated": True, "field_name": field_name}


@action("assign_to")
async def assign_to(params, ctx, services):
    entity_id, entity_type = _entity_from(params, ctx)
    assignee_id = params.get("assignee_id")
    if not entity_id or not entity_type or not assignee_id:
        raise StepFailed("Missing entity_id, entity_type, or assignee_id for assign_to")
    assign_field = "project_manager_id" if entity_type == "project" else "assigned_to"
    await services.data_store.update(
        ctx.tenant_id, _table_for(entity_type), entity_id, {assign_field: assignee_id}
    )
    await services.data_store.insert(
        ctx.tenant_id,
        "notifications",
        {
            "user_id": assignee_id,
            "type": "workflow",
            "title": "You've been assigned",
            "message": params.get("message")
            or f"You have been assigned to a {entity_type}.",
        },
    )
    return {"assigned": True, "assignee_id": assignee_id}


@action("add_tag")
async def add_tag(params, ctx, services):
    entity_id, entity_type = _entity_from(params, ctx)
    tag = params.get("tag")
    if not entity_id or not entity_type or not tag:
        raise StepFailed("Missing entity_id, entity_type, or tag for add_tag")
    table = _table_for(entity_type)
    entity = await services.data_store.get(ctx.tenant_id, table, entity_id)
    tags = list(entity.get("tags") or []) if entity else []
    if tag not in tags:
        tags.append(tag)
        await services.data_store.update(ctx.tenant_id, table, entity_id, {"tags": tags})
    return {"tag_added": tag}


@action("webhook")
async def webhook(params, ctx, services):
    url = params.get("url")
    if not url:
        raise StepFailed("Missing webhook URL")
    method = str(params.get("method") or "POST").upper()
    headers = {"Content-Type": "application/json"}
    if params.get("auth_header"):
        headers["Authorization"] = params["auth_header"]
    body = {
        "workflow_id": ctx.run.workflow_id,
        "run_id": ctx.run.id,
        "trigger_data": ctx.run.trigger_data,
        "custom_data": params.get("payload") or {},
    }
    timeout = services.config.webhook_timeout_seconds
    attempts = max(1, services.config.webhook_max_attempts)

    def _send() -> requests.Response:
        return requests.request(
            method,
            url,
            json=body if method != "GET" else None,
            headers=headers,
            timeout=timeout,
        )

    for attempt in range(1, attempts + 1):
        try:
            response = await asyncio.to_thread(_send)
            break
        except (requests.ConnectionError, requests.Timeout) as e:
            if attempt == attempts:
                raise StepFailed(f"Webhook failed: {e}") from e
            delay = compute_backoff(attempt)
            logger.warning(
                f"Webhook to {url} failed (attempt {attempt}/{attempts}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            await asyncio.sleep(delay)
    return {"webhook_status": response.status_code, "webhook_ok": response.ok}
