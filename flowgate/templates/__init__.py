"""Built-in workflow templates tenants can install and then customize."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from ..contracts import WorkflowDefinition
from ..definitions import parse_definition
from ..exceptions import NotFoundError

CATALOG_PATH = Path(__file__).with_name("catalog.yaml")

CATEGORIES = ("clients", "contacts", "events", "tasks", "projects", "invoices")


class WorkflowTemplate(BaseModel):
    """A catalog entry: definition fields plus how the catalog presents it."""

    id: str
    name: str
    description: str = ""
    category: str
    popular: bool = False
    variables: List[str] = Field(default_factory=list)
    trigger_type: str
    trigger_config: Optional[Dict[str, Any]] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)


def load_templates(path: Path = CATALOG_PATH) -> List[WorkflowTemplate]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return [WorkflowTemplate(**entry) for entry in data.get("workflows") or []]


def list_templates(
    category: Optional[str] = None, popular_only: bool = False
) -> List[WorkflowTemplate]:
    return [
        t
        for t in load_templates()
        if (category is None or t.category == category) and (t.popular or not popular_only)
    ]


def get_template(template_id: str) -> Optional[WorkflowTemplate]:
    for template in load_templates():
        if template.id == template_id:
            return template
    return None


def instantiate_template(
    template_id: str, tenant_id: str, workflow_id: Optional[str] = None
) -> WorkflowDefinition:
    """Build a tenant's workflow definition from a catalog template.

    The workflow keeps the template id unless ``workflow_id`` is given.
    """
    template = get_template(template_id)
    if template is None:
        raise NotFoundError(f"Workflow template {template_id} not found")
    return parse_definition(
        {
            "id": workflow_id or template.id,
            "name": template.name,
            "trigger_type": template.trigger_type,
            "trigger_config": template.trigger_config,
            "steps": template.steps,
        },
        tenant_id,
    )


__all__ = [
    "CATALOG_PATH",
    "CATEGORIES",
    "WorkflowTemplate",
    "get_template",
    "instantiate_template",
    "list_templates",
    "load_templates",
]
