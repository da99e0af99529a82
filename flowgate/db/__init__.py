from .models import (
    StepExecutionRow,
    WorkflowApprovalRow,
    WorkflowDefinitionRow,
    WorkflowRunRow,
)
from .workflow_db import WorkflowDB

__all__ = [
    "WorkflowDefinitionRow",
    "WorkflowRunRow",
    "StepExecutionRow",
    "WorkflowApprovalRow",
    "WorkflowDB",
]
