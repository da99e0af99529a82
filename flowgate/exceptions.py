"""Exception hierarchy for the flowgate workflow engine."""

from __future__ import annotations

from typing import Optional


class FlowgateError(Exception):
    """Base exception for all flowgate errors."""


class ConfigurationError(FlowgateError):
    """A workflow definition is invalid (bad branch target, unknown action, ...).

    Fatal to the run that hits it and never retried automatically.
    """


class StepFailed(FlowgateError):
    """Raised by step executors when a downstream side effect was rejected."""


class NotFoundError(FlowgateError):
    """Requested record does not exist."""


class AuthorizationError(FlowgateError):
    """Caller is not allowed to act on the requested record."""


class TenantAccessDenied(AuthorizationError):
    """Record exists but belongs to a different tenant."""

    def __init__(self, record_type: str, record_id: str, tenant_id: str) -> None:
        super().__init__(
            f"{record_type} {record_id} is not accessible for tenant {tenant_id}"
        )
        self.record_type = record_type
        self.record_id = record_id
        self.tenant_id = tenant_id


class ApprovalAlreadyResolved(FlowgateError):
    """Approval was already decided, possibly by a concurrent request."""


class InvalidCallbackToken(AuthorizationError):
    """Integration callback token is missing, expired or does not match."""


class DuplicateRun(FlowgateError):
    """A run already exists for the same (tenant, workflow, event id)."""

    def __init__(self, message: str, existing_run_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.existing_run_id = existing_run_id


class TransientStoreError(FlowgateError):
    """Persistence layer is temporarily unavailable.

    Never recorded as a step failure. Callers should retry the whole
    invocation; resumption recomputes the next step from persisted state.
    """


class StepClaimConflict(FlowgateError):
    """The step is mid-execution and cannot accept this change yet.

    Raised when a decision or callback reaches a step before its suspension
    is recorded. Nothing is modified; the caller should retry.
    """
