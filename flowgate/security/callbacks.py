"""Signed tokens scoping integration callbacks to one suspended step."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from ..exceptions import ConfigurationError, InvalidCallbackToken

CALLBACK_AUDIENCE = "flowgate-callback"


class CallbackClaims(BaseModel):
    """Claims carried by an integration callback token."""

    tenant_id: str
    run_id: str
    step_execution_id: str


class CallbackTokenService:
    """Issues and verifies HS256 JWTs handed to external integrations.

    The integration echoes the token back on its webhook, which lets the
    unauthenticated callback surface resolve exactly one step of one tenant.
    """

    algorithm = "HS256"

    def __init__(self, secret: Optional[str], ttl_seconds: int = 7 * 24 * 3600) -> None:
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def _require_secret(self) -> str:
        if not self._secret:
            raise ConfigurationError(
                "engine.callback_secret must be set to use integration_call steps"
            )
        return self._secret

    def issue(
        self,
        tenant_id: str,
        run_id: str,
        step_execution_id: str,
        now: Optional[datetime] = None,
    ) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "sub": step_execution_id,
            "tid": tenant_id,
            "rid": run_id,
            "aud": CALLBACK_AUDIENCE,
            "iat": now,
            "exp": now + timedelta(seconds=self.ttl_seconds),
        }
        return jwt.encode(payload, self._require_secret(), algorithm=self.algorithm)

    def verify(self, token: str) -> CallbackClaims:
        """Validate ``token`` and return its claims."""
        if not token:
            raise InvalidCallbackToken("Callback token is missing")
        try:
            decoded = jwt.decode(
                token,
                self._require_secret(),
                algorithms=[self.algorithm],
                audience=CALLBACK_AUDIENCE,
                options={"require": ["exp", "sub", "aud"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidCallbackToken("Callback token has expired") from e
        except jwt.PyJWTError as e:
            raise InvalidCallbackToken(f"Invalid callback token: {e}") from e
        try:
            return CallbackClaims(
                tenant_id=decoded["tid"],
                run_id=decoded["rid"],
                step_execution_id=decoded["sub"],
            )
        except KeyError as e:
            raise InvalidCallbackToken(f"Callback token is missing claim {e}") from e
