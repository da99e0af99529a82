from datetime import datetime, timedelta, timezone

import jwt
import pytest

from flowgate.exceptions import ConfigurationError, InvalidCallbackToken
from flowgate.security import CallbackClaims, CallbackTokenService


def test_issue_and_verify_roundtrip():
    service = CallbackTokenService("secret", ttl_seconds=60)

    token = service.issue("tenant-a", "run-1", "step-1")

    assert service.verify(token) == CallbackClaims(
        tenant_id="tenant-a", run_id="run-1", step_execution_id="step-1"
    )


def test_expired_token_is_rejected():
    service = CallbackTokenService("secret", ttl_seconds=60)
    token = service.issue(
        "tenant-a", "run-1", "step-1", now=datetime.now(timezone.utc) - timedelta(minutes=5)
    )

    with pytest.raises(InvalidCallbackToken, match="expired"):
        service.verify(token)


def test_token_signed_with_other_secret_or_audience_is_rejected():
    service = CallbackTokenService("secret")
    forged = CallbackTokenService("other").issue("tenant-a", "run-1", "step-1")
    wrong_audience = jwt.encode(
        {
            "sub": "step-1",
            "tid": "tenant-a",
            "rid": "run-1",
            "aud": "someone-else",
            "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        },
        "secret",
        algorithm="HS256",
    )

    with pytest.raises(InvalidCallbackToken):
        service.verify(forged)
    with pytest.raises(InvalidCallbackToken):
        service.verify(wrong_audience)
    with pytest.raises(InvalidCallbackToken):
        service.verify("not-a-jwt")


def test_missing_claims_are_rejected():
    service = CallbackTokenService("secret")
    token = jwt.encode(
        {
            "sub": "step-1",
            "aud": "flowgate-callback",
            "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        },
        "secret",
        algorithm="HS256",
    )

    with pytest.raises(InvalidCallbackToken, match="missing claim"):
        service.verify(token)


def test_secret_is_required():
    with pytest.raises(ConfigurationError):
        CallbackTokenService(None).issue("tenant-a", "run-1", "step-1")
