"""
Tests for API authentication dependencies.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from fitledger.api.dependencies import (
    UserIdentity,
    decode_session_token,
    get_current_user,
    require_cron_secret,
)
from fitledger.config import settings

SECRET = "unit-test-secret-with-enough-length"


def _token(
    secret: str = SECRET,
    expires_in: timedelta = timedelta(hours=1),
    **claims: object,
) -> str:
    payload: dict[str, object] = {"exp": datetime.now(UTC) + expires_in}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestDecodeSessionToken:
    """JWT verification."""

    def test_valid_token(self) -> None:
        user_id = uuid4()

        identity = decode_session_token(
            _token(sub=str(user_id), email="athlete@example.com", role="admin"), SECRET
        )

        assert identity.user_id == user_id
        assert identity.email == "athlete@example.com"
        assert identity.role == "admin"
        assert identity.is_admin is True

    def test_plain_user(self) -> None:
        identity = decode_session_token(_token(sub=str(uuid4())), SECRET)

        assert identity.email is None
        assert identity.is_admin is False
        assert identity.as_actor().is_admin is False

    def test_expired(self) -> None:
        token = _token(sub=str(uuid4()), expires_in=timedelta(seconds=-5))

        with pytest.raises(jwt.ExpiredSignatureError):
            decode_session_token(token, SECRET)

    def test_wrong_secret(self) -> None:
        with pytest.raises(jwt.InvalidSignatureError):
            decode_session_token(
                _token(secret="another-secret-of-sufficient-length", sub="x"), SECRET
            )

    def test_subject_must_be_uuid(self) -> None:
        with pytest.raises(jwt.InvalidTokenError, match="subject"):
            decode_session_token(_token(sub="not-a-uuid"), SECRET)

    def test_subject_required(self) -> None:
        with pytest.raises(jwt.MissingRequiredClaimError):
            decode_session_token(_token(), SECRET)

    def test_expiry_required(self) -> None:
        token = jwt.encode({"sub": str(uuid4())}, SECRET, algorithm="HS256")

        with pytest.raises(jwt.MissingRequiredClaimError):
            decode_session_token(token, SECRET)

    def test_audience_checked_when_configured(self) -> None:
        token = _token(sub=str(uuid4()), aud="fitness-web")

        assert decode_session_token(token, SECRET, audience="fitness-web").user_id
        with pytest.raises(jwt.InvalidAudienceError):
            decode_session_token(token, SECRET, audience="admin-panel")

    def test_non_string_claims_dropped(self) -> None:
        identity = decode_session_token(_token(sub=str(uuid4()), email=42, role=["admin"]), SECRET)

        assert identity.email is None
        assert identity.role is None


class TestGetCurrentUser:
    """Bearer token dependency."""

    async def test_missing_header(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None)

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    async def test_valid(self) -> None:
        user_id = uuid4()
        token = _token(secret=settings.session_jwt_secret, sub=str(user_id))

        identity = await get_current_user(_bearer(token))

        assert isinstance(identity, UserIdentity)
        assert identity.user_id == user_id

    async def test_expired(self) -> None:
        token = _token(
            secret=settings.session_jwt_secret,
            sub=str(uuid4()),
            expires_in=timedelta(minutes=-1),
        )

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_bearer(token))

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["details"] == "Token expired"

    async def test_invalid(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_bearer("not.a.jwt"))

        assert exc_info.value.detail["details"] == "Invalid token"


class TestRequireCronSecret:
    """Static bearer secret for the scheduler."""

    async def test_accepts_secret(self) -> None:
        await require_cron_secret(_bearer(settings.cron_secret))

    async def test_rejects_wrong_secret(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await require_cron_secret(_bearer("guess"))

        assert exc_info.value.status_code == 401

    async def test_rejects_missing(self) -> None:
        with pytest.raises(HTTPException):
            await require_cron_secret(None)

    async def test_unconfigured_secret_rejects(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "cron_secret", "")

        with pytest.raises(HTTPException) as exc_info:
            await require_cron_secret(_bearer(""))

        assert exc_info.value.detail["details"] == "Cron secret is not configured"
