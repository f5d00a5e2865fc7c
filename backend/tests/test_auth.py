# tests/test_auth.py
"""
Tests for token, subscription and shared-secret checks

Run with: pytest tests/test_auth.py -v
"""

import pytest
from datetime import timedelta
from types import SimpleNamespace
from uuid import uuid4

from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from app.auth import (
    create_access_token,
    get_current_client_id,
    require_active_subscription,
    secrets_match,
    verify_cron_secret,
    verify_webhook_secret,
)
from app.config import settings


def bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestTokens:

    def test_token_claims(self):
        client_id = uuid4()
        token = create_access_token({"client_id": str(client_id)})

        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])

        assert payload["client_id"] == str(client_id)
        assert payload["type"] == "access"
        assert payload["exp"] > payload["iat"]

    @pytest.mark.asyncio
    async def test_valid_token(self):
        client_id = uuid4()
        token = create_access_token({"client_id": str(client_id)})

        assert await get_current_client_id(bearer(token)) == client_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("credentials", [
        None,
        bearer("not-a-jwt"),
        bearer(create_access_token({"sub": "someone"})),
        bearer(create_access_token({"client_id": "not-a-uuid"})),
        bearer(create_access_token({"client_id": str(uuid4())}, expires_delta=timedelta(seconds=-5))),
    ])
    async def test_rejected_tokens(self, credentials):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_client_id(credentials)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_token_signed_with_other_key(self):
        token = jwt.encode({"client_id": str(uuid4())}, "another-key", algorithm=settings.JWT_ALGORITHM)

        with pytest.raises(HTTPException):
            await get_current_client_id(bearer(token))


class TestSubscription:

    @pytest.mark.asyncio
    async def test_full_active_plan(self, mock_db, result_factory, client_id):
        mock_db.execute.return_value = result_factory(first=SimpleNamespace(plan="full", subscription_status="active"))

        assert await require_active_subscription(client_id, mock_db) == client_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan, status", [("starter", "active"), ("full", "canceled"), ("full", None)])
    async def test_other_plans_forbidden(self, mock_db, result_factory, client_id, plan, status):
        mock_db.execute.return_value = result_factory(first=SimpleNamespace(plan=plan, subscription_status=status))

        with pytest.raises(HTTPException) as exc_info:
            await require_active_subscription(client_id, mock_db)

        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == "subscription_required"

    @pytest.mark.asyncio
    async def test_unknown_client(self, mock_db, client_id):
        with pytest.raises(HTTPException) as exc_info:
            await require_active_subscription(client_id, mock_db)

        assert exc_info.value.status_code == 404


class TestSharedSecrets:

    def test_secrets_match(self):
        assert secrets_match("abc", "abc") is True
        assert secrets_match("abc", "abd") is False
        assert secrets_match("abc", None) is False
        assert secrets_match(None, "abc") is False
        assert secrets_match("", "") is False

    @pytest.mark.asyncio
    async def test_webhook_secret_header_or_query(self, monkeypatch):
        monkeypatch.setattr(settings, "UNIPILE_WEBHOOK_SECRET", "hook-secret")

        await verify_webhook_secret(x_unipile_secret="hook-secret", secret=None)
        await verify_webhook_secret(x_unipile_secret=None, secret="hook-secret")

        with pytest.raises(HTTPException) as exc_info:
            await verify_webhook_secret(x_unipile_secret="wrong", secret=None)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unconfigured_webhook_secret_rejects(self, monkeypatch):
        monkeypatch.setattr(settings, "UNIPILE_WEBHOOK_SECRET", None)

        with pytest.raises(HTTPException):
            await verify_webhook_secret(x_unipile_secret="anything", secret=None)

    @pytest.mark.asyncio
    async def test_cron_secret_header_or_bearer(self, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")

        await verify_cron_secret(x_cron_secret="cron-secret", credentials=None)
        await verify_cron_secret(x_cron_secret=None, credentials=bearer("cron-secret"))

        with pytest.raises(HTTPException):
            await verify_cron_secret(x_cron_secret=None, credentials=None)
