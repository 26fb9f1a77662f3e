"""Tests for the inbound TradieConnect SSO callback"""

import pytest

from tradie_api.domain.integrations.tradieconnect.callback import InboundCallbackHandler
from tradie_api.domain.integrations.tradieconnect.crypto import CredentialVault
from tradie_api.models import User
from tradie_api.models_tradieconnect import TradieConnectConnection

from .conftest import TC_USER_ID


@pytest.fixture
def handler(db, vault, fake_tc):
    return InboundCallbackHandler(db, vault, fake_tc.client())


@pytest.fixture
def encrypted(vault):
    def _params(**values):
        return {key: vault.encrypt_url_parameter(value) for key, value in values.items()}

    return _params


class TestCallback:
    @pytest.mark.asyncio
    async def test_stores_encrypted_connection(self, handler, encrypted, user, db, vault):
        params = encrypted(u=TC_USER_ID, t="old-access", rt="old-refresh", r="/jobs/today", s="shared-secret")

        path = await handler.handle(params, user)

        assert path == "/jobs/today?success=connected"
        connection = db.query(TradieConnectConnection).filter_by(user_id=user.id).one()
        assert connection.tc_user_id == TC_USER_ID
        assert connection.is_active is True
        assert connection.tc_token != "old-access"
        assert vault.decrypt(connection.tc_token) == "old-access"
        assert vault.decrypt(connection.tc_refresh_token) == "old-refresh"

    @pytest.mark.asyncio
    async def test_links_provider_id(self, handler, encrypted, user, db):
        await handler.handle(encrypted(u=TC_USER_ID, t="old-access"), user)

        db.refresh(user)
        assert user.tc_provider_id == 555

    @pytest.mark.asyncio
    async def test_provider_lookup_failure_still_connects(self, handler, encrypted, user, db, fake_tc):
        fake_tc.resource_status = 500

        path = await handler.handle(encrypted(u=TC_USER_ID, t="old-access"), user)

        assert path == "/dashboard/integrations?success=connected"
        assert db.query(TradieConnectConnection).filter_by(user_id=user.id, is_active=True).count() == 1
        db.refresh(user)
        assert user.tc_provider_id is None

    @pytest.mark.asyncio
    async def test_reconnect_replaces_existing_row(self, handler, encrypted, user, db, make_connection, vault):
        make_connection(is_active=False, session_state="invalid")

        await handler.handle(encrypted(u=TC_USER_ID, t="old-access", rt="brand-new-refresh"), user)

        [connection] = db.query(TradieConnectConnection).filter_by(user_id=user.id).all()
        assert connection.is_active is True
        assert connection.session_state == "valid"
        assert vault.decrypt(connection.tc_refresh_token) == "brand-new-refresh"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "referer",
        ["https://evil.example/phish", "//evil.example", "/\\evil.example", "javascript:alert(1)"],
    )
    async def test_unsafe_referer_uses_default(self, handler, encrypted, user, referer):
        path = await handler.handle(encrypted(u=TC_USER_ID, t="old-access", r=referer), user)

        assert path == "/dashboard/integrations?success=connected"

    @pytest.mark.asyncio
    async def test_referer_with_query_string(self, handler, encrypted, user):
        path = await handler.handle(encrypted(u=TC_USER_ID, t="old-access", r="/dashboard/integrations?tab=tc"), user)

        assert path == "/dashboard/integrations?tab=tc&success=connected"

    @pytest.mark.asyncio
    async def test_referer_with_fragment(self, handler, encrypted, user):
        path = await handler.handle(encrypted(u=TC_USER_ID, t="old-access", r="/jobs#tab"), user)

        assert path == "/jobs?success=connected#tab"

    @pytest.mark.asyncio
    async def test_missing_params(self, handler, encrypted, user, db):
        path = await handler.handle(encrypted(u=TC_USER_ID), user)

        assert path == "/dashboard/integrations?error=missing_params"
        assert db.query(TradieConnectConnection).count() == 0

    @pytest.mark.asyncio
    async def test_undecryptable_params(self, handler, user, db):
        path = await handler.handle({"u": "definitely not encrypted", "t": "nor this"}, user)

        assert path == "/dashboard/integrations?error=decryption_failed"
        assert db.query(TradieConnectConnection).count() == 0

    @pytest.mark.asyncio
    async def test_params_from_another_key(self, handler, user):
        other = CredentialVault(key="fedcba9876543210fedcba9876543210")
        params = {
            "u": other.encrypt_url_parameter(TC_USER_ID),
            "t": other.encrypt_url_parameter("a-long-enough-access-token-value"),
        }

        path = await handler.handle(params, user)

        assert path == "/dashboard/integrations?error=decryption_failed"

    @pytest.mark.asyncio
    async def test_signed_out_user_is_sent_to_sign_in(self, handler, encrypted, db):
        path = await handler.handle(encrypted(u=TC_USER_ID, t="old-access"), None)

        assert path == "/sign-in?redirect_url=/dashboard/integrations"
        assert db.query(TradieConnectConnection).count() == 0

    @pytest.mark.asyncio
    async def test_user_without_organization(self, handler, encrypted, db):
        loner = User(identity_uid="firebase-uid-2", email="loner@example.com")
        db.add(loner)
        db.commit()

        path = await handler.handle(encrypted(u=TC_USER_ID, t="old-access"), loner)

        assert path == "/dashboard/integrations?error=user_not_found"

    @pytest.mark.asyncio
    async def test_storage_failure_redirects_with_error(self, handler, encrypted, user, monkeypatch):
        def broken_upsert(*args, **kwargs):
            raise RuntimeError("database is down")

        monkeypatch.setattr(handler.repo, "upsert_connection", broken_upsert)

        path = await handler.handle(encrypted(u=TC_USER_ID, t="old-access"), user)

        assert path == "/dashboard/integrations?error=server_error"
