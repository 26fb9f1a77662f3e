"""
Tests for RemoteSessionManager

Refresh tokens are single use, so the important properties are that a rejected token
is refreshed exactly once no matter how many requests see the 401, and that a dead
credential deactivates the connection instead of looping.
"""

import asyncio
from datetime import datetime

import pytest

from tradie_api.domain.integrations.tradieconnect.exceptions import (
    ReconnectRequired,
    RemoteUnauthorized,
    RemoteUnavailable,
)
from tradie_api.domain.integrations.tradieconnect.session import RemoteSessionManager, _parse_expiry
from tradie_api.models_tradieconnect import TradieConnectConnection


@pytest.fixture
def manager(db, vault, fake_tc):
    return RemoteSessionManager(db, vault=vault, client=fake_tc.client())


class TestCall:
    @pytest.mark.asyncio
    async def test_valid_token_does_not_refresh(self, manager, make_connection, fake_tc):
        connection = make_connection()

        job = await manager.call(connection, lambda creds: manager.client.fetch_job(creds, 42))

        assert job.jobId == 42
        assert fake_tc.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_expired_token_refreshes_and_retries(self, manager, make_connection, fake_tc, vault, db):
        connection = make_connection()
        fake_tc.access_token = "rotated-elsewhere"
        fake_tc.refresh_token = "old-refresh"

        job = await manager.call(connection, lambda creds: manager.client.fetch_job(creds, 7))

        assert job.jobId == 7
        assert fake_tc.refresh_calls == 1
        db.refresh(connection)
        assert vault.decrypt(connection.tc_token) == "access-1"
        assert vault.decrypt(connection.tc_refresh_token) == "refresh-1"
        assert connection.session_state == "valid"
        assert connection.tc_token_expires_at == datetime(2030, 1, 1, 0, 0)

    @pytest.mark.asyncio
    async def test_concurrent_401s_refresh_once(self, manager, make_connection, fake_tc, vault, db):
        connection = make_connection()
        fake_tc.access_token = "rotated-elsewhere"

        results = await asyncio.gather(
            *[manager.call(connection, lambda creds, n=n: manager.client.fetch_job(creds, n)) for n in range(1, 6)]
        )

        assert [job.jobId for job in results] == [1, 2, 3, 4, 5]
        assert fake_tc.refresh_calls == 1
        db.refresh(connection)
        assert vault.decrypt(connection.tc_token) == "access-1"
        assert connection.is_active is True

    @pytest.mark.asyncio
    async def test_concurrent_401s_across_sessions_refresh_once(
        self, session_factory, make_connection, fake_tc, vault, db
    ):
        connection_id = make_connection().id
        fake_tc.access_token = "rotated-elsewhere"
        sessions = [session_factory() for _ in range(4)]

        async def fetch(session, job_id):
            manager = RemoteSessionManager(session, vault=vault, client=fake_tc.client())
            connection = session.get(TradieConnectConnection, connection_id)
            return await manager.call(connection, lambda creds: manager.client.fetch_job(creds, job_id))

        try:
            results = await asyncio.gather(*[fetch(session, n) for n, session in enumerate(sessions, start=1)])
        finally:
            for session in sessions:
                session.close()

        assert [job.jobId for job in results] == [1, 2, 3, 4]
        assert fake_tc.refresh_calls == 1
        connection = db.get(TradieConnectConnection, connection_id)
        db.refresh(connection)
        assert vault.decrypt(connection.tc_token) == "access-1"
        assert connection.is_active is True

    @pytest.mark.asyncio
    async def test_rejected_after_refresh_requires_reconnect(self, manager, make_connection, fake_tc, db):
        connection = make_connection()
        fake_tc.access_token = "rotated-elsewhere"

        async def always_unauthorized(creds):
            raise RemoteUnauthorized("nope")

        with pytest.raises(ReconnectRequired):
            await manager.call(connection, always_unauthorized)

        assert fake_tc.refresh_calls == 1
        db.refresh(connection)
        assert connection.is_active is False
        assert connection.session_state == "invalid"

    @pytest.mark.asyncio
    async def test_missing_refresh_token_requires_reconnect(self, manager, make_connection, fake_tc, db):
        connection = make_connection(refresh_token=None)
        stored_token = connection.tc_token
        fake_tc.access_token = "rotated-elsewhere"

        with pytest.raises(ReconnectRequired, match="No refresh token"):
            await manager.call(connection, lambda creds: manager.client.fetch_job(creds, 1))

        assert fake_tc.refresh_calls == 0
        db.refresh(connection)
        assert connection.tc_token == stored_token
        assert connection.is_active is False

    @pytest.mark.asyncio
    async def test_refresh_token_rejected_requires_reconnect(self, manager, make_connection, fake_tc, db):
        connection = make_connection()
        fake_tc.access_token = "rotated-elsewhere"
        fake_tc.refresh_token = "already-rotated"

        with pytest.raises(ReconnectRequired):
            await manager.call(connection, lambda creds: manager.client.fetch_job(creds, 1))

        db.refresh(connection)
        assert connection.is_active is False
        assert connection.session_state == "invalid"

    @pytest.mark.asyncio
    async def test_refresh_outage_keeps_connection(self, manager, make_connection, fake_tc, db, vault):
        connection = make_connection()
        fake_tc.access_token = "rotated-elsewhere"
        fake_tc.refresh_status = 503

        with pytest.raises(RemoteUnavailable):
            await manager.call(connection, lambda creds: manager.client.fetch_job(creds, 1))

        db.refresh(connection)
        assert connection.is_active is True
        assert connection.session_state == "expired"
        assert vault.decrypt(connection.tc_refresh_token) == "old-refresh"

    @pytest.mark.asyncio
    async def test_refresh_without_new_refresh_token_keeps_old_one(self, manager, make_connection, fake_tc, db, vault):
        connection = make_connection()
        fake_tc.access_token = "rotated-elsewhere"
        fake_tc.refresh_omits_refresh_token = True

        await manager.call(connection, lambda creds: manager.client.fetch_job(creds, 1))

        db.refresh(connection)
        assert vault.decrypt(connection.tc_token) == "access-1"
        assert vault.decrypt(connection.tc_refresh_token) == "old-refresh"

    @pytest.mark.asyncio
    async def test_undecryptable_token_requires_reconnect(self, manager, make_connection, fake_tc, db):
        connection = make_connection(tc_token="garbage:value")

        with pytest.raises(ReconnectRequired, match="cannot be decrypted"):
            await manager.call(connection, lambda creds: manager.client.fetch_job(creds, 1))

        assert fake_tc.requests == []
        db.refresh(connection)
        assert connection.is_active is False

    @pytest.mark.asyncio
    async def test_inactive_connection_is_not_used(self, manager, make_connection, fake_tc):
        connection = make_connection(is_active=False)

        with pytest.raises(ReconnectRequired):
            await manager.call(connection, lambda creds: manager.client.fetch_job(creds, 1))

        assert fake_tc.requests == []


class TestValidate:
    @pytest.mark.asyncio
    async def test_valid_token(self, manager, make_connection, fake_tc):
        connection = make_connection()

        result = await manager.validate(connection)

        assert result.valid is True
        assert result.refreshed is False
        assert fake_tc.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_rejected_token_is_refreshed(self, manager, make_connection, fake_tc):
        connection = make_connection()
        fake_tc.access_token = "rotated-elsewhere"

        result = await manager.validate(connection)

        assert result.valid is True
        assert result.refreshed is True
        assert fake_tc.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_force_refresh(self, manager, make_connection, fake_tc, vault, db):
        connection = make_connection()

        result = await manager.validate(connection, force=True)

        assert result.refreshed is True
        assert fake_tc.refresh_calls == 1
        db.refresh(connection)
        assert vault.decrypt(connection.tc_token) == "access-1"

    @pytest.mark.asyncio
    async def test_dead_credential_reports_reconnect(self, manager, make_connection, fake_tc):
        connection = make_connection(refresh_token=None)
        fake_tc.access_token = "rotated-elsewhere"

        result = await manager.validate(connection)

        assert result.valid is False
        assert result.needs_reconnect is True


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, None),
        ("", None),
        ("not a date", None),
        ("2030-01-01T10:00:00+10:00", datetime(2030, 1, 1, 0, 0)),
        ("2030-01-01T00:00:00Z", datetime(2030, 1, 1, 0, 0)),
        ("2030-01-01T00:00:00", datetime(2030, 1, 1, 0, 0)),
    ],
)
def test_parse_expiry(value, expected):
    assert _parse_expiry(value) == expected
