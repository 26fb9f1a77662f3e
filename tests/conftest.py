"""Shared fixtures: in-memory database, vault with a test key, org/user rows, fake TradieConnect"""

import asyncio
from datetime import datetime

import httpx
import pytest
from sqlalchemy.pool import StaticPool

from tradie_api import models_tradieconnect, models_webhooks  # noqa: F401 - register tables
from tradie_api.database import Base, build_engine, build_session_factory
from tradie_api.domain.integrations.tradieconnect.client import TradieConnectClient
from tradie_api.domain.integrations.tradieconnect.crypto import CredentialVault, basic_auth_header
from tradie_api.models import Organization, OrganizationMember, User
from tradie_api.models_tradieconnect import TradieConnectConnection

TEST_KEY = "0123456789abcdef0123456789abcdef"
TC_USER_ID = "5b1f0c7e-2d7a-4d8e-9a51-7f2c3e4b6a10"
TC_API_URL = "https://tc.test"


@pytest.fixture
def engine():
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def vault():
    return CredentialVault(key=TEST_KEY)


@pytest.fixture
def organization(db):
    org = Organization(name="Sparky Electrical")
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


@pytest.fixture
def user(db, organization):
    user = User(identity_uid="firebase-uid-1", email="owner@sparky.example", full_name="Sam Owner")
    db.add(user)
    db.commit()
    db.add(OrganizationMember(organization_id=organization.id, user_id=user.id, role="owner", status="active"))
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def make_connection(db, vault, user, organization):
    """Create a stored connection with encrypted tokens"""

    def _make(access_token="old-access", refresh_token="old-refresh", **overrides):
        connection = TradieConnectConnection(
            user_id=user.id,
            organization_id=organization.id,
            tc_user_id=TC_USER_ID,
            tc_token=vault.encrypt(access_token),
            tc_refresh_token=vault.encrypt(refresh_token) if refresh_token else None,
            session_state="valid",
            is_active=True,
            connected_at=datetime.utcnow(),
        )
        for key, value in overrides.items():
            setattr(connection, key, value)
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection

    return _make


class FakeTradieConnect:
    """
    Stand-in for the TradieConnect API behind an httpx.MockTransport.

    Accepts exactly one access token at a time; a refresh swaps it for the next one.
    """

    def __init__(self, access_token="old-access", refresh_token="old-refresh"):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.refresh_calls = 0
        self.refresh_status = 200
        self.refresh_omits_refresh_token = False
        self.resource_status = None
        self.refresh_delay = 0.01
        self.form = None
        self.user = {"userId": 77, "providerId": 555, "firstName": "Sam", "lastName": "Owner"}
        self.calendar = []
        self.posted = []
        self.requests = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> TradieConnectClient:
        return TradieConnectClient(base_url=TC_API_URL, timeout=5, transport=self.transport())

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/api/v2/Auth/":
            return await self._refresh(request)

        if request.headers.get("Authorization") != basic_auth_header(TC_USER_ID, self.access_token):
            return httpx.Response(401, json={"message": "Unauthorized"})
        if self.resource_status is not None:
            return httpx.Response(self.resource_status, text="upstream says no")

        if path == "/api/v2/Auth/validate":
            return httpx.Response(200, json={"valid": True})
        if path.startswith("/api/v2/User/"):
            return httpx.Response(200, json=self.user)
        if path.startswith("/api/v2/JobForm/"):
            return httpx.Response(200, json=self.form)
        if path == "/api/v2/JobForm" and request.method == "POST":
            self.posted.append(request)
            return httpx.Response(200, json={"success": True})
        if path.startswith("/api/v2/Job/"):
            return httpx.Response(
                200,
                json={"code": "JOB-1", "property": {"jobId": int(path.rsplit("/", 1)[-1])}, "latLong": {"lat": -33.8}},
            )
        if path == "/api/v2/ProviderCalendar":
            return httpx.Response(200, json=self.calendar)
        return httpx.Response(404)

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        self.refresh_calls += 1
        # Let waiting callers pile up on the lock
        await asyncio.sleep(self.refresh_delay)

        if self.refresh_status != 200:
            return httpx.Response(self.refresh_status, text="refresh failed")
        if request.url.params.get("token") != self.refresh_token:
            return httpx.Response(401, json={"message": "Refresh token already used"})

        self.access_token = f"access-{self.refresh_calls}"
        body = {"token": self.access_token, "expiry": "2030-01-01T10:00:00+10:00"}
        if not self.refresh_omits_refresh_token:
            self.refresh_token = f"refresh-{self.refresh_calls}"
            body["refreshToken"] = self.refresh_token
        return httpx.Response(200, json=body)


@pytest.fixture
def fake_tc():
    return FakeTradieConnect()
