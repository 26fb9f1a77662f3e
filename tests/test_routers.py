"""HTTP-level tests for the TradieConnect and webhook routers"""

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from tradie_api.auth import get_current_user, get_optional_user
from tradie_api.config import FRONTEND_URL, TRADIECONNECT_AUTH_URL
from tradie_api.database import get_db
from tradie_api.domain.integrations.tradieconnect.crypto import get_credential_vault
from tradie_api.domain.integrations.tradieconnect.router import get_tradieconnect_client
from tradie_api.main import create_app
from tradie_api.models import OrganizationMember, User
from tradie_api.models_tradieconnect import TradieConnectConnection
from tradie_api.models_webhooks import WebhookLog, WebhookSubscription

from .conftest import TC_USER_ID
from .test_translator import remote_form_data


@pytest.fixture
def app(session_factory, vault, fake_tc, user):
    app = create_app(session_factory=session_factory)
    user_id = user.id

    def current_user(db: Session = Depends(get_db)):
        return db.get(User, user_id)

    app.dependency_overrides[get_current_user] = current_user
    app.dependency_overrides[get_optional_user] = current_user
    app.dependency_overrides[get_credential_vault] = lambda: vault
    app.dependency_overrides[get_tradieconnect_client] = fake_tc.client
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_requires_authentication(session_factory):
    client = TestClient(create_app(session_factory=session_factory))

    response = client.get("/integrations/tradieconnect/status")

    assert response.status_code == 401


# ============================================================================
# CONNECTION
# ============================================================================


class TestConnection:
    def test_status_not_connected(self, client):
        response = client.get("/integrations/tradieconnect/status")

        assert response.status_code == 200
        assert response.json()["connected"] is False

    def test_status_connected(self, client, make_connection):
        make_connection()

        body = client.get("/integrations/tradieconnect/status").json()

        assert body["connected"] is True
        assert body["tc_user_id"] == TC_USER_ID
        assert body["session_state"] == "valid"
        assert "tc_token" not in body

    def test_connect_returns_auth_url(self, client, vault):
        body = client.get("/integrations/tradieconnect/connect").json()

        prefix = f"{TRADIECONNECT_AUTH_URL.rstrip('/')}/?r="
        assert body["authUrl"].startswith(prefix)
        assert vault.decrypt_url_parameter(body["authUrl"][len(prefix):]) == "/dashboard/integrations"

    def test_disconnect(self, client, make_connection):
        make_connection()

        response = client.post("/integrations/tradieconnect/disconnect")

        assert response.json()["success"] is True
        assert client.get("/integrations/tradieconnect/status").json()["connected"] is False

    def test_validate(self, client, make_connection):
        make_connection()

        body = client.post("/integrations/tradieconnect/validate").json()

        assert body == {"valid": True, "refreshed": False, "needs_reconnect": False, "message": "Token is valid"}

    def test_validate_force_refresh(self, client, make_connection, fake_tc):
        make_connection()

        body = client.post("/integrations/tradieconnect/validate", params={"force_refresh": True}).json()

        assert body["refreshed"] is True
        assert fake_tc.refresh_calls == 1


class TestSsoCallback:
    def test_redirects_to_frontend(self, client, vault, user, db):
        params = {
            "u": vault.encrypt_url_parameter(TC_USER_ID),
            "t": vault.encrypt_url_parameter("old-access"),
            "rt": vault.encrypt_url_parameter("old-refresh"),
        }

        response = client.get("/admin/secure/setauth", params=params, follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == (
            f"{FRONTEND_URL.rstrip('/')}/dashboard/integrations?success=connected"
        )
        db.expire_all()
        assert db.query(TradieConnectConnection).filter_by(user_id=user.id, is_active=True).count() == 1
        assert db.get(User, user.id).tc_provider_id == 555

    def test_bad_parameters(self, client):
        response = client.get("/admin/secure/setauth", params={"u": "x", "t": "y"}, follow_redirects=False)

        assert response.headers["location"].endswith("/dashboard/integrations?error=decryption_failed")


# ============================================================================
# JOBS, FORMS AND CALENDAR
# ============================================================================


class TestJobs:
    def test_not_connected(self, client):
        response = client.get("/integrations/tradieconnect/jobs/42")

        assert response.status_code == 400
        assert response.json()["detail"]["needs_connect"] is True

    def test_get_job(self, client, make_connection):
        make_connection()

        response = client.get("/integrations/tradieconnect/jobs/42")

        assert response.status_code == 200
        assert response.json()["jobId"] == 42
        assert response.json()["lat"] == -33.8

    def test_reconnect_required(self, client, make_connection, fake_tc, db):
        connection = make_connection(refresh_token=None)
        fake_tc.access_token = "rotated-elsewhere"

        response = client.get("/integrations/tradieconnect/jobs/42")

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "reconnect_required"
        assert body["action"] == "reconnect"
        assert "auth_url" in body
        db.expire_all()
        assert db.get(TradieConnectConnection, connection.id).is_active is False

    def test_remote_outage(self, client, make_connection, fake_tc):
        make_connection()
        fake_tc.resource_status = 503

        response = client.get("/integrations/tradieconnect/jobs/42")

        assert response.status_code == 503
        assert response.json()["error"] == "tradieconnect_unavailable"

    def test_remote_rejects_request(self, client, make_connection, fake_tc):
        make_connection()
        fake_tc.resource_status = 404

        response = client.get("/integrations/tradieconnect/jobs/42")

        assert response.status_code == 502
        assert response.json()["upstream_status"] == 404

    def test_calendar(self, client, make_connection, fake_tc):
        make_connection()
        fake_tc.calendar = [
            {
                "teamId": 1,
                "name": "North",
                "schedules": [
                    {"jobDate": "2025-03-03", "providers": [{"providerId": 5, "firstName": "Alex"}], "jobs": [{"jobId": 11}]}
                ],
            },
            {
                "teamId": 2,
                "name": "South",
                "schedules": [{"providers": [{"providerId": 5}], "jobs": [{"jobId": 12, "teamId": 2}]}],
            },
        ]

        response = client.get("/integrations/tradieconnect/calendar", params={"date": "2025-03-03"})

        body = response.json()
        assert body["date"] == "2025-03-03"
        assert [(j["jobId"], j["teamId"]) for j in body["jobs"]] == [(11, 1), (12, 2)]
        assert body["teams"] == [{"teamId": 1, "teamName": "North"}, {"teamId": 2, "teamName": "South"}]
        assert [p["providerId"] for p in body["providers"]] == [5]
        assert fake_tc.requests[-1].url.params["date"] == "2025-03-03"

    def test_calendar_bad_date(self, client, make_connection):
        make_connection()

        response = client.get("/integrations/tradieconnect/calendar", params={"date": "03/03/2025"})

        assert response.status_code == 400


class TestForms:
    def test_form_definition(self, client, make_connection, fake_tc):
        make_connection()
        fake_tc.form = remote_form_data()

        response = client.get("/integrations/tradieconnect/jobs/9001/form-definition")

        assert response.status_code == 200
        body = response.json()
        assert body["template_id"] == "tc_form_3"
        assert [g["id"] for g in body["groups"]] == ["tc_g_2", "tc_g_1"]

    def test_sync_answers(self, client, make_connection, fake_tc, user, db):
        make_connection()
        user.tc_provider_id = 555
        db.commit()
        fake_tc.form = remote_form_data()

        response = client.post(
            "/integrations/tradieconnect/jobs/9001/sync-answers",
            json={"answers": {"tc_q_101": "Tested", "tc_q_102": "No"}, "group_no": 1},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["synced_answers"] == 2
        assert body["group_no"] == 1
        [posted] = fake_tc.posted
        sent = posted.read().decode()
        assert '"providerId":555' in sent.replace(" ", "")
        assert '"jobTypeFormAnswerId":1002' in sent.replace(" ", "")

    def test_sync_unknown_question(self, client, make_connection, fake_tc, user, db):
        make_connection()
        user.tc_provider_id = 555
        db.commit()
        fake_tc.form = remote_form_data()

        response = client.post(
            "/integrations/tradieconnect/jobs/9001/sync-answers",
            json={"answers": {"tc_q_404": "?"}},
        )

        assert response.status_code == 422
        assert response.json()["question_ids"] == ["tc_q_404"]
        assert fake_tc.posted == []

    def test_sync_without_provider_id(self, client, make_connection):
        make_connection()

        response = client.post("/integrations/tradieconnect/jobs/9001/sync-answers", json={"answers": {}})

        assert response.status_code == 400


# ============================================================================
# WEBHOOKS
# ============================================================================


@pytest.fixture
def subscription(db, organization):
    subscription = WebhookSubscription(
        organization_id=organization.id,
        event_type="invoice.paid",
        target_url="https://hooks.example.com/invoices",
        secret_key="whsec_test",
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


class TestWebhooks:
    def test_send_test_event(self, client, subscription, db):
        response = client.post(f"/developer/webhooks/{subscription.subscription_id}/test")

        assert response.status_code == 200
        body = response.json()
        assert body["event_type"] == "invoice.paid"
        assert body["target_url"] == "https://hooks.example.com/invoices"
        record = db.get(WebhookLog, body["delivery_id"])
        assert record.status == "pending"
        assert '"_test":true' in record.request_body

    def test_only_admins(self, client, subscription, user, db):
        membership = db.query(OrganizationMember).filter_by(user_id=user.id).one()
        membership.role = "member"
        db.commit()

        response = client.post(f"/developer/webhooks/{subscription.subscription_id}/test")

        assert response.status_code == 403

    @pytest.mark.parametrize("subscription_id", ["not-a-uuid", "6f1c1b4e-5d0a-4c55-9b0e-0d2c6a0f9e11"])
    def test_unknown_subscription(self, client, subscription_id):
        response = client.post(f"/developer/webhooks/{subscription_id}/test")

        assert response.status_code == 404

    def test_inactive_subscription(self, client, subscription, db):
        subscription.is_active = False
        db.commit()

        response = client.post(f"/developer/webhooks/{subscription.subscription_id}/test")

        assert response.status_code == 400

    def test_deliveries_and_health(self, client, subscription):
        client.post(f"/developer/webhooks/{subscription.subscription_id}/test")

        deliveries = client.get(f"/developer/webhooks/{subscription.subscription_id}/deliveries").json()
        health = client.get(f"/developer/webhooks/{subscription.subscription_id}/health").json()

        assert len(deliveries) == 1
        assert deliveries[0]["status"] == "pending"
        assert deliveries[0]["attempt_count"] == 0
        assert health["is_active"] is True
        assert health["failure_count"] == 0
