from datetime import datetime, timezone

from pydantic import SecretStr
import pytest

from consultflow.core.config import settings
from tests.factories.billing_factories import booking_request, make_billing_settings

CRON_SECRET = "cron-test-secret"
AUTH = {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def cron_secret(monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", SecretStr(CRON_SECRET))


def test_unconfigured_secret_is_503(api_client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", None)

    response = api_client.post("/api/v1/cron/send-scheduled-bills", headers=AUTH)

    assert response.status_code == 503


@pytest.mark.parametrize(
    "headers",
    [{}, {"Authorization": "Bearer wrong"}, {"Authorization": f"Basic {CRON_SECRET}"}],
)
def test_bad_credentials_are_401(api_client, cron_secret, headers):
    response = api_client.post("/api/v1/cron/send-scheduled-bills", headers=headers)

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


def test_sweep_sends_due_bills(db, api_client, cron_secret, orchestrator, practitioner, client, notifier, clock):
    make_billing_settings(db, practitioner, payment_email_lead_hours=24)
    orchestrator.create_booking(booking_request(practitioner, client, datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)))
    clock.now = datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc)

    response = api_client.post("/api/v1/cron/send-scheduled-bills", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["claimed"] == 1
    assert response.json()["sent"] == 1
    assert len(notifier.sent) == 1


def test_sweep_limit_is_validated(api_client, cron_secret):
    response = api_client.post("/api/v1/cron/send-scheduled-bills?limit=0", headers=AUTH)

    assert response.status_code == 422


def test_monthly_invoicing_dry_run(api_client, cron_secret, orchestrator, practitioner, client, monthly_settings):
    orchestrator.create_booking(booking_request(practitioner, client, datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)))

    response = api_client.post("/api/v1/cron/invoicing/monthly?period=2025-01&dry_run=true", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["period_label"] == "2025-01"
    assert body["invoices"] == 1
    assert body["linked_bills"] == 1


def test_monthly_invoicing_rejects_bad_period(api_client, cron_secret):
    response = api_client.post("/api/v1/cron/invoicing/monthly?period=January", headers=AUTH)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_PERIOD"
