from datetime import datetime, timezone
from decimal import Decimal

import pytest

from consultflow.core.enums import PaymentSessionStatus
from consultflow.repositories.factory import RepositoryFactory
from tests.factories.billing_factories import booking_request

START = datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)
COMPLETED_AT = datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo(db):
    return RepositoryFactory.create_payment_repository(db)


@pytest.fixture
def booking_id(orchestrator, practitioner, client, per_booking_settings):
    return orchestrator.create_booking(booking_request(practitioner, client, START)).booking_id


def _session(repo, practitioner, booking_id, stripe_session_id):
    return repo.create(
        practitioner_id=practitioner.id,
        booking_id=booking_id,
        stripe_session_id=stripe_session_id,
        checkout_url=f"https://checkout.stripe.com/c/{stripe_session_id}",
        amount=Decimal("100.00"),
        currency="EUR",
    )


def test_pending_lookup_ignores_finished_sessions(repo, practitioner, booking_id):
    first = _session(repo, practitioner, booking_id, "cs_a")
    repo.mark_cancelled(first)
    second = _session(repo, practitioner, booking_id, "cs_b")

    assert repo.get_pending_for_booking(booking_id).id == second.id
    assert [s.id for s in repo.list_pending_for_booking(booking_id)] == [second.id]


def test_mark_completed(repo, practitioner, booking_id):
    session = _session(repo, practitioner, booking_id, "cs_done")

    repo.mark_completed(session, "pi_42", COMPLETED_AT)

    assert session.status == PaymentSessionStatus.COMPLETED.value
    assert repo.get_pending_for_booking(booking_id) is None
    completed = repo.get_completed_for_booking(booking_id)
    assert completed.stripe_payment_intent_id == "pi_42"
    assert completed.completed_at == COMPLETED_AT
    assert repo.get_by_stripe_session_id("cs_done").id == session.id


def test_mark_completed_keeps_intent_when_missing(repo, practitioner, booking_id):
    session = _session(repo, practitioner, booking_id, "cs_no_intent")
    session.stripe_payment_intent_id = "pi_known"

    repo.mark_completed(session, None, COMPLETED_AT)

    assert session.stripe_payment_intent_id == "pi_known"


def test_email_log_is_listed_in_order(repo, practitioner, client, booking_id):
    repo.log_email(
        practitioner_id=practitioner.id,
        booking_id=booking_id,
        email_type="receipt",
        recipient_email=client.email,
        status="failed",
        error_message="mailbox unavailable",
    )

    logs = repo.list_emails_for_booking(booking_id)

    assert [log.email_type for log in logs] == ["payment_request", "receipt"]
    assert logs[-1].error_message == "mailbox unavailable"
