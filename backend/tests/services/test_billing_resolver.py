from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from consultflow.models.billing_settings import BillingSettings
from consultflow.schemas.billing import MonthlyTerms, PerBookingTerms
from consultflow.services.billing_resolver import BillingResolver
from tests.factories.billing_factories import make_billing_settings, make_client


@pytest.fixture
def resolver(db, clock):
    return BillingResolver(db, clock=clock)


def test_client_settings_win_over_default(db, resolver, practitioner, client, per_booking_settings, monthly_settings):
    resolved = resolver.resolve(practitioner.id, client.id)

    assert resolved.billing_settings_id == monthly_settings.id
    assert isinstance(resolved.terms, MonthlyTerms)
    assert resolved.terms.amount == Decimal("80.00")


def test_practitioner_default_for_other_clients(db, resolver, practitioner, per_booking_settings, monthly_settings):
    other = make_client(db, practitioner)

    resolved = resolver.resolve(practitioner.id, other.id)

    assert resolved.billing_settings_id == per_booking_settings.id
    assert isinstance(resolved.terms, PerBookingTerms)
    assert resolved.terms.amount == Decimal("100.00")


def test_missing_settings_create_a_zero_default_once(db, resolver, practitioner, client):
    first = resolver.resolve(practitioner.id, client.id)
    second = resolver.resolve(practitioner.id, client.id)

    assert first.billing_settings_id == second.billing_settings_id
    assert first.terms.amount == Decimal("0.00")
    assert first.terms.cadence == "per_booking"
    rows = db.query(BillingSettings).filter(BillingSettings.practitioner_id == practitioner.id).all()
    assert len(rows) == 1
    assert rows[0].is_default is True


def test_resolved_extras_are_carried(db, resolver, practitioner, client):
    make_billing_settings(
        db,
        practitioner,
        payment_email_lead_hours=48,
        vat_rate_percent=Decimal("21.00"),
        first_consultation_amount=Decimal("60.00"),
        suppress_payment_email=True,
    )

    resolved = resolver.resolve(practitioner.id, client.id)

    assert resolved.terms.lead_hours == 48
    assert resolved.vat_rate_percent == Decimal("21.00")
    assert resolved.first_consultation_amount == Decimal("60.00")
    assert resolved.suppress_payment_email is True


def test_second_practitioner_default_is_rejected(db, practitioner, per_booking_settings):
    db.add(BillingSettings(practitioner_id=practitioner.id, is_default=True, consultation_price=Decimal("5")))

    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()
