"""
Shared pytest fixtures.

Every test runs inside one outer transaction on a shared in-memory SQLite
connection. Services commit as usual; those commits only release
savepoints, and the outer transaction is rolled back at teardown.
"""

from datetime import datetime, timezone
from decimal import Decimal
import os
from typing import Callable, Generator

os.environ.setdefault("CI", "1")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SITE_MODE", "local")

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from consultflow.api.dependencies import services as service_deps
from consultflow.database import Base
from consultflow.main import app
import consultflow.models  # noqa: F401  registers every table
from consultflow.models.billing_settings import BillingSettings
from consultflow.models.practitioner import Client, Practitioner
from consultflow.services.booking_orchestrator import BookingOrchestrator
from consultflow.services.cancellation_refund_service import CancellationRefundService
from consultflow.services.checkout_service import CheckoutService
from consultflow.services.invoice_aggregator import InvoiceAggregator
from consultflow.services.invoice_service import InvoiceService
from consultflow.services.payment_email_scheduler import PaymentEmailScheduler
from consultflow.services.payment_webhook_reconciler import PaymentWebhookReconciler
from tests.factories.billing_factories import make_billing_settings, make_client, make_practitioner
from tests.helpers.fakes import (
    FakeAnalytics,
    FakeCalendar,
    FakeNotifier,
    FakePaymentProcessor,
    FakePdfGenerator,
    FixedClock,
)

NOW = datetime(2025, 1, 8, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(test_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        # pysqlite otherwise issues its own BEGIN/COMMIT and SAVEPOINTs stop nesting
        dbapi_connection.isolation_level = None

    @event.listens_for(test_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def connection(engine: Engine) -> Generator[Connection, None, None]:
    conn = engine.connect()
    outer = conn.begin()
    try:
        yield conn
    finally:
        outer.rollback()
        conn.close()


@pytest.fixture
def session_factory(connection: Connection) -> Callable[[], Session]:
    """Builds extra sessions that share the test transaction (used by Celery task tests)."""

    def factory() -> Session:
        return Session(bind=connection, join_transaction_mode="create_savepoint", expire_on_commit=False)

    return factory


@pytest.fixture
def db(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


# ========== Fakes ==========


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def analytics() -> FakeAnalytics:
    return FakeAnalytics()


@pytest.fixture
def pdf_generator() -> FakePdfGenerator:
    return FakePdfGenerator()


# ========== Parties ==========


@pytest.fixture
def practitioner(db: Session) -> Practitioner:
    return make_practitioner(db)


@pytest.fixture
def client(db: Session, practitioner: Practitioner) -> Client:
    return make_client(db, practitioner)


@pytest.fixture
def per_booking_settings(db: Session, practitioner: Practitioner) -> BillingSettings:
    """Practitioner default: 100 EUR per booking, payment email immediately."""
    return make_billing_settings(db, practitioner, consultation_price=Decimal("100.00"))


@pytest.fixture
def monthly_settings(db: Session, practitioner: Practitioner, client: Client) -> BillingSettings:
    return make_billing_settings(
        db,
        practitioner,
        client=client,
        billing_type="monthly",
        consultation_price=Decimal("80.00"),
    )


# ========== Services ==========


@pytest.fixture
def invoice_service(db: Session, pdf_generator: FakePdfGenerator, clock: FixedClock) -> InvoiceService:
    return InvoiceService(db, pdf_generator=pdf_generator, clock=clock)


@pytest.fixture
def orchestrator(
    db: Session, notifier: FakeNotifier, calendar: FakeCalendar, analytics: FakeAnalytics, clock: FixedClock
) -> BookingOrchestrator:
    return BookingOrchestrator(db, notifier, calendar, analytics=analytics, clock=clock)


@pytest.fixture
def checkout_service(
    db: Session, processor: FakePaymentProcessor, invoice_service: InvoiceService, clock: FixedClock
) -> CheckoutService:
    return CheckoutService(db, processor, invoice_service=invoice_service, clock=clock)


@pytest.fixture
def reconciler(
    db: Session,
    processor: FakePaymentProcessor,
    notifier: FakeNotifier,
    calendar: FakeCalendar,
    analytics: FakeAnalytics,
    invoice_service: InvoiceService,
    clock: FixedClock,
) -> PaymentWebhookReconciler:
    return PaymentWebhookReconciler(
        db, processor, notifier, calendar, analytics=analytics, invoice_service=invoice_service, clock=clock
    )


@pytest.fixture
def refund_service(
    db: Session,
    processor: FakePaymentProcessor,
    notifier: FakeNotifier,
    calendar: FakeCalendar,
    invoice_service: InvoiceService,
    clock: FixedClock,
) -> CancellationRefundService:
    return CancellationRefundService(
        db, processor, notifier=notifier, calendar=calendar, invoice_service=invoice_service, clock=clock
    )


@pytest.fixture
def scheduler(db: Session, notifier: FakeNotifier, clock: FixedClock) -> PaymentEmailScheduler:
    return PaymentEmailScheduler(db, notifier, clock=clock)


@pytest.fixture
def aggregator(
    db: Session, invoice_service: InvoiceService, notifier: FakeNotifier, clock: FixedClock
) -> InvoiceAggregator:
    return InvoiceAggregator(db, invoice_service=invoice_service, notifier=notifier, clock=clock)


# ========== API ==========


@pytest.fixture
def api_client(
    orchestrator: BookingOrchestrator,
    checkout_service: CheckoutService,
    reconciler: PaymentWebhookReconciler,
    refund_service: CancellationRefundService,
    scheduler: PaymentEmailScheduler,
    aggregator: InvoiceAggregator,
) -> Generator[TestClient, None, None]:
    """TestClient whose service dependencies are the fake-backed fixtures above."""
    app.dependency_overrides.update(
        {
            service_deps.get_booking_orchestrator: lambda: orchestrator,
            service_deps.get_checkout_service: lambda: checkout_service,
            service_deps.get_webhook_reconciler: lambda: reconciler,
            service_deps.get_cancellation_refund_service: lambda: refund_service,
            service_deps.get_payment_email_scheduler: lambda: scheduler,
            service_deps.get_invoice_aggregator: lambda: aggregator,
        }
    )
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
