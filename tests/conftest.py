"""
Shared fixtures for the reconciler tests.

Every test gets a fresh in-memory SQLite database and fake gateway,
carrier and email collaborators. Nothing here talks to the network.
"""
import os

# Settings are read once at import time; configure before importing reconciler
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_TO_FILE"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["NINJAVAN_CLIENT_ID"] = "test-client"
os.environ["NINJAVAN_CLIENT_SECRET"] = "test-client-secret"
os.environ["DRAGONPAY_MERCHANT_ID"] = "TESTMERCHANT"
os.environ["DRAGONPAY_SECRET_KEY"] = "test-secret"
os.environ["SMTP_HOST"] = ""

import pytest

from reconciler.models.base import Base, SessionLocal, engine, init_db
from reconciler.services.notification_service import LoggingEmailSender, NotificationDispatcher
from reconciler.services.order_service import OrderService
from reconciler.services.outbox_service import OutboxProcessor
from reconciler.services.shipment_service import ShipmentService

from support import FakeCarrier, FakeGateway


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def email():
    return LoggingEmailSender()


@pytest.fixture
def dispatcher(email):
    return NotificationDispatcher(sender=email)


@pytest.fixture
def shipments(db, carrier):
    return ShipmentService(db, connector=carrier)


@pytest.fixture
def orders(db, gateway, shipments):
    return OrderService(db, gateway=gateway, shipment_service=shipments)


@pytest.fixture
def outbox(db, shipments, dispatcher):
    return OutboxProcessor(db, shipment_service=shipments, dispatcher=dispatcher)


# ────────────────────────────────────────────
# API
# ────────────────────────────────────────────


class OutboxKick:
    """Stands in for the background outbox drain; counts how often it is scheduled"""

    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1


@pytest.fixture
def kicker():
    return OutboxKick()


@pytest.fixture
def client(db, gateway, carrier, dispatcher, kicker):
    from fastapi.testclient import TestClient

    from reconciler.api import deps
    from reconciler.main import app
    from reconciler.models.base import get_db
    from reconciler.services.reconciliation_service import ReconciliationService

    poller = ReconciliationService(gateway=gateway, session_factory=lambda: db)
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[deps.get_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_carrier] = lambda: carrier
    app.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[deps.get_reconciler] = lambda: poller
    app.dependency_overrides[deps.get_outbox_kicker] = lambda: kicker
    try:
        # No context manager: the lifespan (scheduler, init_db) stays off
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
