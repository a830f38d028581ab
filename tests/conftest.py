# tests/conftest.py
import os

# settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APPROVAL_TOKEN_SECRET"] = "test-approval-secret"
os.environ["SHIPPING_FLAT_MINOR"] = "499"
os.environ["TAX_RATE_BPS"] = "0"

import pytest
from fastapi.testclient import TestClient

from printflow.api import create_app
from printflow.api import deps
from printflow.data import models  # noqa: F401
from printflow.data.database import Base, SessionLocal, engine, get_db
from printflow.services.approval_gate import ApprovalGate
from printflow.services.checkout_service import CheckoutService
from printflow.services.generation_worker import GenerationWorker
from printflow.services.notification_service import StatusNotifier
from printflow.services.order_coordinator import OrderCoordinator
from printflow.services.reconciliation import ReconciliationEngine
from tests.fakes import (
    ADDRESS,
    FakeCatalogClient,
    FakeDispatcher,
    FakeEventBus,
    FakeFulfillmentClient,
    FakeGenerationClient,
    FakePaymentClient,
)

@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def bus():
    return FakeEventBus()


@pytest.fixture
def notifier(db, bus):
    return StatusNotifier(db, bus)


@pytest.fixture
def generation_client():
    return FakeGenerationClient()


@pytest.fixture
def fulfillment():
    return FakeFulfillmentClient()


@pytest.fixture
def catalog():
    return FakeCatalogClient()


@pytest.fixture
def payments():
    return FakePaymentClient()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def worker(db, generation_client, notifier):
    return GenerationWorker(
        db,
        generation_client,
        notifier,
        max_attempts=3,
        backoff=0,
        max_retries=3,
        poll_interval=0,
    )


@pytest.fixture
def gate(db, notifier):
    return ApprovalGate(db, notifier)


@pytest.fixture
def checkout_service(db, catalog, payments, gate):
    return CheckoutService(db, catalog, payments, gate)


@pytest.fixture
def coordinator(db, fulfillment, notifier, gate):
    return OrderCoordinator(db, fulfillment, notifier, gate, retry_base_seconds=0)


@pytest.fixture
def reconciler(db, coordinator, fulfillment, notifier):
    return ReconciliationEngine(
        db,
        coordinator,
        fulfillment,
        notifier,
        grace_seconds=0,
        tracking_sla_seconds=3600,
        max_attempts=3,
    )


@pytest.fixture
def ready_session(worker):
    """A finished design with a product selected."""
    session = worker.create_session("blue wave pattern", ["minimal"], "en", "user-1")
    worker.run(session["session_id"], budget_seconds=5)
    worker.configure_product(session["session_id"], "classic-tee", 101)
    return session["session_id"]


@pytest.fixture
def approval_token(gate, ready_session):
    return gate.approve(ready_session, consent=True, user_id="user-1")["approval_token"]


@pytest.fixture
def paid_order(checkout_service, coordinator, approval_token):
    checkout = checkout_service.create_checkout(ADDRESS, approval_token=approval_token, user_id="user-1")
    order_id, created = coordinator.handle_payment_succeeded(checkout["payment_ref"])
    assert created
    return order_id


@pytest.fixture
def client(db, bus, generation_client, fulfillment, catalog, payments, dispatcher):
    app = create_app()
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[deps.get_event_bus] = lambda: bus
    app.dependency_overrides[deps.get_generation_client] = lambda: generation_client
    app.dependency_overrides[deps.get_fulfillment_client] = lambda: fulfillment
    app.dependency_overrides[deps.get_catalog_client] = lambda: catalog
    app.dependency_overrides[deps.get_payment_client] = lambda: payments
    app.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher
    with TestClient(app) as c:
        yield c
