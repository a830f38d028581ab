# printflow/api/deps.py
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from printflow.data.database import get_db
from printflow.services.approval_gate import ApprovalGate
from printflow.services.catalog_client import CatalogClient
from printflow.services.checkout_service import CheckoutService
from printflow.services.fulfillment_client import FulfillmentClient
from printflow.services.generation_client import GenerationClient
from printflow.services.generation_worker import GenerationWorker
from printflow.services.notification_service import RedisEventBus, StatusNotifier
from printflow.services.order_coordinator import OrderCoordinator
from printflow.services.payment_client import PaymentClient
from printflow.services.reconciliation import ReconciliationEngine
from printflow.tasks.dispatch import TaskDispatcher


# providers, overridden in tests

@lru_cache
def get_event_bus():
    return RedisEventBus()


def get_generation_client():
    return GenerationClient()


def get_fulfillment_client():
    return FulfillmentClient()


def get_catalog_client():
    return CatalogClient()


def get_payment_client():
    return PaymentClient()


def get_dispatcher():
    return TaskDispatcher()


# services

def get_notifier(db: Session = Depends(get_db), bus=Depends(get_event_bus)) -> StatusNotifier:
    return StatusNotifier(db, bus)


def get_generation_worker(
    db: Session = Depends(get_db),
    client=Depends(get_generation_client),
    notifier: StatusNotifier = Depends(get_notifier),
) -> GenerationWorker:
    return GenerationWorker(db, client, notifier)


def get_approval_gate(
    db: Session = Depends(get_db),
    notifier: StatusNotifier = Depends(get_notifier),
) -> ApprovalGate:
    return ApprovalGate(db, notifier)


def get_checkout_service(
    db: Session = Depends(get_db),
    catalog=Depends(get_catalog_client),
    payments=Depends(get_payment_client),
    gate: ApprovalGate = Depends(get_approval_gate),
) -> CheckoutService:
    return CheckoutService(db, catalog, payments, gate)


def get_order_coordinator(
    db: Session = Depends(get_db),
    fulfillment=Depends(get_fulfillment_client),
    notifier: StatusNotifier = Depends(get_notifier),
    gate: ApprovalGate = Depends(get_approval_gate),
) -> OrderCoordinator:
    return OrderCoordinator(db, fulfillment, notifier, gate)


def get_reconciliation(
    db: Session = Depends(get_db),
    coordinator: OrderCoordinator = Depends(get_order_coordinator),
    fulfillment=Depends(get_fulfillment_client),
    notifier: StatusNotifier = Depends(get_notifier),
) -> ReconciliationEngine:
    return ReconciliationEngine(db, coordinator, fulfillment, notifier)
