# printflow/tasks/fulfillment.py
from printflow.celery_worker import celery_app
from printflow.data.database import SessionLocal
from printflow.services.approval_gate import ApprovalGate
from printflow.services.fulfillment_client import FulfillmentClient
from printflow.services.notification_service import StatusNotifier
from printflow.services.order_coordinator import OrderCoordinator
from printflow.services.reconciliation import ReconciliationEngine
from printflow.utils.logging import get_logger

logger = get_logger(__name__)


def _coordinator(db, client: FulfillmentClient) -> OrderCoordinator:
    notifier = StatusNotifier(db)
    return OrderCoordinator(db, client, notifier, ApprovalGate(db, notifier))


@celery_app.task(name="printflow.tasks.fulfillment.submit_order_task")
def submit_order_task(order_id: str):
    logger.info(f"Submit task started for order {order_id}")

    db = SessionLocal()
    try:
        return _coordinator(db, FulfillmentClient()).submit_to_fulfillment(order_id)
    finally:
        db.close()


@celery_app.task(name="printflow.tasks.fulfillment.reconcile_orders_task")
def reconcile_orders_task():
    logger.info("Reconcile orders task started")

    db = SessionLocal()
    try:
        client = FulfillmentClient()
        coordinator = _coordinator(db, client)
        engine = ReconciliationEngine(db, coordinator, client, coordinator.notifier)
        return engine.run_once()
    finally:
        db.close()
