# printflow/services/reconciliation.py
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from printflow.domain.errors import InvalidTransition, NotFound, PipelineError, ProviderError
from printflow.domain.status import FulfillmentStatus
from printflow.repos.checkout_repo import CheckoutRepo
from printflow.repos.order_repo import OrderRepo
from printflow.services.fulfillment_client import FulfillmentClient
from printflow.services.notification_service import StatusNotifier
from printflow.services.order_coordinator import OrderCoordinator
from printflow.utils.logging import get_logger
from printflow.utils.settings import (
    ORDER_MAX_ATTEMPTS,
    RECONCILE_GRACE_SECONDS,
    TRACKING_SLA_SECONDS,
)

logger = get_logger(__name__)


class ReconciliationEngine:
    """
    Periodic repair of orders whose submission outcome is unknown.

    Paid orders still unsubmitted after the grace period are read back from
    the provider by idempotency key before anything is resubmitted, once
    their backoff (``next_retry_at``) has elapsed. Orders that keep failing
    are dead-lettered and stay visible to operators.
    """

    def __init__(
        self,
        db: Session,
        coordinator: OrderCoordinator,
        fulfillment_client: FulfillmentClient,
        notifier: StatusNotifier,
        grace_seconds: int = RECONCILE_GRACE_SECONDS,
        tracking_sla_seconds: int = TRACKING_SLA_SECONDS,
        max_attempts: int = ORDER_MAX_ATTEMPTS,
    ):
        self.repo = OrderRepo(db)
        self.checkouts = CheckoutRepo(db)
        self.coordinator = coordinator
        self.fulfillment = fulfillment_client
        self.notifier = notifier
        self.grace = timedelta(seconds=grace_seconds)
        self.tracking_sla = timedelta(seconds=tracking_sla_seconds)
        self.max_attempts = max_attempts

    def run_once(self, now: datetime | None = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        summary = {
            "submitted": 0,
            "recovered": 0,
            "deferred": 0,
            "dead_lettered": 0,
            "synced": 0,
            "flagged": 0,
        }

        for order_id in [o.id for o in self.repo.find_unsubmitted_paid(now - self.grace, now)]:
            try:
                summary[self._reconcile_unsubmitted(order_id, now)] += 1
            except PipelineError as e:
                logger.warning(f"Reconciling order {order_id} failed: {e.code}")
                summary["deferred"] += 1

        for order_id in [o.id for o in self.repo.find_in_flight()]:
            try:
                if self.coordinator.sync_fulfillment_status(order_id):
                    summary["synced"] += 1
            except ProviderError as e:
                logger.warning(f"Status sync for order {order_id} failed: {e.code}")

        for order_id in [o.id for o in self.repo.find_missing_tracking(now - self.tracking_sla)]:
            if self._flag(order_id, "tracking_overdue"):
                summary["flagged"] += 1

        logger.info(f"Reconciliation finished: {summary}")
        return summary

    def _reconcile_unsubmitted(self, order_id: str, now: datetime) -> str:
        order = self.repo.get_order(order_id)
        if order.fulfillment_attempts >= self.max_attempts:
            self.dead_letter(order_id, "max_attempts")
            return "dead_lettered"

        try:
            provider_ref = self.fulfillment.find_order(order.id)
        except ProviderError as e:
            # a failed read-back counts as an attempt, nothing is submitted blind
            logger.warning(f"Read-back for order {order_id} failed: {e.code}")
            attempts = order.fulfillment_attempts + 1
            if self.repo.update_order_version(
                order_id,
                {
                    "fulfillment_attempts": attempts,
                    "last_attempt_at": now,
                    "next_retry_at": self.coordinator.next_retry_at(attempts, now),
                    "last_error_code": e.code,
                },
                old_version=order.version,
                fulfillment_status=FulfillmentStatus.UNSUBMITTED.value,
            ):
                self.repo.commit()
            else:
                self.repo.rollback()
            return "deferred"

        if provider_ref:
            logger.info(f"Read-back found order {order_id} at the provider as {provider_ref}")
            self.coordinator.record_submission(order_id, provider_ref)
            return "recovered"

        if self.coordinator.submit_to_fulfillment(order_id):
            return "submitted"
        return "deferred"

    def dead_letter(self, order_id: str, reason: str) -> bool:
        rowcount = self.repo.update_order_version(
            order_id,
            {"dead_lettered_at": datetime.now(timezone.utc), "dead_letter_reason": reason},
            fulfillment_status=FulfillmentStatus.UNSUBMITTED.value,
            dead_lettered_at=None,
        )
        if rowcount == 0:
            self.repo.rollback()
            return False
        self.repo.commit()
        order = self.repo.get_order(order_id)
        logger.error(
            f"Order {order_id} dead-lettered after {order.fulfillment_attempts} attempts: "
            f"{reason} (last error {order.last_error_code})"
        )
        self.notifier.publish_order(order)
        return True

    def _flag(self, order_id: str, reason: str) -> bool:
        rowcount = self.repo.update_order_version(
            order_id,
            {"needs_review": True, "review_reason": reason},
            needs_review=False,
        )
        if rowcount == 0:
            self.repo.rollback()
            return False
        self.repo.commit()
        logger.warning(f"Order {order_id} flagged for review: {reason}")
        return True

    # operator surface

    def list_retries(self) -> List[Dict[str, Any]]:
        entries = []
        for order in self.repo.find_attention():
            if order.dead_lettered_at is not None:
                status = "dead_lettered"
            elif order.needs_review:
                status = "needs_review"
            else:
                status = "failed"
            entries.append({
                "id": order.id,
                "kind": "order",
                "status": status,
                "operation_type": (
                    "tracking_sync" if order.review_reason == "tracking_overdue" else "fulfillment_submission"
                ),
                "attempts": order.fulfillment_attempts,
                "max_attempts": self.max_attempts,
                "next_retry_at": order.next_retry_at if order.dead_lettered_at is None else None,
                "last_error": order.last_error_code or order.failure_code or order.review_reason,
                "external_ref": order.provider_order_ref or order.payment_ref,
                "created_at": order.created_at,
                "updated_at": order.updated_at,
            })

        for checkout in self.checkouts.find_flagged_paid():
            entries.append({
                "id": checkout.id,
                "kind": "checkout",
                "status": "needs_review",
                "operation_type": "order_creation",
                "attempts": 1,
                "max_attempts": 1,
                "next_retry_at": None,
                "last_error": checkout.failure_code,
                "external_ref": checkout.payment_ref,
                "created_at": checkout.created_at,
                "updated_at": checkout.created_at,
            })
        return entries

    def requeue(self, order_id: str) -> Dict[str, Any]:
        """
        Returns a dead-lettered order to the automatic retries, or
        acknowledges a review flag.
        """
        order = self.repo.get_order(order_id)
        if not order:
            raise NotFound("Order not found")

        if order.dead_lettered_at is not None:
            rowcount = self.repo.update_order_version(
                order_id,
                {
                    "dead_lettered_at": None,
                    "dead_letter_reason": None,
                    "fulfillment_attempts": 0,
                    "next_retry_at": None,
                    "last_error_code": None,
                },
                old_version=order.version,
            )
        elif order.needs_review:
            rowcount = self.repo.update_order_version(
                order_id,
                {"needs_review": False, "review_reason": None},
                old_version=order.version,
            )
        else:
            raise InvalidTransition("Only dead-lettered or flagged orders can be requeued")

        if rowcount == 0:
            self.repo.rollback()
            raise InvalidTransition("Order changed, reload and try again")
        self.repo.commit()
        logger.info(f"Order {order_id} requeued by an operator")
        return self.coordinator.get_order(order_id)

    def cancel(self, order_id: str) -> Dict[str, Any]:
        return self.coordinator.cancel_order(order_id, reason="operator_canceled")
