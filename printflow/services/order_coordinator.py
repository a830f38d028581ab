# printflow/services/order_coordinator.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printflow.data.models.order import OrderModel
from printflow.data.models.order_adjustment import OrderAdjustmentModel
from printflow.data.models.order_item import OrderItemModel
from printflow.domain.errors import (
    AccessDenied,
    ApprovalAlreadyUsed,
    InvalidApprovalToken,
    InvalidTransition,
    NotFound,
    OrderNotPaid,
    PermanentProviderError,
    PreconditionFailed,
    ProviderError,
    TransientProviderError,
)
from printflow.domain.status import (
    FulfillmentStatus,
    PaymentStatus,
    can_fulfill,
    can_pay,
    customer_status,
)
from printflow.repos.checkout_repo import CheckoutRepo
from printflow.repos.order_repo import OrderRepo
from printflow.repos.session_repo import SessionRepo
from printflow.services.approval_gate import ApprovalGate
from printflow.services.fulfillment_client import FulfillmentClient
from printflow.services.notification_service import StatusNotifier
from printflow.utils.logging import get_logger
from printflow.utils.retry import order_retry_at
from printflow.utils.settings import ORDER_RETRY_BASE_SECONDS, ORDER_RETRY_MAX_SECONDS

logger = get_logger(__name__)

# provider wording -> our fulfillment status
PROVIDER_STATUSES = {
    "draft": FulfillmentStatus.SUBMITTED,
    "pending": FulfillmentStatus.SUBMITTED,
    "submitted": FulfillmentStatus.SUBMITTED,
    "accepted": FulfillmentStatus.SUBMITTED,
    "inprocess": FulfillmentStatus.IN_PRODUCTION,
    "in_production": FulfillmentStatus.IN_PRODUCTION,
    "partial": FulfillmentStatus.IN_PRODUCTION,
    "onhold": FulfillmentStatus.IN_PRODUCTION,
    "fulfilled": FulfillmentStatus.SHIPPED,
    "shipped": FulfillmentStatus.SHIPPED,
    "in_transit": FulfillmentStatus.SHIPPED,
    "delivered": FulfillmentStatus.DELIVERED,
    "canceled": FulfillmentStatus.CANCELED,
    "cancelled": FulfillmentStatus.CANCELED,
}

REJECTED_MESSAGE = "The print partner could not accept this order. A refund is being reviewed."


def _now():
    return datetime.now(timezone.utc)


class OrderCoordinator:
    """
    Orders from payment confirmation to delivery.

    Payment and fulfillment are two independent state machines on the same
    row. Each write is conditional on the status it was decided from, so a
    webhook, the submission task and the reconciliation scan can race
    without one overwriting the other.
    """

    def __init__(
        self,
        db: Session,
        fulfillment_client: FulfillmentClient,
        notifier: StatusNotifier,
        approval_gate: ApprovalGate,
        retry_base_seconds: float = ORDER_RETRY_BASE_SECONDS,
        retry_max_seconds: float = ORDER_RETRY_MAX_SECONDS,
    ):
        self.db = db
        self.repo = OrderRepo(db)
        self.checkouts = CheckoutRepo(db)
        self.sessions = SessionRepo(db)
        self.fulfillment = fulfillment_client
        self.notifier = notifier
        self.approval_gate = approval_gate
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds

    # queries

    def get_order(self, order_id: str, user_id: str | None = None) -> Dict[str, Any]:
        return self._to_dict(self._get(order_id, user_id))

    def list_orders(self, user_id: str) -> List[Dict[str, Any]]:
        return [self._to_dict(o) for o in self.repo.list_by_owner(user_id)]

    def find_by_tracking_code(self, tracking_code: str) -> Dict[str, Any]:
        """Public lookup, exposes the shipment status only."""
        order = self.repo.get_by_tracking_code(tracking_code)
        if not order:
            raise NotFound("No shipment with this tracking code")
        code, message = customer_status(order.payment_status, order.fulfillment_status)
        return {
            "tracking_code": order.tracking_code,
            "tracking_url": order.tracking_url,
            "status": code,
            "status_message": message,
            "fulfillment_status": order.fulfillment_status,
            "updated_at": order.updated_at,
        }

    # payment confirmation

    def handle_payment_succeeded(self, payment_ref: str) -> Tuple[str | None, bool]:
        """
        Payment processor reported a captured payment. Returns
        ``(order_id, created)``; submission should be dispatched only when
        ``created`` is true.
        """
        checkout = self.checkouts.get_by_payment_ref(payment_ref)
        if not checkout:
            logger.warning(f"Payment {payment_ref} succeeded without a checkout, ignoring")
            return None, False

        if checkout.payment_status != PaymentStatus.PAID.value:
            if not can_pay(checkout.payment_status, PaymentStatus.PAID.value):
                logger.warning(f"Checkout {checkout.id} cannot move {checkout.payment_status} -> paid")
            elif self.checkouts.update_checkout_version(
                checkout.id, checkout.version, {"payment_status": PaymentStatus.PAID.value, "failure_code": None}
            ):
                self.checkouts.commit()
            else:
                self.checkouts.rollback()

        try:
            return self.confirm_payment(payment_ref)
        except (ApprovalAlreadyUsed, InvalidApprovalToken) as e:
            # money was captured but no order can be made from it
            self._flag_checkout(payment_ref, e.code)
            logger.error(f"Payment {payment_ref} captured without a usable approval: {e.code}")
            return None, False

    def on_payment_confirmed(self, payment_ref: str, approval_token: str | None = None) -> str:
        order_id, _ = self.confirm_payment(payment_ref, approval_token)
        return order_id

    def confirm_payment(self, payment_ref: str, approval_token: str | None = None) -> Tuple[str, bool]:
        """
        Exactly one order per payment reference. A duplicate confirmation
        returns the existing order. The approval is consumed in the same
        transaction that inserts the order.
        """
        existing = self.repo.get_by_payment_ref(payment_ref)
        if existing:
            logger.info(f"Payment {payment_ref} already confirmed as order {existing.id}")
            return existing.id, False

        checkout = self.checkouts.get_by_payment_ref(payment_ref)
        if not checkout:
            raise NotFound("No checkout for this payment")

        token = approval_token or checkout.approval_token
        claims = None
        if token:
            # the payment is captured, an expired token still counts
            claims = self.approval_gate.verify(token, check_expiry=False)
            if claims["sub"] != checkout.session_id:
                raise InvalidApprovalToken("Approval belongs to another design session")

        order = OrderModel(
            owner_id=checkout.owner_id,
            session_id=checkout.session_id,
            checkout_id=checkout.id,
            subtotal_minor=checkout.subtotal_minor,
            shipping_minor=checkout.shipping_minor,
            tax_minor=checkout.tax_minor,
            discount_minor=checkout.discount_minor,
            total_minor=checkout.total_minor,
            refunded_minor=0,
            currency=checkout.currency,
            shipping_address=checkout.shipping_address,
            payment_status=PaymentStatus.PAID.value,
            fulfillment_status=FulfillmentStatus.UNSUBMITTED.value,
            payment_ref=payment_ref,
        )
        items = [
            OrderItemModel(
                variant_id=checkout.variant_id,
                product_slug=checkout.product_slug,
                quantity=checkout.quantity,
                unit_price_minor=checkout.unit_price_minor,
                asset_id=checkout.asset_id,
            )
        ]

        try:
            if claims is not None and self.approval_gate.consume(claims) == 0:
                self.repo.rollback()
                existing = self.repo.get_by_payment_ref(payment_ref)
                if existing:
                    return existing.id, False
                raise ApprovalAlreadyUsed()
            self.repo.add_order(order, items)
            self.repo.commit()
        except IntegrityError:
            self.repo.rollback()
            existing = self.repo.get_by_payment_ref(payment_ref)
            if existing:
                logger.info(f"Payment {payment_ref} confirmed concurrently as order {existing.id}")
                return existing.id, False
            raise

        logger.info(f"Order {order.id} created for payment {payment_ref}")
        self.notifier.publish_order(order)
        return order.id, True

    # fulfillment

    def submit_to_fulfillment(self, order_id: str) -> str | None:
        """
        Submits a paid order with idempotency key = order id. Returns the
        provider reference, or None while the order stays unsubmitted.
        """
        order = self.repo.get_order(order_id)
        if not order:
            raise NotFound("Order not found")
        if order.payment_status != PaymentStatus.PAID.value:
            raise OrderNotPaid()
        if order.fulfillment_status != FulfillmentStatus.UNSUBMITTED.value:
            logger.debug(f"Order {order_id} already {order.fulfillment_status}, not submitting")
            return order.provider_order_ref
        if order.dead_lettered_at is not None:
            logger.info(f"Order {order_id} is dead-lettered, waiting for an operator")
            return None

        # the attempt is counted before calling out
        attempts = order.fulfillment_attempts + 1
        now = _now()
        rowcount = self.repo.update_order_version(
            order.id,
            {
                "fulfillment_attempts": attempts,
                "last_attempt_at": now,
                "next_retry_at": self.next_retry_at(attempts, now),
            },
            old_version=order.version,
            fulfillment_status=FulfillmentStatus.UNSUBMITTED.value,
        )
        if rowcount == 0:
            self.repo.rollback()
            logger.info(f"Order {order_id} changed before submission, dropping this attempt")
            return None
        self.repo.commit()

        try:
            provider_ref = self.fulfillment.submit_order(
                idempotency_key=order.id,
                items=self._provider_items(order),
                shipping_address=order.shipping_address,
            )
        except PermanentProviderError as e:
            logger.warning(f"Fulfillment rejected order {order_id}: {e.reason} {e.message}")
            self._reject(order_id, e.reason)
            return None
        except TransientProviderError as e:
            # ambiguous or unavailable: reconciliation reads back before retrying
            logger.warning(f"Fulfillment submission for order {order_id} failed: {e.code}")
            if self.repo.update_order_version(
                order_id,
                {"last_error_code": e.code},
                fulfillment_status=FulfillmentStatus.UNSUBMITTED.value,
            ):
                self.repo.commit()
            else:
                self.repo.rollback()
            return None

        return self.record_submission(order_id, provider_ref)

    def record_submission(self, order_id: str, provider_ref: str) -> str:
        order = self.repo.get_order(order_id)
        if not order:
            raise NotFound("Order not found")
        if order.provider_order_ref:
            if order.provider_order_ref != provider_ref:
                logger.error(
                    f"Order {order_id} has provider ref {order.provider_order_ref}, ignoring {provider_ref}"
                )
            return order.provider_order_ref

        rowcount = self.repo.update_order_version(
            order_id,
            {
                "provider_order_ref": provider_ref,
                "fulfillment_status": FulfillmentStatus.SUBMITTED.value,
                "submitted_at": _now(),
                "last_error_code": None,
            },
            fulfillment_status=FulfillmentStatus.UNSUBMITTED.value,
        )
        if rowcount:
            self.repo.commit()
            logger.info(f"Order {order_id} submitted as {provider_ref}")
            self.notifier.publish_order(self.repo.get_order(order_id))
            return provider_ref

        self.repo.rollback()
        order = self.repo.get_order(order_id)
        if order.fulfillment_status == FulfillmentStatus.CANCELED.value and not order.provider_order_ref:
            # canceled while the submission was in flight, the provider has it anyway
            if self.repo.update_order_version(
                order_id,
                {
                    "provider_order_ref": provider_ref,
                    "needs_review": True,
                    "review_reason": "canceled_after_submission",
                },
                provider_order_ref=None,
            ):
                self.repo.commit()
                logger.warning(f"Order {order_id} was canceled but the provider created {provider_ref}")
            else:
                self.repo.rollback()
        else:
            logger.info(f"Order {order_id} is {order.fulfillment_status}, provider ref {provider_ref} dropped")
        return self.repo.get_order(order_id).provider_order_ref or provider_ref

    def sync_fulfillment_status(self, order_id: str) -> bool:
        """Pulls the provider status. Provider errors propagate to the caller."""
        order = self.repo.get_order(order_id)
        if not order:
            raise NotFound("Order not found")
        if not order.provider_order_ref:
            return False
        report = self.fulfillment.get_order_status(order.provider_order_ref)
        return self._apply_report(order, report.status, report.tracking_code, report.tracking_url)

    def apply_fulfillment_update(
        self,
        provider_ref: str,
        status: str,
        tracking_code: str | None = None,
        tracking_url: str | None = None,
    ) -> str | None:
        order = self.repo.get_by_provider_ref(provider_ref)
        if not order:
            # the submission may not be recorded yet, the status sync catches up
            logger.warning(f"Fulfillment update for unknown provider order {provider_ref}")
            return None
        self._apply_report(order, status, tracking_code, tracking_url)
        return order.id

    # payment side effects

    def record_payment_refund(
        self,
        payment_ref: str,
        amount_refunded_minor: int,
        amount_minor: int | None = None,
    ) -> str | None:
        order = self.repo.get_by_payment_ref(payment_ref)
        if not order:
            logger.info(f"Refund for payment {payment_ref} without an order")
            return None
        if amount_refunded_minor <= order.refunded_minor:
            return order.id

        captured = amount_minor if amount_minor is not None else order.total_minor
        target = (
            PaymentStatus.REFUNDED
            if amount_refunded_minor >= captured
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        if not can_pay(order.payment_status, target.value):
            logger.warning(f"Order {order.id} cannot move {order.payment_status} -> {target.value}")
            return order.id

        new_data: Dict[str, Any] = {
            "payment_status": target.value,
            "refunded_minor": amount_refunded_minor,
        }
        if (
            target is PaymentStatus.REFUNDED
            and order.fulfillment_status == FulfillmentStatus.UNSUBMITTED.value
        ):
            new_data["fulfillment_status"] = FulfillmentStatus.CANCELED.value

        rowcount = self.repo.update_order_version(
            order.id,
            new_data,
            payment_status=order.payment_status,
            fulfillment_status=order.fulfillment_status,
            refunded_minor=order.refunded_minor,
        )
        if rowcount == 0:
            self.repo.rollback()
            logger.info(f"Refund update for order {order.id} lost a race, dropped")
            return order.id
        self.repo.commit()
        logger.info(f"Order {order.id} {target.value} ({amount_refunded_minor} {order.currency})")
        self.notifier.publish_order(self.repo.get_order(order.id))
        return order.id

    # user actions

    def cancel_order(self, order_id: str, user_id: str | None = None, reason: str = "customer_request"):
        order = self._get(order_id, user_id)
        current = order.fulfillment_status
        if current not in (FulfillmentStatus.UNSUBMITTED.value, FulfillmentStatus.FAILED.value):
            raise InvalidTransition("Only orders that have not reached the print partner can be canceled")
        self._ensure_not_at_provider(order)

        rowcount = self.repo.update_order_version(
            order.id,
            {"fulfillment_status": FulfillmentStatus.CANCELED.value},
            fulfillment_status=current,
        )
        if rowcount == 0:
            self.repo.rollback()
            raise InvalidTransition("Order changed while canceling, please retry")

        if order.payment_status in (PaymentStatus.PAID.value, PaymentStatus.PARTIALLY_REFUNDED.value):
            self.repo.queue_refund_review(order, reason)
        self.repo.commit()
        logger.info(f"Order {order_id} canceled: {reason}")

        order = self.repo.get_order(order_id)
        self.notifier.publish_order(order)
        return self._to_dict(order)

    def adjust_item_quantity(
        self,
        order_id: str,
        item_id: int,
        quantity_delta: int,
        reason: str,
        user_id: str | None = None,
    ):
        order = self._get(order_id, user_id)
        if order.fulfillment_status != FulfillmentStatus.UNSUBMITTED.value:
            raise InvalidTransition("Items can only be adjusted before submission")
        if quantity_delta == 0:
            raise ValueError("Quantity change must not be zero")

        item = self.repo.get_item(order.id, item_id)
        if not item:
            raise NotFound("Order item not found")
        effective = self._effective_quantity(order, item)
        if effective + quantity_delta < 1:
            raise PreconditionFailed("Quantity cannot drop below one", code="invalid_quantity")
        self._ensure_not_at_provider(order)

        rowcount = self.repo.update_order_version(
            order.id,
            {},
            old_version=order.version,
            fulfillment_status=FulfillmentStatus.UNSUBMITTED.value,
        )
        if rowcount == 0:
            self.repo.rollback()
            raise InvalidTransition("Order changed while adjusting, please retry")

        self.repo.add_adjustment(
            OrderAdjustmentModel(
                order_id=order.id,
                order_item_id=item.id,
                quantity_delta=quantity_delta,
                amount_delta_minor=quantity_delta * item.unit_price_minor,
                reason=reason,
            )
        )
        self.repo.commit()
        logger.info(f"Order {order_id} item {item_id} adjusted by {quantity_delta}")
        return self._to_dict(self.repo.get_order(order_id))

    # helpers

    def next_retry_at(self, attempts: int, now: datetime) -> datetime:
        return order_retry_at(attempts, now, self.retry_base_seconds, self.retry_max_seconds)

    def _ensure_not_at_provider(self, order: OrderModel) -> None:
        """
        A failed or timed out submission may still have created the order at
        the provider. Before changing an unsubmitted order that was already
        sent, read it back by idempotency key.
        """
        if order.fulfillment_status != FulfillmentStatus.UNSUBMITTED.value or order.fulfillment_attempts == 0:
            return
        try:
            provider_ref = self.fulfillment.find_order(order.id)
        except ProviderError as e:
            logger.warning(f"Read-back for order {order.id} failed: {e.code}")
            raise InvalidTransition(
                "The print partner has not confirmed this order yet, please try again later"
            ) from e
        if provider_ref:
            logger.info(f"Read-back found order {order.id} at the provider as {provider_ref}")
            self.record_submission(order.id, provider_ref)
            raise InvalidTransition("Order already reached the print partner")

    def _get(self, order_id: str, user_id: str | None) -> OrderModel:
        order = self.repo.get_order(order_id)
        if not order:
            raise NotFound("Order not found")
        if user_id is not None and order.owner_id != user_id:
            raise AccessDenied("Order belongs to another user")
        return order

    def _reject(self, order_id: str, reason: str):
        rowcount = self.repo.update_order_version(
            order_id,
            {
                "fulfillment_status": FulfillmentStatus.FAILED.value,
                "failure_code": reason,
                "failure_message": REJECTED_MESSAGE,
                "last_error_code": reason,
            },
            fulfillment_status=FulfillmentStatus.UNSUBMITTED.value,
        )
        if rowcount == 0:
            self.repo.rollback()
            return
        order = self.repo.get_order(order_id)
        self.repo.queue_refund_review(order, "fulfillment_rejected")
        self.repo.commit()
        self.notifier.publish_order(self.repo.get_order(order_id))

    def _apply_report(
        self,
        order: OrderModel,
        raw_status: str,
        tracking_code: str | None,
        tracking_url: str | None,
    ) -> bool:
        target = PROVIDER_STATUSES.get((raw_status or "").lower())
        if target is None:
            logger.warning(f"Unknown provider status {raw_status!r} for order {order.id}")
            return False

        current = order.fulfillment_status
        new_data: Dict[str, Any] = {}
        if tracking_code and tracking_code != order.tracking_code:
            new_data["tracking_code"] = tracking_code
            new_data["tracking_url"] = tracking_url
            if order.review_reason == "tracking_overdue":
                new_data["needs_review"] = False
                new_data["review_reason"] = None

        if target.value != current:
            if can_fulfill(current, target.value):
                new_data["fulfillment_status"] = target.value
            else:
                # stale or out of order report, never move backwards
                logger.debug(f"Order {order.id} ignores {current} -> {target.value}")

        if not new_data:
            return False

        rowcount = self.repo.update_order_version(order.id, new_data, fulfillment_status=current)
        if rowcount == 0:
            self.repo.rollback()
            logger.info(f"Fulfillment update for order {order.id} lost a race, dropped")
            return False

        if new_data.get("fulfillment_status") == FulfillmentStatus.CANCELED.value:
            logger.warning(f"Provider canceled order {order.id}")
            self.repo.queue_refund_review(order, "provider_canceled")
        self.repo.commit()
        logger.info(f"Order {order.id} fulfillment {current} -> {new_data.get('fulfillment_status', current)}")
        self.notifier.publish_order(self.repo.get_order(order.id))
        return True

    def _flag_checkout(self, payment_ref: str, code: str):
        checkout = self.checkouts.get_by_payment_ref(payment_ref)
        if checkout and self.checkouts.update_checkout_version(
            checkout.id, checkout.version, {"failure_code": code}
        ):
            self.checkouts.commit()
        else:
            self.checkouts.rollback()

    @staticmethod
    def _effective_quantity(order: OrderModel, item: OrderItemModel) -> int:
        return item.quantity + sum(
            a.quantity_delta for a in order.adjustments if a.order_item_id == item.id
        )

    def _provider_items(self, order: OrderModel) -> List[Dict[str, Any]]:
        items = []
        for item in order.items:
            asset = self.sessions.get_asset(item.asset_id) if item.asset_id else None
            items.append({
                "variant_id": item.variant_id,
                "product_slug": item.product_slug,
                "quantity": self._effective_quantity(order, item),
                "file_url": asset.preview_url if asset else None,
            })
        return items

    def _to_dict(self, order: OrderModel) -> Dict[str, Any]:
        code, message = customer_status(order.payment_status, order.fulfillment_status)
        adjustments_minor = sum(a.amount_delta_minor for a in order.adjustments)
        return {
            "id": order.id,
            "session_id": order.session_id,
            "status": code,
            "status_message": message,
            "payment_status": order.payment_status,
            "fulfillment_status": order.fulfillment_status,
            "items": [
                {
                    "id": item.id,
                    "variant_id": item.variant_id,
                    "product_slug": item.product_slug,
                    "quantity": self._effective_quantity(order, item),
                    "unit_price_minor": item.unit_price_minor,
                    "asset_id": item.asset_id,
                }
                for item in order.items
            ],
            "subtotal_minor": order.subtotal_minor,
            "shipping_minor": order.shipping_minor,
            "tax_minor": order.tax_minor,
            "discount_minor": order.discount_minor,
            "total_minor": order.total_minor,
            "adjustments_minor": adjustments_minor,
            "refunded_minor": order.refunded_minor,
            "currency": order.currency,
            "tracking_code": order.tracking_code,
            "tracking_url": order.tracking_url,
            "failure_code": order.failure_code,
            "failure_message": order.failure_message,
            "created_at": order.created_at,
            "updated_at": order.updated_at,
        }
