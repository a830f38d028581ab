# printflow/services/checkout_service.py
from typing import Any, Dict

from sqlalchemy.orm import Session

from printflow.data.models.checkout import CheckoutModel
from printflow.domain.errors import AccessDenied, ApprovalAlreadyUsed, NotFound, ProviderError
from printflow.domain.status import FulfillmentStatus, PaymentStatus, can_pay, customer_status
from printflow.repos.checkout_repo import CheckoutRepo
from printflow.repos.order_repo import OrderRepo
from printflow.repos.session_repo import SessionRepo
from printflow.services.approval_gate import ApprovalGate
from printflow.services.catalog_client import CatalogClient
from printflow.services.payment_client import PaymentClient
from printflow.utils.logging import get_logger
from printflow.utils.settings import CURRENCY, SHIPPING_FLAT_MINOR, TAX_RATE_BPS

logger = get_logger(__name__)


def tax_for(subtotal_minor: int, rate_bps: int = TAX_RATE_BPS) -> int:
    # basis points, half up
    return (subtotal_minor * rate_bps + 5000) // 10000


class CheckoutService:
    """
    Prices a purchase and opens a payment intent for it.

    The checkout row is written before the payment processor is called and
    its id is the idempotency key of the intent, so a repeated request
    never creates a second charge for the same checkout.
    """

    def __init__(
        self,
        db: Session,
        catalog_client: CatalogClient,
        payment_client: PaymentClient,
        approval_gate: ApprovalGate,
    ):
        self.repo = CheckoutRepo(db)
        self.orders = OrderRepo(db)
        self.sessions = SessionRepo(db)
        self.catalog = catalog_client
        self.payments = payment_client
        self.approval_gate = approval_gate

    def create_checkout(
        self,
        shipping_address: Dict[str, Any],
        quantity: int = 1,
        approval_token: str | None = None,
        variant_id: int | None = None,
        product_slug: str | None = None,
        user_id: str | None = None,
    ) -> Dict[str, Any]:
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")

        session_id = None
        asset_id = None
        owner_id = user_id
        if approval_token:
            claims = self.approval_gate.verify(approval_token)
            session = self.sessions.get_session(claims["sub"])
            if session.approval_consumed_at is not None:
                raise ApprovalAlreadyUsed()
            if user_id is not None and session.owner_id not in (None, user_id):
                raise AccessDenied("Design belongs to another user")
            session_id = session.id
            asset_id = claims["asset"]
            product_slug = claims["product"]
            variant_id = claims["variant"]
            owner_id = owner_id or session.owner_id
        elif variant_id is None or not product_slug:
            raise ValueError("Either an approval token or a product variant is required")

        variant = self.catalog.fetch_variant(variant_id)
        unit_price = int(variant["price_minor"])
        currency = (variant.get("currency") or CURRENCY).lower()

        subtotal = unit_price * quantity
        shipping = SHIPPING_FLAT_MINOR
        tax = tax_for(subtotal)
        discount = 0
        total = subtotal + shipping + tax - discount

        checkout = self.repo.create_checkout(
            CheckoutModel(
                owner_id=owner_id,
                session_id=session_id,
                approval_token=approval_token,
                product_slug=product_slug,
                variant_id=variant_id,
                asset_id=asset_id,
                quantity=quantity,
                unit_price_minor=unit_price,
                subtotal_minor=subtotal,
                shipping_minor=shipping,
                tax_minor=tax,
                discount_minor=discount,
                total_minor=total,
                currency=currency,
                shipping_address=shipping_address,
                payment_status=PaymentStatus.PENDING.value,
            )
        )

        try:
            intent = self.payments.create_payment_intent(
                amount_minor=total,
                currency=currency,
                idempotency_key=checkout.id,
                metadata={"checkout_id": checkout.id, "session_id": session_id or ""},
            )
        except ProviderError as e:
            self._set(checkout, {"payment_status": PaymentStatus.FAILED.value, "failure_code": e.code})
            raise

        if not self._set(checkout, {"payment_ref": intent.payment_ref}):
            raise RuntimeError(f"Checkout {checkout.id} changed while opening its payment")

        logger.info(f"Checkout {checkout.id} opened, {total} {currency}, payment {intent.payment_ref}")
        return {
            "checkout_id": checkout.id,
            "payment_ref": intent.payment_ref,
            "client_secret": intent.client_secret,
            "subtotal_minor": subtotal,
            "shipping_minor": shipping,
            "tax_minor": tax,
            "discount_minor": discount,
            "total_minor": total,
            "currency": currency,
        }

    def get_checkout(self, checkout_id: str, user_id: str | None = None) -> Dict[str, Any]:
        checkout = self.repo.get_checkout(checkout_id)
        if not checkout:
            raise NotFound("Checkout not found")
        if user_id is not None and checkout.owner_id not in (None, user_id):
            raise AccessDenied("Checkout belongs to another user")

        order = self.orders.get_by_payment_ref(checkout.payment_ref) if checkout.payment_ref else None
        if order:
            code, message = customer_status(order.payment_status, order.fulfillment_status)
        else:
            code, message = customer_status(checkout.payment_status, FulfillmentStatus.UNSUBMITTED.value)
        return {
            "checkout_id": checkout.id,
            "payment_status": checkout.payment_status,
            "failure_code": checkout.failure_code,
            "order_id": order.id if order else None,
            "status": code,
            "status_message": message,
            "total_minor": checkout.total_minor,
            "currency": checkout.currency,
        }

    # payment processor callbacks before an order exists

    def mark_processing(self, payment_ref: str) -> str | None:
        return self._move(payment_ref, PaymentStatus.PROCESSING, None)

    def mark_failed(self, payment_ref: str, failure_code: str | None) -> str | None:
        return self._move(payment_ref, PaymentStatus.FAILED, failure_code or "payment_failed")

    def _move(self, payment_ref: str, target: PaymentStatus, failure_code: str | None) -> str | None:
        checkout = self.repo.get_by_payment_ref(payment_ref)
        if not checkout:
            logger.warning(f"Payment event for unknown intent {payment_ref}")
            return None
        if not can_pay(checkout.payment_status, target.value):
            logger.info(f"Checkout {checkout.id} ignores {checkout.payment_status} -> {target.value}")
            return checkout.id

        new_data: Dict[str, Any] = {"payment_status": target.value}
        if failure_code:
            new_data["failure_code"] = failure_code
        if self._set(checkout, new_data):
            logger.info(f"Checkout {checkout.id} payment {target.value}")
        return checkout.id

    def _set(self, checkout: CheckoutModel, new_data: Dict[str, Any]) -> bool:
        rowcount = self.repo.update_checkout_version(checkout.id, checkout.version, new_data)
        if rowcount == 0:
            self.repo.rollback()
            logger.info(f"Checkout {checkout.id} changed concurrently, update dropped")
            return False
        self.repo.commit()
        return True
