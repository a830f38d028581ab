# printflow/domain/status.py
from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class FulfillmentStatus(str, Enum):
    UNSUBMITTED = "unsubmitted"
    SUBMITTED = "submitted"
    IN_PRODUCTION = "in_production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELED = "canceled"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    # a later success on the same intent (customer retried with another card) wins
    PaymentStatus.FAILED: {PaymentStatus.PAID},
    PaymentStatus.REFUNDED: set(),
}

FULFILLMENT_TRANSITIONS = {
    FulfillmentStatus.UNSUBMITTED: {
        FulfillmentStatus.SUBMITTED,
        FulfillmentStatus.FAILED,
        FulfillmentStatus.CANCELED,
    },
    FulfillmentStatus.SUBMITTED: {
        FulfillmentStatus.IN_PRODUCTION,
        FulfillmentStatus.SHIPPED,
        FulfillmentStatus.DELIVERED,
        FulfillmentStatus.CANCELED,
    },
    FulfillmentStatus.IN_PRODUCTION: {
        FulfillmentStatus.SHIPPED,
        FulfillmentStatus.DELIVERED,
        FulfillmentStatus.CANCELED,
    },
    FulfillmentStatus.SHIPPED: {FulfillmentStatus.DELIVERED, FulfillmentStatus.CANCELED},
    FulfillmentStatus.FAILED: {FulfillmentStatus.CANCELED},
    FulfillmentStatus.DELIVERED: set(),
    FulfillmentStatus.CANCELED: set(),
}

# statuses that only exist together with a provider order reference
PROVIDER_BACKED = {
    FulfillmentStatus.SUBMITTED,
    FulfillmentStatus.IN_PRODUCTION,
    FulfillmentStatus.SHIPPED,
    FulfillmentStatus.DELIVERED,
}


def can_pay(current: str, target: str) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def can_fulfill(current: str, target: str) -> bool:
    return FulfillmentStatus(target) in FULFILLMENT_TRANSITIONS[FulfillmentStatus(current)]


def customer_status(payment_status: str, fulfillment_status: str) -> tuple[str, str]:
    """
    Single customer facing status derived from the payment and fulfillment
    pair. Returns ``(code, message)``; nothing here is ever stored.
    """
    payment = PaymentStatus(payment_status)
    fulfillment = FulfillmentStatus(fulfillment_status)

    if payment is PaymentStatus.FAILED:
        return "payment_failed", "Payment failed"
    if fulfillment is FulfillmentStatus.CANCELED:
        return "canceled", "Order canceled"
    if payment is PaymentStatus.REFUNDED:
        return "refunded", "Order refunded"
    if payment in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        return "awaiting_payment", "Waiting for payment confirmation"

    # paid or partially refunded
    if fulfillment is FulfillmentStatus.UNSUBMITTED:
        return "processing", "Processing your order"
    if fulfillment in (FulfillmentStatus.SUBMITTED, FulfillmentStatus.IN_PRODUCTION):
        return "in_production", "In production"
    if fulfillment is FulfillmentStatus.SHIPPED:
        return "shipped", "Shipped"
    if fulfillment is FulfillmentStatus.DELIVERED:
        return "delivered", "Delivered"
    return "fulfillment_issue", "Payment captured, fulfillment issue, retry in progress"
