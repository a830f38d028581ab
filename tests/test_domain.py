# tests/test_domain.py
import pytest

from printflow.domain.errors import AmbiguousOutcome, PermanentProviderError, TransientProviderError
from printflow.domain.stages import Stage, is_terminal, next_stage, stage_index
from printflow.domain.status import can_fulfill, can_pay, customer_status
from printflow.services.checkout_service import tax_for


@pytest.mark.parametrize(
    "payment, fulfillment, expected",
    [
        ("paid", "unsubmitted", ("processing", "Processing your order")),
        ("paid", "submitted", ("in_production", "In production")),
        ("paid", "in_production", ("in_production", "In production")),
        ("paid", "shipped", ("shipped", "Shipped")),
        ("paid", "delivered", ("delivered", "Delivered")),
        ("paid", "failed", ("fulfillment_issue", "Payment captured, fulfillment issue, retry in progress")),
        ("failed", "unsubmitted", ("payment_failed", "Payment failed")),
        ("failed", "canceled", ("payment_failed", "Payment failed")),
        ("pending", "unsubmitted", ("awaiting_payment", "Waiting for payment confirmation")),
        ("processing", "unsubmitted", ("awaiting_payment", "Waiting for payment confirmation")),
        ("refunded", "shipped", ("refunded", "Order refunded")),
        ("paid", "canceled", ("canceled", "Order canceled")),
        ("partially_refunded", "shipped", ("shipped", "Shipped")),
    ],
)
def test_customer_status(payment, fulfillment, expected):
    assert customer_status(payment, fulfillment) == expected


def test_stage_order():
    assert stage_index(Stage.QUEUED) == 0
    assert stage_index("ready") == 7
    assert stage_index(Stage.FAILED) > stage_index(Stage.READY)
    assert next_stage(Stage.UPLOADING) is Stage.READY
    assert next_stage(Stage.READY) is None
    assert is_terminal("ready") and is_terminal("failed")
    assert not is_terminal(Stage.COMPOSITING)


def test_payment_transitions():
    assert can_pay("pending", "paid")
    assert can_pay("processing", "failed")
    assert can_pay("paid", "partially_refunded")
    assert can_pay("partially_refunded", "refunded")
    assert not can_pay("refunded", "paid")
    assert not can_pay("paid", "pending")


def test_fulfillment_transitions():
    assert can_fulfill("unsubmitted", "submitted")
    assert can_fulfill("submitted", "shipped")
    assert can_fulfill("failed", "canceled")
    assert not can_fulfill("shipped", "in_production")
    assert not can_fulfill("delivered", "canceled")
    assert not can_fulfill("unsubmitted", "shipped")


def test_tax_rounds_half_up():
    assert tax_for(2500, 825) == 206
    assert tax_for(1000, 250) == 25
    assert tax_for(2, 2500) == 1
    assert tax_for(2500, 0) == 0


def test_error_codes():
    assert AmbiguousOutcome().code == "provider_timeout"
    assert isinstance(AmbiguousOutcome(), TransientProviderError)
    rejected = PermanentProviderError("content_policy", "flagged")
    assert rejected.code == "content_policy"
    assert rejected.reason == "content_policy"
    assert rejected.message == "flagged"
