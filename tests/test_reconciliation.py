# tests/test_reconciliation.py
from datetime import timedelta

import pytest

from printflow.data.models.order import OrderModel
from printflow.domain.errors import (
    AmbiguousOutcome,
    InvalidTransition,
    PermanentProviderError,
    TransientProviderError,
)
from printflow.services.fulfillment_client import FulfillmentReport
from printflow.services.order_coordinator import OrderCoordinator
from printflow.services.reconciliation import ReconciliationEngine
from tests.fakes import later


def _order(db, order_id):
    db.expire_all()
    return db.get(OrderModel, order_id)


def test_submits_paid_order_nobody_submitted(reconciler, fulfillment, paid_order):
    summary = reconciler.run_once(now=later())

    assert summary["submitted"] == 1
    assert fulfillment.submit_calls[0]["key"] == paid_order


def test_grace_period_leaves_fresh_orders_alone(db, coordinator, fulfillment, notifier, paid_order):
    engine = ReconciliationEngine(db, coordinator, fulfillment, notifier, grace_seconds=600)

    assert engine.run_once(now=later())["submitted"] == 0
    assert fulfillment.submit_calls == []


def test_timeout_then_read_back_records_without_resubmitting(
    reconciler, coordinator, fulfillment, paid_order, db
):
    # the provider stored the order but the response never arrived
    fulfillment.submit_errors = [AmbiguousOutcome()]
    fulfillment.apply_before_timeout = True
    assert coordinator.submit_to_fulfillment(paid_order) is None
    assert _order(db, paid_order).last_error_code == "provider_timeout"

    summary = reconciler.run_once(now=later())

    assert summary["recovered"] == 1
    assert len(fulfillment.submit_calls) == 1
    order = _order(db, paid_order)
    assert order.fulfillment_status == "submitted"
    assert order.provider_order_ref == "fp_1"
    assert order.last_error_code is None


def test_timeout_before_provider_stored_resubmits_same_key(
    reconciler, coordinator, fulfillment, paid_order, db
):
    fulfillment.submit_errors = [AmbiguousOutcome()]
    coordinator.submit_to_fulfillment(paid_order)

    assert reconciler.run_once(now=later())["submitted"] == 1

    keys = [c["key"] for c in fulfillment.submit_calls]
    assert keys == [paid_order, paid_order]
    assert len(fulfillment.orders) == 1


def test_failed_read_back_counts_attempt(reconciler, fulfillment, paid_order, db):
    fulfillment.find_errors = [TransientProviderError()]

    summary = reconciler.run_once(now=later())

    assert summary["deferred"] == 1
    assert fulfillment.submit_calls == []
    order = _order(db, paid_order)
    assert order.fulfillment_attempts == 1
    assert order.last_error_code == "provider_unavailable"


def test_dead_letter_and_requeue(reconciler, coordinator, fulfillment, paid_order, db):
    fulfillment.submit_errors = [TransientProviderError()] * 3
    coordinator.submit_to_fulfillment(paid_order)
    reconciler.run_once(now=later())
    reconciler.run_once(now=later())
    assert _order(db, paid_order).fulfillment_attempts == 3

    summary = reconciler.run_once(now=later())

    assert summary["dead_lettered"] == 1
    order = _order(db, paid_order)
    assert order.dead_lettered_at is not None
    assert order.dead_letter_reason == "max_attempts"
    assert order.payment_status == "paid"
    assert coordinator.get_order(paid_order)["status"] == "processing"

    # dead-lettered orders are skipped by the scan and the submit task
    assert reconciler.run_once(now=later())["dead_lettered"] == 0
    assert coordinator.submit_to_fulfillment(paid_order) is None
    assert len(fulfillment.submit_calls) == 3

    entry = reconciler.list_retries()[0]
    assert entry["id"] == paid_order
    assert entry["status"] == "dead_lettered"
    assert entry["attempts"] == 3
    assert entry["max_attempts"] == 3
    assert entry["last_error"] == "provider_unavailable"
    assert entry["next_retry_at"] is None

    requeued = reconciler.requeue(paid_order)
    assert requeued["fulfillment_status"] == "unsubmitted"
    order = _order(db, paid_order)
    assert order.fulfillment_attempts == 0
    assert order.next_retry_at is None

    assert reconciler.run_once(now=later())["submitted"] == 1
    assert reconciler.list_retries() == []


def test_resubmission_waits_for_backoff(db, fulfillment, notifier, gate, paid_order):
    coordinator = OrderCoordinator(db, fulfillment, notifier, gate, retry_base_seconds=60)
    engine = ReconciliationEngine(db, coordinator, fulfillment, notifier, grace_seconds=0, max_attempts=5)
    fulfillment.submit_errors = [TransientProviderError(), TransientProviderError()]
    coordinator.submit_to_fulfillment(paid_order)
    assert _order(db, paid_order).next_retry_at is not None

    # nothing is touched before the first delay has elapsed
    assert engine.run_once(now=later(30))["deferred"] == 0
    assert len(fulfillment.submit_calls) == 1

    engine.run_once(now=later(61))
    assert len(fulfillment.submit_calls) == 2

    # the second delay is twice as long
    engine.run_once(now=later(90))
    assert len(fulfillment.submit_calls) == 2
    assert engine.run_once(now=later(125))["submitted"] == 1
    assert _order(db, paid_order).fulfillment_status == "submitted"


def test_failed_read_back_backs_off(db, fulfillment, notifier, gate, paid_order):
    coordinator = OrderCoordinator(db, fulfillment, notifier, gate, retry_base_seconds=60)
    engine = ReconciliationEngine(db, coordinator, fulfillment, notifier, grace_seconds=0, max_attempts=5)
    fulfillment.find_errors = [TransientProviderError()]
    now = later()

    assert engine.run_once(now=now)["deferred"] == 1
    assert engine.run_once(now=now + timedelta(seconds=30))["deferred"] == 0
    assert engine.run_once(now=now + timedelta(seconds=61))["submitted"] == 1


def test_requeue_requires_attention(reconciler, paid_order):
    with pytest.raises(InvalidTransition):
        reconciler.requeue(paid_order)


def test_operator_cancel(reconciler, coordinator, fulfillment, paid_order):
    fulfillment.submit_errors = [TransientProviderError()] * 3
    for _ in range(4):
        reconciler.run_once(now=later())

    canceled = reconciler.cancel(paid_order)

    assert canceled["fulfillment_status"] == "canceled"
    assert canceled["status"] == "canceled"


def test_status_sync_and_tracking_overdue(db, coordinator, fulfillment, notifier, paid_order):
    engine = ReconciliationEngine(
        db, coordinator, fulfillment, notifier, grace_seconds=0, tracking_sla_seconds=0, max_attempts=3
    )
    ref = coordinator.submit_to_fulfillment(paid_order)
    fulfillment.statuses[ref] = FulfillmentReport(status="inprocess")

    summary = engine.run_once(now=later())

    assert summary["synced"] == 1
    assert summary["flagged"] == 1
    order = _order(db, paid_order)
    assert order.fulfillment_status == "in_production"
    assert order.review_reason == "tracking_overdue"

    entry = engine.list_retries()[0]
    assert entry["status"] == "needs_review"
    assert entry["operation_type"] == "tracking_sync"
    assert entry["external_ref"] == ref

    # flagged orders are not flagged twice
    assert engine.run_once(now=later())["flagged"] == 0

    # tracking arriving clears the flag
    fulfillment.statuses[ref] = FulfillmentReport(status="shipped", tracking_code="TRK1")
    engine.run_once(now=later())
    order = _order(db, paid_order)
    assert order.fulfillment_status == "shipped"
    assert order.needs_review is False


def test_status_sync_errors_do_not_stop_the_scan(reconciler, coordinator, fulfillment, paid_order):
    coordinator.submit_to_fulfillment(paid_order)

    def unavailable(ref):
        raise TransientProviderError()

    fulfillment.get_order_status = unavailable

    assert reconciler.run_once(now=later())["synced"] == 0


def test_rejected_orders_listed(reconciler, coordinator, fulfillment, paid_order):
    fulfillment.submit_errors = [PermanentProviderError("out_of_stock")]
    coordinator.submit_to_fulfillment(paid_order)

    entry = reconciler.list_retries()[0]
    assert entry["status"] == "failed"
    assert entry["last_error"] == "out_of_stock"
