# tests/test_order_coordinator.py
import pytest

from printflow.data.models.checkout import CheckoutModel
from printflow.data.models.design_session import DesignSessionModel
from printflow.data.models.order import OrderModel
from printflow.domain.errors import (
    AccessDenied,
    AmbiguousOutcome,
    InvalidTransition,
    NotFound,
    OrderNotPaid,
    PermanentProviderError,
    PreconditionFailed,
    TransientProviderError,
)
from printflow.repos.order_repo import OrderRepo
from printflow.services.fulfillment_client import FulfillmentReport
from tests.fakes import ADDRESS


def _payment_ref(db, order_id):
    return db.get(OrderModel, order_id).payment_ref


def test_duplicate_confirmation_creates_one_order(coordinator, paid_order, db):
    ref = _payment_ref(db, paid_order)

    again, created = coordinator.handle_payment_succeeded(ref)

    assert again == paid_order
    assert created is False
    assert coordinator.on_payment_confirmed(ref) == paid_order
    assert db.query(OrderModel).count() == 1


def test_order_copies_checkout(coordinator, paid_order, worker, ready_session):
    order = coordinator.get_order(paid_order, user_id="user-1")

    assert order["session_id"] == ready_session
    assert order["payment_status"] == "paid"
    assert order["fulfillment_status"] == "unsubmitted"
    assert order["status"] == "processing"
    assert order["total_minor"] == 2999
    assert order["items"][0]["quantity"] == 1
    assert order["items"][0]["asset_id"] == worker.get_session(ready_session)["selected_asset_id"]


def test_confirmation_consumes_approval(paid_order, ready_session, db):
    db.expire_all()
    assert db.get(DesignSessionModel, ready_session).approval_consumed_at is not None


def test_unknown_payment(coordinator):
    assert coordinator.handle_payment_succeeded("pi_unknown") == (None, False)
    with pytest.raises(NotFound):
        coordinator.confirm_payment("pi_unknown")


def test_second_payment_for_one_approval_is_flagged(
    checkout_service, coordinator, reconciler, approval_token, db
):
    first = checkout_service.create_checkout(ADDRESS, approval_token=approval_token)
    second = checkout_service.create_checkout(ADDRESS, approval_token=approval_token)

    order_id, created = coordinator.handle_payment_succeeded(first["payment_ref"])
    assert created
    assert coordinator.handle_payment_succeeded(second["payment_ref"]) == (None, False)

    assert db.query(OrderModel).count() == 1
    flagged = db.get(CheckoutModel, second["checkout_id"])
    assert flagged.payment_status == "paid"
    assert flagged.failure_code == "approval_already_used"

    entries = [e for e in reconciler.list_retries() if e["kind"] == "checkout"]
    assert entries[0]["id"] == second["checkout_id"]
    assert entries[0]["operation_type"] == "order_creation"


def test_submit_records_provider_ref(coordinator, fulfillment, paid_order, bus):
    assert coordinator.submit_to_fulfillment(paid_order) == "fp_1"

    order = coordinator.get_order(paid_order)
    assert order["fulfillment_status"] == "submitted"
    assert order["status"] == "in_production"

    call = fulfillment.submit_calls[0]
    assert call["key"] == paid_order
    assert call["items"][0]["variant_id"] == 101
    assert call["items"][0]["file_url"].startswith("https://")
    assert call["address"]["country"] == "GB"

    # a second submission is a no-op
    assert coordinator.submit_to_fulfillment(paid_order) == "fp_1"
    assert len(fulfillment.submit_calls) == 1


def test_permanent_rejection_fails_order_and_queues_refund(coordinator, fulfillment, paid_order, db):
    fulfillment.submit_errors = [PermanentProviderError("invalid_address", "Unknown postcode")]

    assert coordinator.submit_to_fulfillment(paid_order) is None

    order = coordinator.get_order(paid_order)
    assert order["fulfillment_status"] == "failed"
    assert order["payment_status"] == "paid"
    assert order["failure_code"] == "invalid_address"
    assert order["status"] == "fulfillment_issue"
    assert "Unknown postcode" not in order["failure_message"]

    review = OrderRepo(db).get_refund_review(paid_order)
    assert review.reason == "fulfillment_rejected"
    assert review.amount_minor == 2999
    assert review.status == "pending"


def test_transient_error_leaves_order_unsubmitted(coordinator, fulfillment, paid_order, db):
    fulfillment.submit_errors = [TransientProviderError()]

    assert coordinator.submit_to_fulfillment(paid_order) is None

    db.expire_all()
    order = db.get(OrderModel, paid_order)
    assert order.fulfillment_status == "unsubmitted"
    assert order.fulfillment_attempts == 1
    assert order.last_error_code == "provider_unavailable"
    assert order.payment_status == "paid"


def test_full_refund_before_submission(coordinator, fulfillment, paid_order, db):
    ref = _payment_ref(db, paid_order)

    coordinator.record_payment_refund(ref, 2999, amount_minor=2999)

    order = coordinator.get_order(paid_order)
    assert order["payment_status"] == "refunded"
    assert order["fulfillment_status"] == "canceled"
    assert order["status"] == "canceled"
    with pytest.raises(OrderNotPaid):
        coordinator.submit_to_fulfillment(paid_order)
    assert fulfillment.submit_calls == []


def test_partial_refund(coordinator, paid_order, db):
    ref = _payment_ref(db, paid_order)

    coordinator.record_payment_refund(ref, 499, amount_minor=2999)
    # replays of an older refund amount change nothing
    coordinator.record_payment_refund(ref, 499, amount_minor=2999)

    order = coordinator.get_order(paid_order)
    assert order["payment_status"] == "partially_refunded"
    assert order["refunded_minor"] == 499
    assert order["fulfillment_status"] == "unsubmitted"


def test_cancel_unsubmitted_order(coordinator, fulfillment, paid_order, db):
    order = coordinator.cancel_order(paid_order, user_id="user-1")

    assert order["fulfillment_status"] == "canceled"
    assert OrderRepo(db).get_refund_review(paid_order).reason == "customer_request"
    assert coordinator.submit_to_fulfillment(paid_order) is None
    assert fulfillment.submit_calls == []


def test_cancel_after_submission_is_rejected(coordinator, paid_order):
    coordinator.submit_to_fulfillment(paid_order)

    with pytest.raises(InvalidTransition):
        coordinator.cancel_order(paid_order)


def test_cancel_racing_with_submission_is_flagged(coordinator, paid_order, db):
    coordinator.cancel_order(paid_order)

    assert coordinator.record_submission(paid_order, "fp_9") == "fp_9"

    db.expire_all()
    order = db.get(OrderModel, paid_order)
    assert order.fulfillment_status == "canceled"
    assert order.needs_review is True
    assert order.review_reason == "canceled_after_submission"


def _timed_out_submission(coordinator, fulfillment, order_id, stored):
    # the response is lost; ``stored`` says whether the provider kept the order
    fulfillment.submit_errors = [AmbiguousOutcome()]
    fulfillment.apply_before_timeout = stored
    assert coordinator.submit_to_fulfillment(order_id) is None


def test_cancel_after_timeout_finds_provider_order(coordinator, fulfillment, reconciler, paid_order, db):
    _timed_out_submission(coordinator, fulfillment, paid_order, stored=True)

    with pytest.raises(InvalidTransition):
        coordinator.cancel_order(paid_order, user_id="user-1")

    db.expire_all()
    order = db.get(OrderModel, paid_order)
    assert order.fulfillment_status == "submitted"
    assert order.provider_order_ref == "fp_1"
    assert OrderRepo(db).get_refund_review(paid_order) is None

    reconciler.run_once()
    assert len(fulfillment.submit_calls) == 1


def test_cancel_refused_while_read_back_fails(coordinator, fulfillment, paid_order, db):
    _timed_out_submission(coordinator, fulfillment, paid_order, stored=False)
    fulfillment.find_errors = [TransientProviderError()]

    with pytest.raises(InvalidTransition):
        coordinator.cancel_order(paid_order)
    assert coordinator.get_order(paid_order)["fulfillment_status"] == "unsubmitted"
    assert OrderRepo(db).get_refund_review(paid_order) is None

    # the provider confirms it has nothing, the cancel goes through
    assert coordinator.cancel_order(paid_order)["fulfillment_status"] == "canceled"
    assert fulfillment.orders == {}


def test_adjust_after_timeout_finds_provider_order(coordinator, fulfillment, paid_order):
    item_id = coordinator.get_order(paid_order)["items"][0]["id"]
    _timed_out_submission(coordinator, fulfillment, paid_order, stored=True)

    with pytest.raises(InvalidTransition):
        coordinator.adjust_item_quantity(paid_order, item_id, 2, "customer asked for more")

    order = coordinator.get_order(paid_order)
    assert order["fulfillment_status"] == "submitted"
    assert order["items"][0]["quantity"] == 1
    assert order["adjustments_minor"] == 0


def test_adjust_after_timeout_when_provider_has_nothing(coordinator, fulfillment, paid_order):
    item_id = coordinator.get_order(paid_order)["items"][0]["id"]
    _timed_out_submission(coordinator, fulfillment, paid_order, stored=False)

    adjusted = coordinator.adjust_item_quantity(paid_order, item_id, 1, "one more")
    assert adjusted["items"][0]["quantity"] == 2

    coordinator.submit_to_fulfillment(paid_order)
    assert fulfillment.submit_calls[-1]["items"][0]["quantity"] == 2


def test_adjust_item_quantity(coordinator, fulfillment, paid_order):
    item_id = coordinator.get_order(paid_order)["items"][0]["id"]

    adjusted = coordinator.adjust_item_quantity(paid_order, item_id, 2, "customer asked for more")

    assert adjusted["items"][0]["quantity"] == 3
    assert adjusted["adjustments_minor"] == 5000
    assert adjusted["total_minor"] == 2999

    with pytest.raises(PreconditionFailed) as exc:
        coordinator.adjust_item_quantity(paid_order, item_id, -3, "too many")
    assert exc.value.code == "invalid_quantity"
    with pytest.raises(ValueError):
        coordinator.adjust_item_quantity(paid_order, item_id, 0, "nothing")
    with pytest.raises(NotFound):
        coordinator.adjust_item_quantity(paid_order, 999, 1, "no such item")

    coordinator.submit_to_fulfillment(paid_order)
    assert fulfillment.submit_calls[0]["items"][0]["quantity"] == 3
    with pytest.raises(InvalidTransition):
        coordinator.adjust_item_quantity(paid_order, item_id, 1, "too late")


def test_fulfillment_updates_move_forward_only(coordinator, paid_order):
    ref = coordinator.submit_to_fulfillment(paid_order)

    assert coordinator.apply_fulfillment_update(
        ref, "shipped", tracking_code="TRK123", tracking_url="https://track.test/TRK123"
    ) == paid_order
    coordinator.apply_fulfillment_update(ref, "inprocess")

    order = coordinator.get_order(paid_order)
    assert order["fulfillment_status"] == "shipped"
    assert order["tracking_code"] == "TRK123"

    public = coordinator.find_by_tracking_code("TRK123")
    assert public["status"] == "shipped"
    assert "id" not in public

    coordinator.apply_fulfillment_update(ref, "delivered")
    assert coordinator.get_order(paid_order)["status"] == "delivered"


def test_fulfillment_update_edge_cases(coordinator, paid_order):
    ref = coordinator.submit_to_fulfillment(paid_order)

    assert coordinator.apply_fulfillment_update("fp_unknown", "shipped") is None
    coordinator.apply_fulfillment_update(ref, "teleported")
    assert coordinator.get_order(paid_order)["fulfillment_status"] == "submitted"
    with pytest.raises(NotFound):
        coordinator.find_by_tracking_code("nope")


def test_provider_cancel_queues_refund(coordinator, paid_order, db):
    ref = coordinator.submit_to_fulfillment(paid_order)

    coordinator.apply_fulfillment_update(ref, "cancelled")

    assert coordinator.get_order(paid_order)["fulfillment_status"] == "canceled"
    assert OrderRepo(db).get_refund_review(paid_order).reason == "provider_canceled"


def test_sync_pulls_provider_status(coordinator, fulfillment, paid_order):
    ref = coordinator.submit_to_fulfillment(paid_order)
    fulfillment.statuses[ref] = FulfillmentReport(status="inprocess")

    assert coordinator.sync_fulfillment_status(paid_order) is True
    assert coordinator.get_order(paid_order)["fulfillment_status"] == "in_production"
    assert coordinator.sync_fulfillment_status(paid_order) is False


def test_order_access(coordinator, paid_order):
    with pytest.raises(AccessDenied):
        coordinator.get_order(paid_order, user_id="user-2")
    assert [o["id"] for o in coordinator.list_orders("user-1")] == [paid_order]
    assert coordinator.list_orders("user-2") == []
