# printflow/api/routers/webhooks.py
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from printflow.api.deps import (
    get_checkout_service,
    get_dispatcher,
    get_fulfillment_client,
    get_order_coordinator,
    get_payment_client,
)
from printflow.api.errors import http_error
from printflow.domain.errors import PipelineError
from printflow.domain.schemas import FulfillmentEventIn
from printflow.services.checkout_service import CheckoutService
from printflow.services.order_coordinator import OrderCoordinator
from printflow.services.payment_client import PaymentEvent
from printflow.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def handle_payment_event(
    event: PaymentEvent,
    checkouts: CheckoutService,
    coordinator: OrderCoordinator,
    dispatcher,
) -> dict:
    if not event.payment_ref:
        logger.info(f"Payment event {event.type} without a payment reference, ignoring")
        return {"received": True, "handled": False}

    if event.type == "payment_intent.succeeded":
        order_id, created = coordinator.handle_payment_succeeded(event.payment_ref)
        if created:
            dispatcher.submit_order(order_id)
        return {"received": True, "handled": True, "order_id": order_id}

    if event.type == "payment_intent.processing":
        checkouts.mark_processing(event.payment_ref)
    elif event.type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        checkouts.mark_failed(event.payment_ref, event.failure_code)
    elif event.type == "charge.refunded":
        coordinator.record_payment_refund(
            event.payment_ref,
            event.amount_refunded_minor or 0,
            event.amount_minor,
        )
    else:
        logger.debug(f"Unhandled payment event {event.type}")
        return {"received": True, "handled": False}
    return {"received": True, "handled": True}


@router.post("/payments")
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
    payments=Depends(get_payment_client),
    checkouts: CheckoutService = Depends(get_checkout_service),
    coordinator: OrderCoordinator = Depends(get_order_coordinator),
    dispatcher=Depends(get_dispatcher),
):
    """
    Payment processor callbacks. Delivery is at-least-once and unordered,
    every handler below is safe to run twice.
    """
    payload = await request.body()
    try:
        event = payments.verify_webhook(payload, stripe_signature)
        return await run_in_threadpool(handle_payment_event, event, checkouts, coordinator, dispatcher)
    except PipelineError as e:
        raise http_error(e)


@router.post("/fulfillment")
async def fulfillment_webhook(
    request: Request,
    x_fulfillment_signature: str | None = Header(None),
    client=Depends(get_fulfillment_client),
    coordinator: OrderCoordinator = Depends(get_order_coordinator),
):
    payload = await request.body()
    try:
        data = client.verify_webhook(payload, x_fulfillment_signature)
        update = FulfillmentEventIn.model_validate(data)
        order_id = await run_in_threadpool(
            coordinator.apply_fulfillment_update,
            update.provider_order_ref,
            update.status,
            update.tracking_code,
            update.tracking_url,
        )
    except PipelineError as e:
        raise http_error(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"code": "invalid_request", "message": str(e)})
    return {"received": True, "order_id": order_id}
