# printflow/api/routers/checkout.py
from fastapi import APIRouter, Depends, Query

from printflow.api.deps import get_checkout_service
from printflow.api.errors import bad_request, http_error
from printflow.domain.errors import PipelineError
from printflow.domain.schemas import CheckoutCreate, CheckoutOut, CheckoutStatusOut
from printflow.services.checkout_service import CheckoutService

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("/", response_model=CheckoutOut, status_code=201)
def create_checkout(
    payload: CheckoutCreate,
    user_id: str | None = Query(None),
    svc: CheckoutService = Depends(get_checkout_service),
):
    """Prices the purchase and opens a payment intent for it."""
    try:
        return svc.create_checkout(
            shipping_address=payload.shipping_address.model_dump(),
            quantity=payload.quantity,
            approval_token=payload.approval_token,
            variant_id=payload.variant_id,
            product_slug=payload.product_slug,
            user_id=user_id,
        )
    except PipelineError as e:
        raise http_error(e)
    except ValueError as e:
        raise bad_request(e)


@router.get("/{checkout_id}", response_model=CheckoutStatusOut)
def get_checkout(
    checkout_id: str,
    user_id: str | None = Query(None),
    svc: CheckoutService = Depends(get_checkout_service),
):
    try:
        return svc.get_checkout(checkout_id, user_id)
    except PipelineError as e:
        raise http_error(e)
