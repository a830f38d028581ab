# printflow/api/routers/orders.py
from typing import List

from fastapi import APIRouter, Depends, Query

from printflow.api.deps import get_order_coordinator
from printflow.api.errors import bad_request, http_error
from printflow.domain.errors import PipelineError
from printflow.domain.schemas import AdjustItemIn, OrderOut
from printflow.services.order_coordinator import OrderCoordinator

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/", response_model=List[OrderOut])
def list_orders(
    user_id: str = Query(...),
    svc: OrderCoordinator = Depends(get_order_coordinator),
):
    return svc.list_orders(user_id)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: str,
    user_id: str = Query(...),
    svc: OrderCoordinator = Depends(get_order_coordinator),
):
    """Order with its customer facing status."""
    try:
        return svc.get_order(order_id, user_id)
    except PipelineError as e:
        raise http_error(e)


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: str,
    user_id: str = Query(...),
    svc: OrderCoordinator = Depends(get_order_coordinator),
):
    try:
        return svc.cancel_order(order_id, user_id)
    except PipelineError as e:
        raise http_error(e)


@router.post("/{order_id}/adjustments", response_model=OrderOut, status_code=201)
def adjust_item(
    order_id: str,
    payload: AdjustItemIn,
    user_id: str = Query(...),
    svc: OrderCoordinator = Depends(get_order_coordinator),
):
    try:
        return svc.adjust_item_quantity(
            order_id,
            item_id=payload.item_id,
            quantity_delta=payload.quantity_delta,
            reason=payload.reason,
            user_id=user_id,
        )
    except PipelineError as e:
        raise http_error(e)
    except ValueError as e:
        raise bad_request(e)
