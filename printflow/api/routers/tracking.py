# printflow/api/routers/tracking.py
from fastapi import APIRouter, Depends

from printflow.api.deps import get_order_coordinator
from printflow.api.errors import http_error
from printflow.domain.errors import PipelineError
from printflow.domain.schemas import TrackingOut
from printflow.services.order_coordinator import OrderCoordinator

router = APIRouter(prefix="/track", tags=["tracking"])


@router.get("/{tracking_code}", response_model=TrackingOut)
def track(tracking_code: str, svc: OrderCoordinator = Depends(get_order_coordinator)):
    try:
        return svc.find_by_tracking_code(tracking_code)
    except PipelineError as e:
        raise http_error(e)
