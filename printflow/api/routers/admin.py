# printflow/api/routers/admin.py
from typing import Dict, List

from fastapi import APIRouter, Depends

from printflow.api.deps import get_reconciliation
from printflow.api.errors import http_error
from printflow.domain.errors import PipelineError
from printflow.domain.schemas import OrderOut, RetryEntryOut
from printflow.services.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/retries", response_model=List[RetryEntryOut])
def list_retries(engine: ReconciliationEngine = Depends(get_reconciliation)):
    """Dead-lettered, rejected and flagged work waiting for an operator."""
    return engine.list_retries()


@router.post("/retries/{order_id}/requeue", response_model=OrderOut)
def requeue(order_id: str, engine: ReconciliationEngine = Depends(get_reconciliation)):
    try:
        return engine.requeue(order_id)
    except PipelineError as e:
        raise http_error(e)


@router.post("/retries/{order_id}/cancel", response_model=OrderOut)
def cancel(order_id: str, engine: ReconciliationEngine = Depends(get_reconciliation)):
    try:
        return engine.cancel(order_id)
    except PipelineError as e:
        raise http_error(e)


@router.post("/reconcile", response_model=Dict[str, int])
def reconcile(engine: ReconciliationEngine = Depends(get_reconciliation)):
    return engine.run_once()
