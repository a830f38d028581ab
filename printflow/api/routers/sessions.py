# printflow/api/routers/sessions.py
import json
from typing import List

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import StreamingResponse

from printflow.api.deps import (
    get_approval_gate,
    get_dispatcher,
    get_event_bus,
    get_generation_worker,
    get_notifier,
)
from printflow.api.errors import bad_request, http_error
from printflow.data.database import SessionLocal
from printflow.domain.errors import PipelineError
from printflow.domain.schemas import (
    ApprovalOut,
    ApproveIn,
    ConfigureProductIn,
    SessionCreate,
    SessionOut,
    SnapshotOut,
    StageEventOut,
)
from printflow.services.approval_gate import ApprovalGate
from printflow.services.generation_worker import GenerationWorker
from printflow.services.notification_service import StatusNotifier

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("/", response_model=SessionOut, status_code=201)
def create_session(
    payload: SessionCreate,
    user_id: str | None = Query(None),
    worker: GenerationWorker = Depends(get_generation_worker),
    dispatcher=Depends(get_dispatcher),
):
    """Creates a session in ``queued`` and hands it to the generation worker."""
    try:
        session = worker.create_session(
            prompt=payload.prompt,
            style_hints=payload.style_hints,
            locale=payload.locale,
            owner_id=user_id,
        )
    except ValueError as e:
        raise bad_request(e)
    dispatcher.start_generation(session["session_id"])
    return session


@router.get("/{session_id}", response_model=SessionOut)
def get_session(
    session_id: str,
    user_id: str | None = Query(None),
    worker: GenerationWorker = Depends(get_generation_worker),
):
    try:
        return worker.get_session(session_id, user_id)
    except PipelineError as e:
        raise http_error(e)


@router.get("/{session_id}/snapshot", response_model=SnapshotOut)
def get_snapshot(session_id: str, notifier: StatusNotifier = Depends(get_notifier)):
    try:
        return notifier.snapshot(session_id)
    except PipelineError as e:
        raise http_error(e)


@router.get("/{session_id}/history", response_model=List[StageEventOut])
def get_history(
    session_id: str,
    after_seq: int = Query(0, ge=0),
    notifier: StatusNotifier = Depends(get_notifier),
):
    try:
        notifier.snapshot(session_id)
    except PipelineError as e:
        raise http_error(e)
    return notifier.events(session_id, after_seq)


@router.get("/{session_id}/events")
def stream_events(
    session_id: str,
    after_seq: int = Query(0, ge=0),
    last_event_id: str | None = Header(None),
    bus=Depends(get_event_bus),
):
    """
    Server-sent stage events. Replays the log after ``after_seq`` (or the
    ``Last-Event-ID`` a reconnecting browser sends) and then follows live
    events until the session reaches a terminal stage.
    """
    if last_event_id and last_event_id.isdigit():
        after_seq = max(after_seq, int(last_event_id))

    # the stream outlives the request scoped db session
    db = SessionLocal()
    notifier = StatusNotifier(db, bus)
    try:
        events = notifier.subscribe(session_id, after_seq=after_seq)
        first = next(events, None)
    except PipelineError as e:
        db.close()
        raise http_error(e)

    def body():
        try:
            event = first
            while event is not None:
                yield f"id: {event['seq']}\nevent: stage\ndata: {json.dumps(event, default=str)}\n\n"
                event = next(events, None)
        finally:
            events.close()
            db.close()

    return StreamingResponse(body(), media_type="text/event-stream")


@router.post("/{session_id}/retry", response_model=SessionOut)
def retry_session(
    session_id: str,
    user_id: str | None = Query(None),
    worker: GenerationWorker = Depends(get_generation_worker),
    dispatcher=Depends(get_dispatcher),
):
    try:
        session = worker.retry(session_id, user_id)
    except PipelineError as e:
        raise http_error(e)
    dispatcher.start_generation(session_id)
    return session


@router.put("/{session_id}/product", response_model=SessionOut)
def configure_product(
    session_id: str,
    payload: ConfigureProductIn,
    user_id: str | None = Query(None),
    worker: GenerationWorker = Depends(get_generation_worker),
):
    try:
        return worker.configure_product(
            session_id,
            product_slug=payload.product_slug,
            variant_id=payload.variant_id,
            asset_id=payload.asset_id,
            user_id=user_id,
        )
    except PipelineError as e:
        raise http_error(e)


@router.post("/{session_id}/claim", response_model=SessionOut)
def claim_session(
    session_id: str,
    user_id: str = Query(...),
    worker: GenerationWorker = Depends(get_generation_worker),
):
    try:
        return worker.claim(session_id, user_id)
    except PipelineError as e:
        raise http_error(e)


@router.post("/{session_id}/abandon", response_model=SessionOut)
def abandon_session(
    session_id: str,
    user_id: str | None = Query(None),
    worker: GenerationWorker = Depends(get_generation_worker),
):
    try:
        return worker.abandon(session_id, user_id)
    except PipelineError as e:
        raise http_error(e)


@router.post("/{session_id}/approve", response_model=ApprovalOut)
def approve_session(
    session_id: str,
    payload: ApproveIn,
    user_id: str | None = Query(None),
    gate: ApprovalGate = Depends(get_approval_gate),
):
    try:
        return gate.approve(session_id, payload.consent, user_id)
    except PipelineError as e:
        raise http_error(e)
