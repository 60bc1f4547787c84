from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from turnbuffer.database import get_db
from turnbuffer.routers.admin import require_admin_token
from turnbuffer.schemas.dispatch import (
    BufferedMessagesResponse,
    BufferedMessageView,
    BufferSessionView,
    DispatchJobView,
    SweepResult,
)
from turnbuffer.services.buffer_manager import get_session, get_session_messages
from turnbuffer.services.collaborators import get_delivery, get_generator
from turnbuffer.services.delivery_service import DeliveryChannel
from turnbuffer.services.dispatch_scheduler import run_sweep
from turnbuffer.services.generator import ResponseGenerator

router = APIRouter(tags=["dispatch"])


@router.post("/dispatch/sweep", response_model=SweepResult, dependencies=[Depends(require_admin_token)])
def trigger_sweep(
    db: Session = Depends(get_db),
    generator: ResponseGenerator = Depends(get_generator),
    delivery: DeliveryChannel = Depends(get_delivery),
):
    """Run one scheduler tick on demand (external cron or manual trigger)."""
    return SweepResult(**run_sweep(db, generator=generator, delivery=delivery))


@router.get("/buffers/{session_id}", response_model=BufferSessionView)
def read_buffer_session(session_id: UUID, db: Session = Depends(get_db)):
    session = get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Buffer session not found")

    job = session.job
    return BufferSessionView(
        id=session.id,
        conversation_id=session.conversation_id,
        user_id=session.user_id,
        status=session.status,
        started_at=session.started_at,
        last_message_at=session.last_message_at,
        ended_at=session.ended_at,
        message_count=session.message_count,
        processed_at=session.processed_at,
        error_message=session.error_message,
        job=DispatchJobView(
            id=job.id,
            status=job.status,
            due_at=job.due_at,
            attempts=job.attempts,
            last_error=job.last_error,
            processed_at=job.processed_at,
        )
        if job is not None
        else None,
    )


@router.get("/buffers/{session_id}/messages", response_model=BufferedMessagesResponse)
def read_buffer_messages(session_id: UUID, db: Session = Depends(get_db)):
    if get_session(db, session_id) is None:
        raise HTTPException(status_code=404, detail="Buffer session not found")

    messages = get_session_messages(db, session_id)
    return BufferedMessagesResponse(
        session_id=session_id,
        count=len(messages),
        messages=[
            BufferedMessageView(
                id=message.id,
                external_message_id=message.external_message_id,
                body=message.body,
                kind=message.kind,
                attachments=message.attachments or [],
                sender_info=message.sender_info or {},
                received_at=message.received_at,
                consumed=message.consumed,
            )
            for message in messages
        ],
    )
