"""
Buffer manager: one active buffering session per conversation.

Every inbound message either joins the conversation's active session (pushing
its dispatch deadline forward by the debounce window) or opens a fresh
session with its own scheduled job. All writes are conditional on row status,
so a session that a sweep has already claimed is never appended to.

Lock order is always dispatch_jobs row, then buffer_sessions row, the same
order the claim in dispatch_scheduler uses.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from turnbuffer.config import settings
from turnbuffer.database import utcnow
from turnbuffer.logging_config import get_logger
from turnbuffer.models import BufferedMessage, BufferSession, DispatchJob
from turnbuffer.schemas.inbound import InboundMessageEvent
from turnbuffer.services.errors import TransientDependencyError
from turnbuffer.services.state_machine import JobStatus, SessionStatus

logger = get_logger("buffer_manager")


@dataclass
class BufferOutcome:
    session_id: UUID
    job_id: UUID
    message_count: int
    due_at: datetime
    created: bool


def handle(
    db: Session,
    conversation_id: str,
    message: InboundMessageEvent,
    *,
    now: Optional[datetime] = None,
    window_seconds: Optional[float] = None,
) -> BufferOutcome:
    """Append a message to the conversation's active session, or open a new one."""
    now = now or utcnow()
    window = settings.debounce_window_seconds if window_seconds is None else window_seconds
    due_at = now + timedelta(seconds=window)

    outcome = _append_to_active(db, conversation_id, message, now=now, due_at=due_at)
    if outcome is None:
        try:
            outcome = _open_session(db, conversation_id, message, now=now, due_at=due_at)
        except IntegrityError:
            # Lost the race on the one-active-session index; join the winner.
            db.rollback()
            logger.info(
                "Concurrent session open detected, retrying append",
                extra={"context": {"conversation_id": conversation_id}},
            )
            outcome = _append_to_active(db, conversation_id, message, now=now, due_at=due_at)
            if outcome is None:
                raise TransientDependencyError(
                    f"could not open or join a buffer session for conversation {conversation_id}"
                )

    db.commit()

    logger.info(
        "Message buffered",
        extra={
            "context": {
                "conversation_id": conversation_id,
                "external_message_id": message.external_message_id,
                "session_id": str(outcome.session_id),
                "message_count": outcome.message_count,
                "due_at": outcome.due_at.isoformat(),
                "new_session": outcome.created,
            }
        },
    )
    return outcome


def _append_to_active(
    db: Session,
    conversation_id: str,
    message: InboundMessageEvent,
    *,
    now: datetime,
    due_at: datetime,
) -> Optional[BufferOutcome]:
    session_id = db.execute(
        select(BufferSession.id).where(
            BufferSession.conversation_id == conversation_id,
            BufferSession.status == SessionStatus.ACTIVE.value,
        )
    ).scalar_one_or_none()
    if session_id is None:
        return None

    # Trailing debounce: push the deadline, but only while nobody has claimed the job.
    rescheduled = db.execute(
        update(DispatchJob)
        .where(
            DispatchJob.session_id == session_id,
            DispatchJob.status == JobStatus.SCHEDULED.value,
        )
        .values(due_at=due_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if rescheduled.rowcount == 0:
        logger.info(
            "Active session already claimed, opening a new one",
            extra={"context": {"conversation_id": conversation_id, "session_id": str(session_id)}},
        )
        return None

    appended = db.execute(
        update(BufferSession)
        .where(
            BufferSession.id == session_id,
            BufferSession.status == SessionStatus.ACTIVE.value,
        )
        .values(
            last_message_at=now,
            message_count=BufferSession.message_count + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if appended.rowcount == 0:
        return None

    _insert_message(db, session_id, message, now=now)
    db.flush()

    message_count, job_id = db.execute(
        select(BufferSession.message_count, DispatchJob.id)
        .join(DispatchJob, DispatchJob.session_id == BufferSession.id)
        .where(BufferSession.id == session_id)
    ).one()
    return BufferOutcome(
        session_id=session_id,
        job_id=job_id,
        message_count=message_count,
        due_at=due_at,
        created=False,
    )


def _open_session(
    db: Session,
    conversation_id: str,
    message: InboundMessageEvent,
    *,
    now: datetime,
    due_at: datetime,
) -> BufferOutcome:
    session = BufferSession(
        conversation_id=conversation_id,
        user_id=message.sender.id,
        status=SessionStatus.ACTIVE.value,
        started_at=now,
        last_message_at=now,
        message_count=1,
    )
    db.add(session)
    db.flush()

    job = DispatchJob(
        session_id=session.id,
        due_at=due_at,
        status=JobStatus.SCHEDULED.value,
        attempts=0,
    )
    db.add(job)
    _insert_message(db, session.id, message, now=now)
    db.flush()

    logger.info(
        "Opened buffer session",
        extra={"context": {"conversation_id": conversation_id, "session_id": str(session.id)}},
    )
    return BufferOutcome(
        session_id=session.id,
        job_id=job.id,
        message_count=1,
        due_at=due_at,
        created=True,
    )


def _insert_message(db: Session, session_id: UUID, message: InboundMessageEvent, *, now: datetime) -> BufferedMessage:
    row = BufferedMessage(
        session_id=session_id,
        external_message_id=message.external_message_id,
        body=message.body,
        kind=message.message_kind(),
        content_type=message.content_type,
        attachments=[attachment.model_dump(exclude_none=True) for attachment in message.attachments],
        sender_info=message.sender.model_dump(exclude_none=True),
        conversation_info=message.conversation_info or {},
        received_at=message.received_at or now,
        consumed=False,
    )
    db.add(row)
    return row


def get_session(db: Session, session_id: UUID) -> Optional[BufferSession]:
    return db.query(BufferSession).filter(BufferSession.id == session_id).first()


def get_session_messages(db: Session, session_id: UUID) -> list[BufferedMessage]:
    return (
        db.query(BufferedMessage)
        .filter(BufferedMessage.session_id == session_id)
        .order_by(BufferedMessage.received_at, BufferedMessage.created_at)
        .all()
    )


def purge_completed_sessions(
    db: Session,
    *,
    retention_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Delete completed sessions (with their messages and job) older than the retention period."""
    now = now or utcnow()
    days = settings.completed_retention_days if retention_days is None else retention_days
    cutoff = now - timedelta(days=days)

    session_ids = list(
        db.execute(
            select(BufferSession.id).where(
                BufferSession.status == SessionStatus.COMPLETED.value,
                BufferSession.processed_at < cutoff,
            )
        ).scalars()
    )
    if not session_ids:
        return 0

    db.execute(delete(BufferedMessage).where(BufferedMessage.session_id.in_(session_ids)))
    db.execute(delete(DispatchJob).where(DispatchJob.session_id.in_(session_ids)))
    db.execute(delete(BufferSession).where(BufferSession.id.in_(session_ids)))
    db.commit()

    logger.info(
        "Purged completed buffer sessions",
        extra={"context": {"count": len(session_ids), "cutoff": cutoff.isoformat()}},
    )
    return len(session_ids)
