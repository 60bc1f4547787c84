"""
Batch processor: one generator call and at most one reply per claimed session.

- build_aggregated_context(): combined text, attachments, span, urgency score
- calculate_urgency_score(): heuristic 1..10 priority signal
- process_claimed_job(): run a claimed job to a terminal outcome or a bounded retry
"""

import re
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import pydantic
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from turnbuffer.config import settings
from turnbuffer.database import utcnow
from turnbuffer.logging_config import get_logger
from turnbuffer.models import BufferedMessage, BufferSession, DispatchJob
from turnbuffer.schemas.dispatch import GeneratorDecision
from turnbuffer.services.alert_service import alert_error
from turnbuffer.services.delivery_service import DeliveryChannel
from turnbuffer.services.errors import PermanentError, TransientDependencyError, describe_error
from turnbuffer.services.generator.base import AggregatedContext, AttachmentInfo, ResponseGenerator
from turnbuffer.services.state_machine import (
    InvalidTransitionError,
    JobStatus,
    SessionStatus,
    transition,
)

logger = get_logger("batch_processor")

BURST_SPAN_SECONDS = 15.0
AUDIO_PENDING_PLACEHOLDER = "[Audio message - transcription pending]"

_URGENT_PATTERN = re.compile(r"\b(urgent|emergency|help|problem|issue|asap|immediately)\b", re.I)


def calculate_urgency_score(message_count: int, time_span_seconds: float, combined_text: str) -> int:
    score = 5

    if message_count > 3:
        score += 1
    if message_count > 5:
        score += 1
    # Several messages fired within a few seconds read as impatience.
    if message_count >= 3 and time_span_seconds <= BURST_SPAN_SECONDS:
        score += 1

    if _URGENT_PATTERN.search(combined_text or ""):
        score += 2

    score += min((combined_text or "").count("?"), 2)

    return max(1, min(score, 10))


def _attachment_info(message: BufferedMessage) -> list[AttachmentInfo]:
    items = []
    for attachment in message.attachments or []:
        if not isinstance(attachment, dict):
            continue
        items.append(
            AttachmentInfo(
                type=message.kind,
                url=attachment.get("data_url") or attachment.get("file_url"),
                filename=attachment.get("file_name") or attachment.get("filename"),
                size=attachment.get("file_size"),
                transcription=attachment.get("transcription"),
            )
        )
    return items


def build_aggregated_context(session: BufferSession, messages: list[BufferedMessage]) -> AggregatedContext:
    """Aggregate a session's messages (already ordered by received_at)."""
    first, last = messages[0], messages[-1]
    time_span = (last.received_at - first.received_at).total_seconds()

    combined_text = "\n".join(m.body.strip() for m in messages if m.body and m.body.strip())

    attachments: list[AttachmentInfo] = []
    audio_transcripts: list[str] = []
    for message in messages:
        message_attachments = _attachment_info(message)
        attachments.extend(message_attachments)
        if message.kind == "audio":
            transcripts = [a.transcription for a in message_attachments if a.transcription]
            audio_transcripts.extend(transcripts or [AUDIO_PENDING_PLACEHOLDER])

    return AggregatedContext(
        conversation_id=session.conversation_id,
        user_id=session.user_id,
        message_count=len(messages),
        time_span_seconds=time_span,
        combined_text=combined_text,
        audio_transcripts=audio_transcripts,
        attachments=attachments,
        sender=dict(first.sender_info or {}),
        urgency_score=calculate_urgency_score(len(messages), time_span, combined_text),
    )


def _decide(generator: ResponseGenerator, session_id: UUID, context: AggregatedContext) -> GeneratorDecision:
    try:
        raw = generator.generate(session_id, context)
    except Exception as exc:
        raise TransientDependencyError(f"generator failed: {exc}", code="generator_error") from exc
    try:
        return GeneratorDecision.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise PermanentError(f"malformed generator decision: {exc.errors()[:2]}", code="invalid_decision") from exc


def process_claimed_job(
    db: Session,
    job_id: UUID,
    *,
    generator: ResponseGenerator,
    delivery: DeliveryChannel,
    claimed_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
    retry_backoff_seconds: Optional[float] = None,
) -> str:
    """Process one claimed job. Returns "completed", "retried", "failed" or "skipped".

    claimed_at identifies the claim being processed; every write is conditional on it,
    so a claim that was reclaimed and handed to another sweep is left alone.
    """
    max_attempts = settings.max_attempts if max_attempts is None else max_attempts
    retry_backoff_seconds = settings.retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds

    job = db.get(DispatchJob, job_id)
    if job is None:
        logger.warning(f"Dispatch job {job_id} not found")
        return "skipped"
    try:
        transition(JobStatus(job.status), JobStatus.DONE)
    except InvalidTransitionError:
        logger.warning(
            "Dispatch job is not claimed, skipping",
            extra={"context": {"job_id": str(job_id), "status": job.status}},
        )
        return "skipped"

    claimed_at = claimed_at or job.claimed_at
    if job.claimed_at != claimed_at:
        logger.warning(
            "Dispatch job was re-claimed by another sweep, skipping",
            extra={"context": {"job_id": str(job_id)}},
        )
        return "skipped"

    session = job.session
    session_id = session.id
    conversation_id = session.conversation_id

    try:
        messages = (
            db.query(BufferedMessage)
            .filter(BufferedMessage.session_id == session_id)
            .order_by(BufferedMessage.received_at, BufferedMessage.created_at)
            .all()
        )
        if not messages:
            logger.info(f"No messages in buffer session {session_id}, completing without reply")
            if not _finalize_success(db, job_id, session_id, claimed_at, now=now or utcnow()):
                return "skipped"
            return "completed"

        context = build_aggregated_context(session, messages)
        decision = _decide(generator, session_id, context)

        if decision.should_respond:
            sent = delivery.send(conversation_id, decision.content)
            if not sent.ok:
                raise TransientDependencyError(f"delivery failed: {sent.error}", code="delivery_error")

        if not _finalize_success(db, job_id, session_id, claimed_at, now=now or utcnow()):
            return "skipped"
        logger.info(
            "Buffer session processed",
            extra={
                "context": {
                    "session_id": str(session_id),
                    "job_id": str(job_id),
                    "conversation_id": conversation_id,
                    "message_count": context.message_count,
                    "urgency_score": context.urgency_score,
                    "responded": decision.should_respond,
                    "intent": decision.intent,
                    "confidence": decision.confidence,
                }
            },
        )
        return "completed"

    except PermanentError as exc:
        db.rollback()
        if not _finalize_failure(db, job_id, session_id, claimed_at, exc, now=now or utcnow()):
            return "skipped"
        return "failed"

    except Exception as exc:
        db.rollback()
        return _retry_or_fail(
            db,
            job_id,
            session_id,
            claimed_at,
            exc,
            now=now or utcnow(),
            max_attempts=max_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
        )


def _owned_claim(job_id: UUID, claimed_at: Optional[datetime]) -> tuple:
    return (
        DispatchJob.id == job_id,
        DispatchJob.status == JobStatus.CLAIMED.value,
        DispatchJob.claimed_at == claimed_at,
    )


def _finalize_success(
    db: Session, job_id: UUID, session_id: UUID, claimed_at: Optional[datetime], *, now: datetime
) -> bool:
    done = db.execute(
        update(DispatchJob)
        .where(*_owned_claim(job_id, claimed_at))
        .values(status=JobStatus.DONE.value, processed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if done.rowcount == 0:
        db.rollback()
        logger.warning(
            "Dispatch job was released before it finished; leaving it to the next claimant",
            extra={"context": {"job_id": str(job_id), "session_id": str(session_id)}},
        )
        return False

    db.execute(
        update(BufferedMessage)
        .where(BufferedMessage.session_id == session_id, BufferedMessage.consumed.is_(False))
        .values(consumed=True)
        .execution_options(synchronize_session=False)
    )
    _complete_session(db, session_id, now=now)
    db.commit()
    return True


def _complete_session(db: Session, session_id: UUID, *, now: datetime, error_message: Optional[str] = None) -> None:
    ended_at = db.execute(select(BufferSession.ended_at).where(BufferSession.id == session_id)).scalar_one_or_none()
    db.execute(
        update(BufferSession)
        .where(BufferSession.id == session_id, BufferSession.status != SessionStatus.COMPLETED.value)
        .values(
            status=SessionStatus.COMPLETED.value,
            processed_at=now,
            ended_at=ended_at or now,
            error_message=error_message,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


def _finalize_failure(
    db: Session,
    job_id: UUID,
    session_id: UUID,
    claimed_at: Optional[datetime],
    exc: Exception,
    *,
    now: datetime,
    attempts: Optional[int] = None,
) -> bool:
    error = describe_error(exc)
    if attempts is None:
        attempts = (db.execute(select(DispatchJob.attempts).where(DispatchJob.id == job_id)).scalar_one() or 0) + 1

    failed = db.execute(
        update(DispatchJob)
        .where(*_owned_claim(job_id, claimed_at))
        .values(
            status=JobStatus.FAILED.value,
            attempts=attempts,
            last_error=error,
            processed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if failed.rowcount == 0:
        db.rollback()
        logger.warning(f"Dispatch job {job_id} no longer held by this claim, failure not recorded: {error}")
        return False

    _complete_session(db, session_id, now=now, error_message=error)
    db.commit()

    logger.error(
        "Buffer session completed with error",
        extra={
            "context": {
                "session_id": str(session_id),
                "job_id": str(job_id),
                "attempts": attempts,
                "error": error,
            }
        },
    )
    alert_error(
        "Buffered turn produced no reply",
        {"session_id": str(session_id), "job_id": str(job_id), "attempts": attempts, "error": error},
    )
    return True


def _retry_or_fail(
    db: Session,
    job_id: UUID,
    session_id: UUID,
    claimed_at: Optional[datetime],
    exc: Exception,
    *,
    now: datetime,
    max_attempts: int,
    retry_backoff_seconds: float,
) -> str:
    attempts = (db.execute(select(DispatchJob.attempts).where(DispatchJob.id == job_id)).scalar_one() or 0) + 1
    if attempts >= max_attempts:
        if not _finalize_failure(db, job_id, session_id, claimed_at, exc, now=now, attempts=attempts):
            return "skipped"
        return "failed"

    backoff = retry_backoff_seconds * (2 ** max(attempts - 1, 0))
    next_due_at = now + timedelta(seconds=backoff)
    error = describe_error(exc)
    requeued = db.execute(
        update(DispatchJob)
        .where(*_owned_claim(job_id, claimed_at))
        .values(
            status=JobStatus.SCHEDULED.value,
            attempts=attempts,
            last_error=error,
            due_at=next_due_at,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if requeued.rowcount == 0:
        db.rollback()
        logger.warning(f"Dispatch job {job_id} no longer held by this claim, retry not scheduled: {error}")
        return "skipped"
    db.commit()

    logger.warning(
        "Buffer session processing failed, retry scheduled",
        extra={
            "context": {
                "session_id": str(session_id),
                "job_id": str(job_id),
                "attempts": attempts,
                "next_due_at": next_due_at.isoformat(),
                "error": error,
            }
        },
    )
    return "retried"
