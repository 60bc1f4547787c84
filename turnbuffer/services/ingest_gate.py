"""
Ingest gate: validate an inbound event and route it to buffering or fallback.

The gate reads the buffering flag once per event and never writes buffering
state itself; the buffer manager does that inside its own unit of work.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import pydantic
from sqlalchemy.orm import Session

from turnbuffer.config import settings
from turnbuffer.logging_config import get_logger
from turnbuffer.schemas.inbound import InboundMessageEvent
from turnbuffer.services import buffer_manager
from turnbuffer.services.delivery_service import DeliveryChannel
from turnbuffer.services.errors import EventValidationError
from turnbuffer.services.fallback_service import process_single_message
from turnbuffer.services.feature_flags import is_feature_enabled
from turnbuffer.services.generator.base import ResponseGenerator

logger = get_logger("ingest_gate")


@dataclass
class IngestResult:
    action: str  # buffered, fallback, ignored, rejected
    session_id: Optional[UUID] = None
    message: Optional[str] = None
    reply_sent: Optional[bool] = None


def validate_event(payload: Any) -> InboundMessageEvent:
    if isinstance(payload, InboundMessageEvent):
        return payload
    try:
        return InboundMessageEvent.model_validate(payload)
    except pydantic.ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'event'}: {err['msg']}" for err in exc.errors()
        )
        raise EventValidationError(details) from exc


def get_ignore_reason(event: InboundMessageEvent) -> Optional[str]:
    if event.direction == "outgoing":
        return "Outgoing message, not processing"
    if "whatsapp" not in (event.channel_type or "").lower():
        return f"Channel {event.channel_type} is not WhatsApp"
    return None


def handle_inbound_event(
    db: Session,
    payload: Any,
    *,
    generator: ResponseGenerator,
    delivery: DeliveryChannel,
    now: Optional[datetime] = None,
    flag_name: Optional[str] = None,
) -> IngestResult:
    try:
        event = validate_event(payload)
    except EventValidationError as exc:
        logger.warning("Inbound event rejected", extra={"context": {"error": str(exc)}})
        return IngestResult(action="rejected", message=str(exc))

    log_context = {
        "conversation_id": event.conversation_id,
        "external_message_id": event.external_message_id,
    }

    ignore_reason = get_ignore_reason(event)
    if ignore_reason:
        logger.info("Inbound event ignored", extra={"context": {**log_context, "reason": ignore_reason}})
        return IngestResult(action="ignored", message=ignore_reason)

    flag_name = flag_name or settings.buffering_flag_name
    if not is_feature_enabled(db, flag_name):
        logger.info(
            "Fallback triggered: buffering disabled",
            extra={"context": {**log_context, "reason": "buffering_disabled"}},
        )
        return _run_fallback(event, generator=generator, delivery=delivery)

    try:
        outcome = buffer_manager.handle(db, event.conversation_id, event, now=now)
    except Exception as exc:
        db.rollback()
        logger.error(
            "Fallback triggered: buffer manager unavailable",
            extra={"context": {**log_context, "reason": "buffer_manager_error", "error": str(exc)}},
        )
        return _run_fallback(event, generator=generator, delivery=delivery)

    return IngestResult(
        action="buffered",
        session_id=outcome.session_id,
        message=f"Message added to buffer. Buffer has {outcome.message_count} messages.",
    )


def _run_fallback(
    event: InboundMessageEvent,
    *,
    generator: ResponseGenerator,
    delivery: DeliveryChannel,
) -> IngestResult:
    result = process_single_message(event, generator=generator, delivery=delivery)
    if result.ok:
        message = "Processed via fallback" if result.responded else "Processed via fallback, no reply needed"
    else:
        message = f"Fallback processing failed: {result.error}"
    return IngestResult(action="fallback", message=message, reply_sent=result.responded)
