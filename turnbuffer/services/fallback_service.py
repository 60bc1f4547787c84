from dataclasses import dataclass
from typing import Optional

import pydantic

from turnbuffer.logging_config import get_logger
from turnbuffer.schemas.dispatch import GeneratorDecision
from turnbuffer.schemas.inbound import InboundMessageEvent
from turnbuffer.services.delivery_service import DeliveryChannel
from turnbuffer.services.generator.base import AttachmentInfo, MessageContext, ResponseGenerator

logger = get_logger("fallback_service")


@dataclass
class FallbackResult:
    ok: bool
    responded: bool
    intent: Optional[str] = None
    error: Optional[str] = None


def build_message_context(event: InboundMessageEvent) -> MessageContext:
    kind = event.message_kind()
    return MessageContext(
        conversation_id=event.conversation_id,
        external_message_id=event.external_message_id,
        text=(event.body or "").strip(),
        kind=kind,
        attachments=[
            AttachmentInfo(
                type=kind,
                url=attachment.data_url or attachment.file_url,
                filename=attachment.file_name,
                size=attachment.file_size,
                transcription=attachment.transcription,
            )
            for attachment in event.attachments
        ],
        sender=event.sender.model_dump(exclude_none=True),
    )


def process_single_message(
    event: InboundMessageEvent,
    *,
    generator: ResponseGenerator,
    delivery: DeliveryChannel,
) -> FallbackResult:
    """Handle one message without touching any buffering state."""
    context = build_message_context(event)
    log_context = {
        "conversation_id": event.conversation_id,
        "external_message_id": event.external_message_id,
    }

    try:
        raw = generator.generate_single(context)
    except Exception as exc:
        logger.error("Fallback generator failed", extra={"context": {**log_context, "error": str(exc)}})
        return FallbackResult(ok=False, responded=False, error=f"generator_error: {exc}"[:500])

    try:
        decision = GeneratorDecision.model_validate(raw)
    except pydantic.ValidationError as exc:
        logger.error("Fallback generator returned malformed decision", extra={"context": log_context})
        return FallbackResult(ok=False, responded=False, error=f"invalid_decision: {exc.errors()[:2]}"[:500])

    if not decision.should_respond:
        logger.info("Fallback: generator chose not to respond", extra={"context": log_context})
        return FallbackResult(ok=True, responded=False, intent=decision.intent)

    try:
        sent = delivery.send(event.conversation_id, decision.content)
    except Exception as exc:
        logger.error("Fallback delivery raised", extra={"context": {**log_context, "error": str(exc)}})
        return FallbackResult(ok=False, responded=False, intent=decision.intent, error=f"delivery_error: {exc}"[:500])

    if not sent.ok:
        logger.error("Fallback delivery failed", extra={"context": {**log_context, "error": sent.error}})
        return FallbackResult(ok=False, responded=False, intent=decision.intent, error=sent.error)

    logger.info("Fallback reply delivered", extra={"context": {**log_context, "intent": decision.intent}})
    return FallbackResult(ok=True, responded=True, intent=decision.intent)
