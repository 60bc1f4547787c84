from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from turnbuffer.database import get_db
from turnbuffer.logging_config import get_logger
from turnbuffer.schemas.inbound import IngestResponse
from turnbuffer.services.collaborators import get_delivery, get_generator
from turnbuffer.services.delivery_service import DeliveryChannel
from turnbuffer.services.generator import ResponseGenerator
from turnbuffer.services.ingest_gate import handle_inbound_event

logger = get_logger("webhook")

router = APIRouter()


@router.post("/webhook/messages", response_model=IngestResponse)
async def receive_message(
    request: Request,
    db: Session = Depends(get_db),
    generator: ResponseGenerator = Depends(get_generator),
    delivery: DeliveryChannel = Depends(get_delivery),
):
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return IngestResponse(success=True, action="ignored", message="Client disconnected")
    except Exception as exc:
        logger.warning("Webhook payload is not valid JSON", extra={"context": {"error": str(exc)}})
        return IngestResponse(success=False, action="rejected", message="Invalid JSON payload")

    if not isinstance(payload, dict):
        return IngestResponse(success=False, action="rejected", message="Invalid payload format")

    result = await run_in_threadpool(
        handle_inbound_event,
        db,
        payload,
        generator=generator,
        delivery=delivery,
    )
    return IngestResponse(
        success=result.action != "rejected",
        action=result.action,
        session_id=result.session_id,
        message=result.message,
        reply_sent=result.reply_sent,
    )
