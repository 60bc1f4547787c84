from datetime import datetime
from typing import Annotated, Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, field_validator, model_validator


def _coerce_id(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


ExternalId = Annotated[str, BeforeValidator(_coerce_id)]

MESSAGE_TYPE_ALIASES = {
    "text": "text",
    "incoming": "text",
    "audio": "audio",
    "voice": "audio",
    "ptt": "audio",
    "image": "image",
    "photo": "image",
    "picture": "image",
    "file": "file",
    "document": "file",
    "attachment": "file",
    "video": "file",
}


class SenderInfo(BaseModel):
    id: ExternalId
    name: Optional[str] = None
    phone_number: Optional[str] = None
    identifier: Optional[str] = None

    @field_validator("id")
    @classmethod
    def require_id(cls, value: str) -> str:
        if not value:
            raise ValueError("sender id is empty")
        return value


class Attachment(BaseModel):
    model_config = ConfigDict(extra="allow")

    content_type: Optional[str] = None
    file_type: Optional[str] = None
    data_url: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    transcription: Optional[str] = None


class InboundMessageEvent(BaseModel):
    """Inbound message event as handed over by the webhook parser."""

    external_message_id: ExternalId
    conversation_id: ExternalId
    sender: SenderInfo
    body: Optional[str] = None
    attachments: list[Attachment] = []
    received_at: Optional[datetime] = None
    channel_type: str = "whatsapp"
    direction: Literal["incoming", "outgoing"] = "incoming"
    message_type: Optional[str] = None  # platform message type (text, voice, photo, ...)
    content_type: Optional[str] = None
    conversation_info: dict[str, Any] = {}

    @field_validator("external_message_id", "conversation_id")
    @classmethod
    def require_non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @model_validator(mode="after")
    def require_content(self) -> "InboundMessageEvent":
        has_body = bool(self.body and self.body.strip())
        if not has_body and not self.attachments:
            raise ValueError("message has neither body nor attachments")
        return self

    def message_kind(self) -> str:
        """Classify as text / audio / image / file from the platform type and first attachment."""
        kind = MESSAGE_TYPE_ALIASES.get((self.message_type or "").strip().lower(), "text")
        if not self.attachments:
            return kind
        first = self.attachments[0]
        content_type = (first.content_type or first.file_type or "").lower()
        if content_type.startswith("audio/") or content_type == "audio":
            return "audio"
        if content_type.startswith("image/") or content_type == "image":
            return "image"
        if (
            content_type.startswith("video/")
            or content_type in {"video", "file"}
            or "document" in content_type
            or content_type.startswith("application/")
        ):
            return "file"
        return kind


class IngestResponse(BaseModel):
    success: bool
    action: Literal["buffered", "fallback", "ignored", "rejected"]
    session_id: Optional[UUID] = None
    message: Optional[str] = None
    reply_sent: Optional[bool] = None
