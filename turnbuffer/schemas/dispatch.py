from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class GeneratorDecision(BaseModel):
    should_respond: bool
    content: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    intent: str

    @model_validator(mode="after")
    def require_content_when_responding(self) -> "GeneratorDecision":
        if self.should_respond and not (self.content and self.content.strip()):
            raise ValueError("should_respond is true but content is empty")
        return self


class SweepResult(BaseModel):
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    reclaimed: int = 0


class DispatchJobView(BaseModel):
    id: UUID
    status: str
    due_at: datetime
    attempts: int
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None


class BufferSessionView(BaseModel):
    id: UUID
    conversation_id: str
    user_id: str
    status: str
    started_at: datetime
    last_message_at: datetime
    ended_at: Optional[datetime] = None
    message_count: int
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    job: Optional[DispatchJobView] = None


class BufferedMessageView(BaseModel):
    id: UUID
    external_message_id: str
    body: Optional[str] = None
    kind: str
    attachments: list[Any] = []
    sender_info: dict[str, Any] = {}
    received_at: datetime
    consumed: bool


class BufferedMessagesResponse(BaseModel):
    session_id: UUID
    count: int
    messages: list[BufferedMessageView]
