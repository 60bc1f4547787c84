from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional
from uuid import UUID


@dataclass
class AttachmentInfo:
    type: str
    url: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = None
    transcription: Optional[str] = None


@dataclass
class AggregatedContext:
    """Everything the generator sees about one conversational turn."""

    conversation_id: str
    user_id: str
    message_count: int
    time_span_seconds: float
    combined_text: str
    audio_transcripts: List[str] = field(default_factory=list)
    attachments: List[AttachmentInfo] = field(default_factory=list)
    sender: dict = field(default_factory=dict)
    urgency_score: int = 5


@dataclass
class MessageContext:
    """Single-message context used by the fallback path."""

    conversation_id: str
    external_message_id: str
    text: str
    kind: str = "text"
    attachments: List[AttachmentInfo] = field(default_factory=list)
    sender: dict = field(default_factory=dict)


class ResponseGenerator(ABC):
    """Downstream generator that decides whether and what to reply.

    Both methods return a raw decision dict:
    {"should_respond": bool, "content": str | None, "confidence": float, "intent": str}
    """

    @abstractmethod
    def generate(self, session_id: UUID, context: AggregatedContext) -> dict[str, Any]:
        """Decide on a reply for a whole buffered turn."""
        pass

    @abstractmethod
    def generate_single(self, context: MessageContext) -> dict[str, Any]:
        """Decide on a reply for one message (fallback path)."""
        pass
