import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from turnbuffer.database import Base, UTCDateTime
from turnbuffer.models.types import JSONType


class BufferedMessage(Base):
    __tablename__ = "buffered_messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("buffer_sessions.id", ondelete="CASCADE"), nullable=False)
    external_message_id = Column(Text, nullable=False)
    body = Column(Text)
    kind = Column(Text, nullable=False, default="text")  # text, audio, image, file
    content_type = Column(Text)
    attachments = Column(JSONType, nullable=False, default=list)
    sender_info = Column(JSONType, nullable=False, default=dict)
    conversation_info = Column(JSONType, nullable=False, default=dict)
    received_at = Column(UTCDateTime, nullable=False)
    consumed = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())

    session = relationship("BufferSession", back_populates="messages")

    __table_args__ = (Index("idx_buffered_messages_session_received", "session_id", "received_at"),)
