import uuid

from sqlalchemy import Column, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from turnbuffer.database import Base, UTCDateTime


class BufferSession(Base):
    __tablename__ = "buffer_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, processing, completed
    started_at = Column(UTCDateTime, nullable=False)
    last_message_at = Column(UTCDateTime, nullable=False)
    ended_at = Column(UTCDateTime)
    message_count = Column(Integer, nullable=False, default=0)
    processed_at = Column(UTCDateTime)
    error_message = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    messages = relationship(
        "BufferedMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BufferedMessage.received_at",
    )
    job = relationship(
        "DispatchJob",
        back_populates="session",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "uq_buffer_sessions_active_conversation",
            "conversation_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_buffer_sessions_status_processed", "status", "processed_at"),
    )
