import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from turnbuffer.database import Base, UTCDateTime


class DispatchJob(Base):
    __tablename__ = "dispatch_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(
        Uuid, ForeignKey("buffer_sessions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    due_at = Column(UTCDateTime, nullable=False)
    status = Column(Text, nullable=False, default="scheduled")  # scheduled, claimed, done, failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    claimed_at = Column(UTCDateTime)
    processed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    session = relationship("BufferSession", back_populates="job")

    __table_args__ = (Index("idx_dispatch_jobs_status_due", "status", "due_at"),)
