import uuid

from sqlalchemy import Boolean, Column, Text, Uuid
from sqlalchemy.sql import func

from turnbuffer.database import Base, UTCDateTime


class FeatureFlag(Base):
    __tablename__ = "feature_flags"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    flag_name = Column(Text, nullable=False, unique=True)
    is_enabled = Column(Boolean, nullable=False, default=False)
    description = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now())
