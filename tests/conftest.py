import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_WORKER_ENABLED", "false")

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import turnbuffer.models  # noqa: F401
from turnbuffer.database import Base
from turnbuffer.schemas.inbound import InboundMessageEvent
from turnbuffer.services.result import Result

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Real session on an in-memory SQLite database."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def other_db(engine):
    """Second session on the same database, standing in for an overlapping sweep."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def generator():
    generator = Mock()
    generator.generate.return_value = {
        "should_respond": True,
        "content": "Thanks, here is everything in one reply.",
        "confidence": 0.9,
        "intent": "order_question",
    }
    generator.generate_single.return_value = {
        "should_respond": True,
        "content": "Thanks for your message.",
        "confidence": 0.8,
        "intent": "greeting",
    }
    return generator


@pytest.fixture
def delivery():
    delivery = Mock()
    delivery.send.return_value = Result.success("101")
    return delivery


@pytest.fixture
def make_event():
    def _make_event(
        body="hello",
        *,
        conversation_id="conv-1",
        external_message_id=None,
        received_at=None,
        **extra,
    ) -> InboundMessageEvent:
        _make_event.counter += 1
        return InboundMessageEvent(
            external_message_id=external_message_id or f"wamid-{_make_event.counter}",
            conversation_id=conversation_id,
            sender={"id": "user-1", "name": "Aigerim", "phone_number": "+77010000000"},
            body=body,
            received_at=received_at,
            **extra,
        )

    _make_event.counter = 0
    return _make_event
