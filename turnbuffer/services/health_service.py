from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from turnbuffer.config import settings
from turnbuffer.database import utcnow
from turnbuffer.logging_config import get_logger
from turnbuffer.models import BufferSession, DispatchJob
from turnbuffer.services.state_machine import JobStatus, SessionStatus

logger = get_logger("health_service")


def get_buffer_health(db: Session, now: Optional[datetime] = None) -> dict:
    """Counts of buffer sessions and dispatch jobs per status, plus lag indicators."""
    now = now or utcnow()

    sessions = {
        status.value: db.query(BufferSession).filter(BufferSession.status == status.value).count()
        for status in SessionStatus
    }
    jobs = {status.value: db.query(DispatchJob).filter(DispatchJob.status == status.value).count() for status in JobStatus}

    overdue_jobs = (
        db.query(DispatchJob)
        .filter(
            DispatchJob.status == JobStatus.SCHEDULED.value,
            DispatchJob.due_at <= now,
        )
        .count()
    )
    stale_cutoff = now - timedelta(seconds=settings.stale_claim_seconds)
    stale_claims = (
        db.query(DispatchJob)
        .filter(
            DispatchJob.status == JobStatus.CLAIMED.value,
            DispatchJob.claimed_at < stale_cutoff,
        )
        .count()
    )
    if stale_claims:
        logger.warning(f"{stale_claims} dispatch jobs stuck in claimed")

    return {
        "sessions": sessions,
        "jobs": jobs,
        "overdue_jobs": overdue_jobs,
        "stale_claims": stale_claims,
        "checked_at": now.isoformat(),
    }
