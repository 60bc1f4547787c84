"""
Dispatch scheduler: periodic sweep over due dispatch jobs.

Sweeps may overlap (timer + manual trigger, several workers), so ownership
of a job is decided only by a conditional UPDATE on its row:
scheduled -> claimed succeeds for exactly one caller.
"""

import time
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from turnbuffer.config import settings
from turnbuffer.database import utcnow
from turnbuffer.logging_config import get_logger
from turnbuffer.models import BufferSession, DispatchJob
from turnbuffer.services.alert_service import alert_error
from turnbuffer.services.batch_processor import process_claimed_job
from turnbuffer.services.delivery_service import DeliveryChannel
from turnbuffer.services.errors import PermanentError
from turnbuffer.services.generator.base import ResponseGenerator
from turnbuffer.services.state_machine import JobStatus, SessionStatus

logger = get_logger("dispatch_scheduler")

STALE_CLAIM_ERROR = "stale_claim: job stayed claimed past the reclaim timeout"


def select_due_jobs(db: Session, *, now: datetime, limit: int) -> list[UUID]:
    return list(
        db.execute(
            select(DispatchJob.id)
            .where(
                DispatchJob.status == JobStatus.SCHEDULED.value,
                DispatchJob.due_at <= now,
            )
            .order_by(DispatchJob.due_at)
            .limit(limit)
        ).scalars()
    )


def claim_job(db: Session, job_id: UUID, *, now: Optional[datetime] = None) -> bool:
    """Atomically flip a due job scheduled -> claimed and its session -> processing.

    Returns False when another sweep got there first or the deadline moved.
    """
    now = now or utcnow()
    claimed = db.execute(
        update(DispatchJob)
        .where(
            DispatchJob.id == job_id,
            DispatchJob.status == JobStatus.SCHEDULED.value,
            DispatchJob.due_at <= now,
        )
        .values(status=JobStatus.CLAIMED.value, claimed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        logger.info("Dispatch job claim lost", extra={"context": {"job_id": str(job_id)}})
        return False

    session_id = db.execute(select(DispatchJob.session_id).where(DispatchJob.id == job_id)).scalar_one()
    # Retried jobs already have a processing session; only the first claim closes the turn.
    db.execute(
        update(BufferSession)
        .where(
            BufferSession.id == session_id,
            BufferSession.status == SessionStatus.ACTIVE.value,
        )
        .values(status=SessionStatus.PROCESSING.value, ended_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    logger.info(
        "Dispatch job claimed",
        extra={"context": {"job_id": str(job_id), "session_id": str(session_id)}},
    )
    return True


def release_stale_claims(
    db: Session,
    *,
    now: Optional[datetime] = None,
    stale_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
) -> dict[str, int]:
    """Return jobs stuck in claimed (crash mid-processing) to scheduled, or fail them.

    A released job counts as one used attempt.
    """
    now = now or utcnow()
    stale_seconds = settings.stale_claim_seconds if stale_seconds is None else stale_seconds
    max_attempts = settings.max_attempts if max_attempts is None else max_attempts
    cutoff = now - timedelta(seconds=stale_seconds)

    stale = db.execute(
        select(DispatchJob.id, DispatchJob.session_id, DispatchJob.attempts).where(
            DispatchJob.status == JobStatus.CLAIMED.value,
            DispatchJob.claimed_at < cutoff,
        )
    ).all()

    results = {"released": 0, "failed": 0}
    failed_jobs = []
    for job_id, session_id, attempts in stale:
        attempts = (attempts or 0) + 1
        # The job may have been released and re-claimed by another sweep since the read.
        still_stale = (
            DispatchJob.id == job_id,
            DispatchJob.status == JobStatus.CLAIMED.value,
            DispatchJob.claimed_at < cutoff,
        )
        if attempts >= max_attempts:
            failed = db.execute(
                update(DispatchJob)
                .where(*still_stale)
                .values(
                    status=JobStatus.FAILED.value,
                    attempts=attempts,
                    last_error=STALE_CLAIM_ERROR,
                    processed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if failed.rowcount:
                db.execute(
                    update(BufferSession)
                    .where(BufferSession.id == session_id, BufferSession.status != SessionStatus.COMPLETED.value)
                    .values(
                        status=SessionStatus.COMPLETED.value,
                        processed_at=now,
                        error_message=f"{PermanentError.code}: {STALE_CLAIM_ERROR}",
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                results["failed"] += 1
                failed_jobs.append({"job_id": str(job_id), "session_id": str(session_id), "attempts": attempts})
            continue

        released = db.execute(
            update(DispatchJob)
            .where(*still_stale)
            .values(
                status=JobStatus.SCHEDULED.value,
                attempts=attempts,
                last_error=STALE_CLAIM_ERROR,
                due_at=now,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        results["released"] += released.rowcount

    db.commit()
    if results["released"] or results["failed"]:
        logger.warning("Released stale dispatch claims", extra={"context": results})
    for context in failed_jobs:
        logger.error("Buffer session completed with error", extra={"context": {**context, "error": STALE_CLAIM_ERROR}})
        alert_error("Buffered turn produced no reply", {**context, "error": STALE_CLAIM_ERROR})
    return results


def run_sweep(
    db: Session,
    *,
    generator: ResponseGenerator,
    delivery: DeliveryChannel,
    limit: Optional[int] = None,
    max_sweep_seconds: Optional[float] = None,
    stale_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
    retry_backoff_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """One scheduler tick: reclaim stuck jobs, claim due jobs, process each claimed job."""
    limit = settings.sweep_limit if limit is None else limit
    max_sweep_seconds = settings.max_sweep_seconds if max_sweep_seconds is None else max_sweep_seconds
    max_attempts = settings.max_attempts if max_attempts is None else max_attempts

    results = {"claimed": 0, "completed": 0, "failed": 0, "retried": 0, "skipped": 0, "reclaimed": 0}
    sweep_now = now or utcnow()
    started = time.monotonic()

    released = release_stale_claims(db, now=sweep_now, stale_seconds=stale_seconds, max_attempts=max_attempts)
    results["reclaimed"] = released["released"]
    results["failed"] += released["failed"]

    due_job_ids = select_due_jobs(db, now=sweep_now, limit=limit)
    for job_id in due_job_ids:
        if time.monotonic() - started >= max_sweep_seconds:
            logger.warning(
                "Sweep time budget exhausted, leaving remaining jobs for the next sweep",
                extra={"context": {"remaining": len(due_job_ids) - results["claimed"] - results["skipped"]}},
            )
            break

        if not claim_job(db, job_id, now=sweep_now):
            results["skipped"] += 1
            continue
        results["claimed"] += 1

        outcome = process_claimed_job(
            db,
            job_id,
            generator=generator,
            delivery=delivery,
            claimed_at=sweep_now,
            now=now,
            max_attempts=max_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
        )
        results[outcome] += 1

    logger.info("Dispatch sweep finished", extra={"context": results})
    return results
