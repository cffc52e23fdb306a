"""Durable outbox for background work.

WHAT:
    Background work (lead extraction, trigger evaluation, notification
    dispatch) is written as an `OutboxJob` row in the same transaction as the
    state change that caused it. The arq worker then claims and runs it.

WHY:
    - The triggering request never waits on CRM/LLM/notification calls.
    - A job is durable as soon as its trigger commits, so a dead worker or an
      unreachable Redis only delays it; the `drain_outbox` cron picks it up.
    - Claiming is a conditional UPDATE (pending -> running), so two workers
      never run the same job at once.

REFERENCES:
    - careassist/services/job_handlers.py (job name -> handler)
    - careassist/workers/arq_worker.py (process_outbox_job, drain_outbox)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from careassist.models import OutboxJob, OutboxStatusEnum, utcnow
from careassist.telemetry import capture_exception

logger = logging.getLogger(__name__)

JOB_LEAD_EXTRACTION = "lead_extraction"
JOB_EVALUATE_TRIGGER = "evaluate_trigger"
JOB_DISPATCH_NOTIFICATION = "dispatch_notification"

DEFAULT_MAX_ATTEMPTS = 5
# A running job older than this is assumed to belong to a dead worker
STALE_RUNNING_AFTER = timedelta(minutes=15)

JobHandler = Callable[[Session, Dict[str, Any]], Any]


def enqueue_job(
    db: Session,
    job_name: str,
    payload: Dict[str, Any],
    *,
    max_attempts: Optional[int] = None,
) -> OutboxJob:
    """Add a job to the outbox inside the caller's transaction.

    The caller commits. Payload values must be JSON-serializable, so UUIDs
    are stored as strings.
    """
    if max_attempts is None:
        from careassist.deps import get_settings
        max_attempts = get_settings().OUTBOX_MAX_ATTEMPTS

    job = OutboxJob(
        job_name=job_name,
        payload={k: (str(v) if isinstance(v, UUID) else v) for k, v in payload.items()},
        status=OutboxStatusEnum.pending,
        max_attempts=max_attempts,
        available_at=utcnow(),
    )
    db.add(job)
    db.flush()
    logger.info("[OUTBOX] Enqueued %s job %s", job_name, job.id)
    return job


def claim_job(db: Session, job_id: UUID) -> bool:
    """Atomically flip a due pending job to running. Commits.

    Returns:
        True if this caller owns the job now.
    """
    now = utcnow()
    result = db.execute(
        update(OutboxJob)
        .where(
            OutboxJob.id == job_id,
            OutboxJob.status == OutboxStatusEnum.pending,
            OutboxJob.available_at <= now,
        )
        .values(
            status=OutboxStatusEnum.running,
            attempts=OutboxJob.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _retry_delay(attempts: int) -> timedelta:
    return timedelta(seconds=min(30 * (2 ** max(attempts - 1, 0)), 3600))


def run_job(
    db: Session,
    job_id: UUID,
    handlers: Optional[Dict[str, JobHandler]] = None,
) -> Optional[OutboxJob]:
    """Claim and execute one outbox job.

    The handler's writes and the success mark commit together. On failure the
    handler's writes roll back and the job returns to pending with a delay,
    or is marked failed once `max_attempts` is used up.

    Returns:
        The job after execution, or None if it could not be claimed.
    """
    if not claim_job(db, job_id):
        logger.debug("[OUTBOX] Job %s not claimable (already taken, done, or not due)", job_id)
        return None

    if handlers is None:
        from careassist.services.job_handlers import get_job_handlers
        handlers = get_job_handlers()

    job = db.get(OutboxJob, job_id)
    handler = handlers.get(job.job_name)

    try:
        if handler is None:
            raise LookupError(f"No handler registered for job '{job.job_name}'")
        handler(db, dict(job.payload))
        job.status = OutboxStatusEnum.succeeded
        job.completed_at = utcnow()
        job.last_error = None
        db.commit()
        logger.info("[OUTBOX] Job %s (%s) succeeded on attempt %d", job.id, job.job_name, job.attempts)
        return job
    except Exception as e:
        db.rollback()
        logger.exception("[OUTBOX] Job %s failed: %s", job_id, e)
        capture_exception(e, extra={"operation": "run_outbox_job", "job_id": str(job_id)})

        job = db.get(OutboxJob, job_id)
        job.last_error = str(e)[:1000]
        if job.attempts >= job.max_attempts:
            job.status = OutboxStatusEnum.failed
            job.completed_at = utcnow()
            logger.error("[OUTBOX] Job %s (%s) gave up after %d attempts", job.id, job.job_name, job.attempts)
        else:
            job.status = OutboxStatusEnum.pending
            job.available_at = utcnow() + _retry_delay(job.attempts)
        db.commit()
        return job


def release_stale_jobs(db: Session) -> int:
    """Return jobs stuck in running (worker died mid-job) to pending. Commits."""
    cutoff = utcnow() - STALE_RUNNING_AFTER
    result = db.execute(
        update(OutboxJob)
        .where(OutboxJob.status == OutboxStatusEnum.running, OutboxJob.updated_at < cutoff)
        .values(status=OutboxStatusEnum.pending, available_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning("[OUTBOX] Released %d stale running jobs", result.rowcount)
    return result.rowcount


def due_job_ids(db: Session, limit: int = 50) -> List[UUID]:
    rows = (
        db.query(OutboxJob.id)
        .filter(OutboxJob.status == OutboxStatusEnum.pending, OutboxJob.available_at <= utcnow())
        .order_by(OutboxJob.created_at)
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows]


def drain_outbox(
    db: Session,
    *,
    limit: int = 50,
    handlers: Optional[Dict[str, JobHandler]] = None,
) -> Dict[str, int]:
    """Run every due job once, oldest first.

    Jobs enqueued by a handler during the drain are not picked up until the
    next drain.
    """
    release_stale_jobs(db)

    stats = {"claimed": 0, "succeeded": 0, "failed": 0, "retrying": 0}
    for job_id in due_job_ids(db, limit=limit):
        job = run_job(db, job_id, handlers=handlers)
        if job is None:
            continue
        stats["claimed"] += 1
        if job.status == OutboxStatusEnum.succeeded:
            stats["succeeded"] += 1
        elif job.status == OutboxStatusEnum.failed:
            stats["failed"] += 1
        else:
            stats["retrying"] += 1

    if stats["claimed"]:
        logger.info("[OUTBOX] Drain complete: %s", stats)
    return stats
