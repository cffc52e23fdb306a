"""ARQ async worker for outbox jobs and periodic maintenance.

WHAT:
    - `process_outbox_job`: run one outbox job (kicked by the API after commit)
    - `drain_outbox` (cron, every minute): run every due outbox job, including
      retries and jobs whose kick never reached Redis
    - `close_stale_conversations` (cron, every minute): close idle active
      conversations, each close scheduling the conversation-end trigger

WHY:
    The service layer is synchronous SQLAlchemy, so each job runs in a thread
    with its own session. Retries and failure bookkeeping live in the outbox
    rows rather than in arq, which keeps them visible in the database.

USAGE:
    arq careassist.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m careassist.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - careassist/services/outbox.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict
from uuid import UUID

from arq import cron

from careassist.database import SessionLocal
from careassist.deps import get_settings
from careassist.models import OutboxStatusEnum
from careassist.services import conversation_service, outbox
from careassist.telemetry import capture_exception, init_sentry
from careassist.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# JOBS
# =============================================================================

def _run_outbox_job(job_id: str) -> Dict:
    db = SessionLocal()
    try:
        job = outbox.run_job(db, UUID(job_id))
        if job is None:
            return {"success": False, "status": "not_claimed"}
        return {
            "success": job.status == OutboxStatusEnum.succeeded,
            "status": job.status.value,
            "attempts": job.attempts,
        }
    finally:
        db.close()


async def process_outbox_job(ctx: Dict, job_id: str) -> Dict:
    """Run one outbox job. Never raises; outcome is recorded on the row."""
    logger.info("[ARQ] Processing outbox job %s", job_id)
    try:
        return await asyncio.to_thread(_run_outbox_job, job_id)
    except Exception as e:
        logger.exception("[ARQ] Outbox job %s crashed: %s", job_id, e)
        capture_exception(e, extra={"operation": "process_outbox_job", "job_id": job_id})
        return {"success": False, "error": str(e)}


def _drain() -> Dict:
    db = SessionLocal()
    try:
        return outbox.drain_outbox(db, limit=get_settings().OUTBOX_BATCH_SIZE)
    finally:
        db.close()


async def drain_outbox(ctx: Dict) -> Dict:
    try:
        return await asyncio.to_thread(_drain)
    except Exception as e:
        logger.exception("[ARQ] drain_outbox failed: %s", e)
        capture_exception(e, extra={"operation": "drain_outbox"})
        return {"success": False, "error": str(e)}


def _close_stale() -> Dict:
    db = SessionLocal()
    try:
        job_ids = conversation_service.close_stale_conversations(
            db, stale_seconds=get_settings().STALE_CONVERSATION_SECONDS,
        )
        db.commit()
        return {"success": True, "closed": len(job_ids)}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def close_stale_conversations(ctx: Dict) -> Dict:
    try:
        return await asyncio.to_thread(_close_stale)
    except Exception as e:
        logger.exception("[ARQ] close_stale_conversations failed: %s", e)
        capture_exception(e, extra={"operation": "close_stale_conversations"})
        return {"success": False, "error": str(e)}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    init_sentry()
    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up (outbox processor)")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info("[ARQ] Worker shutting down (jobs processed: %s, uptime: %s)", jobs, uptime)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    arq-level retries are off: the outbox owns attempts and backoff.
    """

    functions = [
        process_outbox_job,
        drain_outbox,
        close_stale_conversations,
    ]

    cron_jobs = [
        cron(drain_outbox, second=0, run_at_startup=True, unique=True),
        cron(close_stale_conversations, second=30, unique=True),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 10
    job_timeout = 300
    keep_result = 3600
    retry_jobs = False
    health_check_interval = 30

    queue_name = QUEUE_NAME
