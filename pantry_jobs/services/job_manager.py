"""
Database-backed job queue store, one table for every lane.

Usage:
    job_id = await job_manager.enqueue_job(db, "image-processing", owner_id, {...})
    job = await job_manager.claim_next_job(db, "image-processing", worker_id="w-1")
    await job_manager.complete_job(db, job.id, result, lease_token=job.lease_token)

Every state change is a conditional UPDATE (compare-and-set on the current
state, and on the lease token where one is given), so two callers can never
both win the same transition. On PostgreSQL candidate rows are additionally
selected with FOR UPDATE SKIP LOCKED so concurrent claimers fan out over
different rows instead of colliding.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
import uuid

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from pantry_jobs.errors import InvalidTransition, JobNotFound, StoreUnavailable
from pantry_jobs.models.queue_job import (
    QueueJob, WAITING, ACTIVE, COMPLETED, FAILED, STATES, TERMINAL_STATES, utcnow,
)
from pantry_jobs.schemas.jobs import QueueName, parse_queue_name
from pantry_jobs.services import queue_signal
from pantry_jobs.utils.logger import logger

# How many waiting rows a claimer looks at per round
CLAIM_CANDIDATES = 5
MAX_REASON_LENGTH = 1000

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, OSError)


def _lane(queue_name: Union[str, QueueName]) -> str:
    if isinstance(queue_name, QueueName):
        return queue_name.value
    return parse_queue_name(queue_name).value


def _is_postgres(db: AsyncSession) -> bool:
    return db.bind is not None and db.bind.dialect.name == "postgresql"


async def enqueue_job(
    db: AsyncSession,
    queue_name: Union[str, QueueName],
    owner_id: str,
    payload: Optional[Dict[str, Any]] = None,
    max_attempts: int = 3,
) -> str:
    """Create a waiting job and return its ID"""
    lane = _lane(queue_name)
    job_id = str(uuid.uuid4())
    job = QueueJob(
        id=job_id,
        queue_name=lane,
        owner_id=owner_id,
        state=WAITING,
        payload=payload or {},
        max_attempts=max_attempts,
        enqueued_at=utcnow(),
    )
    try:
        db.add(job)
        await db.commit()
    except _UNAVAILABLE_ERRORS as exc:
        await db.rollback()
        logger.error("job.enqueue_failed", extra={"queue": lane, "error": str(exc)[:500]})
        raise StoreUnavailable(f"Queue store unavailable: {exc}") from exc

    logger.info("job.enqueued", extra={"job_id": job_id, "queue": lane, "owner_id": owner_id})
    await queue_signal.notify(lane)
    return job_id


async def get_job(db: AsyncSession, job_id: str) -> Optional[QueueJob]:
    """Get the raw QueueJob row, always reloaded from the database"""
    result = await db.execute(
        select(QueueJob)
        .where(QueueJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_jobs(
    db: AsyncSession,
    queue_name: Union[str, QueueName],
    states: Optional[Iterable[str]] = None,
    offset: int = 0,
    limit: int = 50,
    newest_first: bool = False,
) -> List[QueueJob]:
    """List jobs of a lane, optionally filtered by state, ordered by enqueue time"""
    query = select(QueueJob).where(QueueJob.queue_name == _lane(queue_name))
    if states:
        wanted = list(states)
        unknown = set(wanted) - set(STATES)
        if unknown:
            raise ValueError(f"Unknown job states: {', '.join(sorted(unknown))}")
        query = query.where(QueueJob.state.in_(wanted))

    order = QueueJob.enqueued_at.desc() if newest_first else QueueJob.enqueued_at.asc()
    query = query.order_by(order, QueueJob.id).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_counts(db: AsyncSession, queue_name: Union[str, QueueName]) -> Dict[str, int]:
    """Number of jobs per state in one lane"""
    result = await db.execute(
        select(QueueJob.state, func.count(QueueJob.id))
        .where(QueueJob.queue_name == _lane(queue_name))
        .group_by(QueueJob.state)
    )
    counts = {state: 0 for state in STATES}
    for state, count in result.all():
        counts[state] = count
    return counts


async def claim_next_job(
    db: AsyncSession,
    queue_name: Union[str, QueueName],
    worker_id: str,
    lease_seconds: float = 120.0,
) -> Optional[QueueJob]:
    """
    Atomically move one waiting job of the lane to active and return it.

    Returns None when nothing is waiting. Ordering is oldest-first per round
    but is not guaranteed once several workers claim concurrently.
    """
    lane = _lane(queue_name)

    while True:
        query = (
            select(QueueJob.id)
            .where(QueueJob.queue_name == lane, QueueJob.state == WAITING)
            .order_by(QueueJob.enqueued_at.asc())
            .limit(CLAIM_CANDIDATES)
        )
        if _is_postgres(db):
            query = query.with_for_update(skip_locked=True)

        candidate_ids = list((await db.execute(query)).scalars().all())
        if not candidate_ids:
            await db.commit()
            return None

        for job_id in candidate_ids:
            now = utcnow()
            token = str(uuid.uuid4())
            result = await db.execute(
                update(QueueJob)
                .where(QueueJob.id == job_id, QueueJob.state == WAITING)
                .values(
                    state=ACTIVE,
                    attempts=QueueJob.attempts + 1,
                    worker_id=worker_id,
                    lease_token=token,
                    lease_expires_at=now + timedelta(seconds=lease_seconds),
                    started_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await db.commit()
                job = await get_job(db, job_id)
                logger.info(
                    "job.claimed",
                    extra={"job_id": job_id, "queue": lane, "worker_id": worker_id, "attempt": job.attempts},
                )
                return job
        # Every candidate was taken by someone else between select and update; look again
        await db.commit()


async def _finish(
    db: AsyncSession,
    job_id: str,
    values: Dict[str, Any],
    lease_token: Optional[str],
) -> None:
    now = utcnow()
    conditions = [QueueJob.id == job_id, QueueJob.state == ACTIVE]
    if lease_token is not None:
        conditions.append(QueueJob.lease_token == lease_token)

    result = await db.execute(
        update(QueueJob)
        .where(*conditions)
        .values(
            finished_at=now,
            updated_at=now,
            lease_token=None,
            lease_expires_at=None,
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        await db.commit()
        return

    await db.rollback()
    current = await get_job(db, job_id)
    if current is None:
        raise JobNotFound(job_id)
    expected = "active" if lease_token is None else "active under this lease"
    raise InvalidTransition(job_id, expected, current.state)


async def complete_job(
    db: AsyncSession,
    job_id: str,
    result: Dict[str, Any],
    lease_token: Optional[str] = None,
) -> None:
    """Mark an active job as completed with its result"""
    await _finish(
        db, job_id,
        {"state": COMPLETED, "result": result, "failure_reason": None},
        lease_token,
    )
    logger.info("job.completed", extra={"job_id": job_id})


async def fail_job(
    db: AsyncSession,
    job_id: str,
    reason: str,
    lease_token: Optional[str] = None,
) -> None:
    """Mark an active job as failed with a human-readable reason"""
    reason = (reason or "Job failed")[:MAX_REASON_LENGTH]
    await _finish(
        db, job_id,
        {"state": FAILED, "result": None, "failure_reason": reason},
        lease_token,
    )
    logger.error("job.failed", extra={"job_id": job_id, "reason": reason})


async def renew_lease(
    db: AsyncSession,
    job_id: str,
    lease_token: str,
    lease_seconds: float,
) -> bool:
    """Extend the lease of a job still held under lease_token. False if the lease was lost."""
    now = utcnow()
    result = await db.execute(
        update(QueueJob)
        .where(
            QueueJob.id == job_id,
            QueueJob.state == ACTIVE,
            QueueJob.lease_token == lease_token,
        )
        .values(lease_expires_at=now + timedelta(seconds=lease_seconds), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


def exhaustion_reason(job: QueueJob) -> str:
    return (
        f"Job stalled: lease expired after {job.attempts} of {job.max_attempts} attempts; "
        "no worker finished it"
    )


async def requeue_stalled_jobs(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Tuple[int, int]:
    """
    Sweep active jobs whose lease expired.

    Jobs with attempts left go back to waiting; the rest are failed with an
    exhaustion reason. Returns (requeued, exhausted).
    """
    now = now or utcnow()
    result = await db.execute(
        select(QueueJob).where(
            QueueJob.state == ACTIVE,
            QueueJob.lease_expires_at.is_not(None),
            QueueJob.lease_expires_at < now,
        )
        .execution_options(populate_existing=True)
    )
    stalled = list(result.scalars().all())
    lanes = {job.queue_name for job in stalled}

    requeued = exhausted = 0
    for job in stalled:
        conditions = [
            QueueJob.id == job.id,
            QueueJob.state == ACTIVE,
            QueueJob.lease_token == job.lease_token,
            QueueJob.lease_expires_at < now,
        ]
        if job.attempts < job.max_attempts:
            values = dict(
                state=WAITING,
                worker_id=None,
                lease_token=None,
                lease_expires_at=None,
                started_at=None,
                updated_at=now,
            )
        else:
            values = dict(
                state=FAILED,
                failure_reason=exhaustion_reason(job),
                lease_token=None,
                lease_expires_at=None,
                finished_at=now,
                updated_at=now,
            )

        outcome = await db.execute(
            update(QueueJob).where(*conditions).values(**values)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            # Renewed or finished since the select
            continue
        if values["state"] == WAITING:
            requeued += 1
            logger.warning(
                "job.requeued",
                extra={"job_id": job.id, "queue": job.queue_name, "worker_id": job.worker_id, "attempt": job.attempts},
            )
        else:
            exhausted += 1
            logger.error(
                "job.exhausted",
                extra={"job_id": job.id, "queue": job.queue_name, "attempt": job.attempts},
            )

    await db.commit()
    for lane in lanes:
        await queue_signal.notify(lane)
    return requeued, exhausted


async def cleanup_old_jobs(
    db: AsyncSession,
    max_age_hours: int = 72,
) -> int:
    """Delete completed/failed jobs finished more than max_age_hours ago. Returns count deleted."""
    cutoff = utcnow() - timedelta(hours=max_age_hours)
    result = await db.execute(
        delete(QueueJob)
        .where(QueueJob.state.in_(list(TERMINAL_STATES)), QueueJob.finished_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    count = result.rowcount
    if count > 0:
        logger.info("job.cleanup", extra={"deleted": count})
    return count


async def clear_queue(db: AsyncSession, queue_name: Union[str, QueueName]) -> int:
    """Remove every job of a lane regardless of state. Returns count deleted."""
    lane = _lane(queue_name)
    result = await db.execute(
        delete(QueueJob)
        .where(QueueJob.queue_name == lane)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.warning("job.queue_cleared", extra={"queue": lane, "deleted": result.rowcount})
    return result.rowcount
