"""
Health and queue observability endpoints
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pantry_jobs.database import get_db
from pantry_jobs.models.queue_job import COMPLETED
from pantry_jobs.schemas.jobs import QueueName
from pantry_jobs.services import job_manager
from pantry_jobs.services.gateway import get_gateway
from pantry_jobs.services.redis_client import is_redis_healthy
from pantry_jobs.utils.metrics import get_snapshot

router = APIRouter()

RECENT_JOBS = 4


def _iso(value):
    return value.isoformat() if value else None


async def _lane_metrics(db: AsyncSession, lane: QueueName) -> dict:
    counts = await job_manager.get_counts(db, lane)
    recent = await job_manager.get_jobs(db, lane, states=[COMPLETED], limit=RECENT_JOBS, newest_first=True)

    durations = [
        (job.finished_at - job.started_at).total_seconds()
        for job in recent
        if job.finished_at and job.started_at
    ]
    return {
        "name": lane.value,
        "counts": counts,
        "avgProcessingSeconds": round(sum(durations) / len(durations), 2) if durations else None,
        "recent": [
            {"jobId": job.id, "enqueuedAt": _iso(job.enqueued_at), "finishedAt": _iso(job.finished_at)}
            for job in recent
        ],
    }


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.get("/health/queues")
async def queue_health(db: AsyncSession = Depends(get_db)):
    """System health: lane counts, recent completions, Redis and circuit states."""
    return {
        "status": "ok",
        "queues": [await _lane_metrics(db, lane) for lane in QueueName],
        "redis": await is_redis_healthy(),
        "circuits": get_gateway().get_circuit_states(),
        "metrics": get_snapshot(),
    }
