"""
Job status lookup with ownership check and result shaping.

The response always has the same keys. For item-extraction lanes a completed
job's result carries a "data" list even when the stored result has none.
"""
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from pantry_jobs.errors import JobForbidden, JobNotFound
from pantry_jobs.models.queue_job import QueueJob, COMPLETED, FAILED
from pantry_jobs.schemas.jobs import ITEM_EXTRACTION_QUEUES, QueueName, parse_queue_name
from pantry_jobs.services import job_manager


def shape_result(queue_name: str, result: Optional[Any]) -> Dict[str, Any]:
    """Give a completed job's result its wire shape."""
    shaped = dict(result) if isinstance(result, dict) else {}
    if queue_name in {q.value for q in ITEM_EXTRACTION_QUEUES}:
        if not isinstance(shaped.get("data"), list):
            shaped["data"] = []
    return shaped


def to_status_response(job: QueueJob) -> Dict[str, Any]:
    payload = job.payload if isinstance(job.payload, dict) else {}
    return {
        "success": True,
        "jobId": job.id,
        "queue": job.queue_name,
        "status": job.state,
        "inventoryId": payload.get("inventory_id"),
        "result": shape_result(job.queue_name, job.result) if job.state == COMPLETED else None,
        "error": (job.failure_reason or "Job failed") if job.state == FAILED else None,
    }


async def get_job_status(
    db: AsyncSession,
    job_id: str,
    requester_id: str,
    queue_name: Optional[Union[str, QueueName]] = None,
) -> Dict[str, Any]:
    """
    Status of one job as seen by requester_id.

    Raises JobNotFound for unknown ids (or an id from another lane than
    queue_name) and JobForbidden when the requester did not create the job.
    """
    job = await job_manager.get_job(db, job_id)
    if job is None:
        raise JobNotFound(job_id)
    if queue_name is not None:
        lane = queue_name if isinstance(queue_name, QueueName) else parse_queue_name(queue_name)
        if job.queue_name != lane.value:
            raise JobNotFound(job_id)
    if job.owner_id != requester_id:
        raise JobForbidden(job_id)
    return to_status_response(job)
