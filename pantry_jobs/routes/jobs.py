"""
Job queue API routes

POST /jobs/{queue}                    enqueue a job, 202 {jobId}
POST /jobs/image-processing/upload    store an image and enqueue OCR for it
GET  /jobs/{queue}/counts             per-state counts of a lane
GET  /jobs/{queue}/{job_id}           status of one job (owner only)
"""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from pantry_jobs.config import get_settings
from pantry_jobs.database import get_db
from pantry_jobs.errors import JobForbidden, JobNotFound, StoreUnavailable, UnknownQueue
from pantry_jobs.middleware.auth import get_owner_id
from pantry_jobs.schemas.jobs import (
    EnqueueResponse,
    JobStatusResponse,
    QueueName,
    parse_queue_name,
    validate_payload,
)
from pantry_jobs.services import job_manager, job_status, object_storage
from pantry_jobs.utils.logger import logger

router = APIRouter()

limiter = Limiter(key_func=get_remote_address)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def _lane_or_404(queue: str) -> QueueName:
    try:
        return parse_queue_name(queue)
    except UnknownQueue as e:
        raise HTTPException(status_code=404, detail=str(e))


async def _enqueue(db: AsyncSession, lane: QueueName, owner_id: str, payload: Dict[str, Any]) -> str:
    try:
        return await job_manager.enqueue_job(
            db, lane, owner_id, payload, max_attempts=get_settings().job_max_attempts,
        )
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Job queue temporarily unavailable")


@router.post("/image-processing/upload", status_code=202)
@limiter.limit("30/minute")
async def upload_image_for_ocr(
    request: Request,
    image: UploadFile = File(...),
    inventoryId: str = Form(...),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Upload a photo and start OCR in the background.

    Returns a jobId immediately; poll GET /jobs/image-processing/{jobId}.
    """
    if not (image.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image uploads are accepted")
    data = await image.read()
    if not data:
        raise HTTPException(status_code=400, detail="No image file provided")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image larger than 10MB")

    try:
        image_url = await object_storage.store(data, owner_id, image.content_type)
    except object_storage.ObjectStorageError as e:
        raise HTTPException(status_code=502, detail=str(e))

    payload = {"image_url": image_url, "inventory_id": inventoryId}
    job_id = await _enqueue(db, QueueName.IMAGE_PROCESSING, owner_id, payload)
    return {"success": True, "jobId": job_id, "inventoryId": inventoryId}


@router.post("/{queue}", status_code=202, response_model=EnqueueResponse)
@limiter.limit("60/minute")
async def enqueue(
    request: Request,
    queue: str,
    body: Dict[str, Any] = Body(...),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Validate a lane payload and enqueue it. Invalid payloads never create a job."""
    lane = _lane_or_404(queue)
    try:
        payload = validate_payload(lane, body)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    job_id = await _enqueue(db, lane, owner_id, payload.model_dump(mode="json"))
    return {"success": True, "jobId": job_id}


@router.get("/{queue}/counts")
async def get_queue_counts(
    queue: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    lane = _lane_or_404(queue)
    counts = await job_manager.get_counts(db, lane)
    return {"success": True, "queue": lane.value, "counts": counts}


@router.get("/{queue}/{job_id}", response_model=JobStatusResponse)
async def get_job(
    queue: str,
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Status of an async job

    Returns:
    - status: waiting/active/completed/failed
    - result: lane result when completed (item lanes always carry a data list)
    - error: failure reason when failed
    """
    lane = _lane_or_404(queue)
    try:
        return await job_status.get_job_status(db, job_id, owner_id, queue_name=lane)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobForbidden:
        logger.warning("job.forbidden", extra={"job_id": job_id, "owner_id": owner_id})
        raise HTTPException(status_code=403, detail="Unauthorized access to job")
