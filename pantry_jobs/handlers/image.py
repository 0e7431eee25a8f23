from sqlalchemy.ext.asyncio import AsyncSession

from pantry_jobs.models.queue_job import QueueJob
from pantry_jobs.schemas.jobs import ImageProcessingPayload, ImageProcessingResult
from pantry_jobs.services.audit import record_audit
from pantry_jobs.services.inference import get_inference_client
from pantry_jobs.utils.logger import logger


async def handle_image_job(
    db: AsyncSession,
    job: QueueJob,
    payload: ImageProcessingPayload,
) -> ImageProcessingResult:
    """
    OCR an uploaded image and return the extracted items for user review.

    Items are never added to the inventory here; the client applies the ones
    the user approves.
    """
    logger.info("handler.ocr_started", extra={"job_id": job.id, "attempt": job.attempts})
    analysis = await get_inference_client().analyze_image(payload.image_url)
    items = analysis.get("items") or []

    await record_audit(db, job.owner_id, "OCR_PROCESSED", {
        "jobId": job.id,
        "itemsFound": len(items),
        "inventoryId": payload.inventory_id,
    })

    return ImageProcessingResult(success=True, raw_text=analysis.get("raw_text", ""), data=items)
