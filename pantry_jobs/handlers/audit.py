from sqlalchemy.ext.asyncio import AsyncSession

from pantry_jobs.models.queue_job import QueueJob
from pantry_jobs.schemas.jobs import AuditLoggingPayload, AuditLoggingResult
from pantry_jobs.services.audit import write_audit


async def handle_audit_job(db: AsyncSession, job: QueueJob, payload: AuditLoggingPayload) -> AuditLoggingResult:
    # A failed write fails the job; a requeue re-inserts, which is acceptable for audit rows
    audit_id = await write_audit(db, job.owner_id, payload.action, payload.details)
    return AuditLoggingResult(audit_log_id=audit_id)
