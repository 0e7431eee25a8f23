# Built-in job handlers, one per lane
from pantry_jobs.handlers.ai import handle_ai_job
from pantry_jobs.handlers.audit import handle_audit_job
from pantry_jobs.handlers.image import handle_image_job
from pantry_jobs.schemas.jobs import QueueName

DEFAULT_HANDLERS = {
    QueueName.IMAGE_PROCESSING: handle_image_job,
    QueueName.AI_ANALYSIS: handle_ai_job,
    QueueName.AUDIT_LOGGING: handle_audit_job,
}

__all__ = [
    "DEFAULT_HANDLERS",
    "handle_ai_job",
    "handle_audit_job",
    "handle_image_job",
]
