# Database models package
from pantry_jobs.models.queue_job import QueueJob
from pantry_jobs.models.audit_log import AuditLog

__all__ = [
    "QueueJob",
    "AuditLog",
]
