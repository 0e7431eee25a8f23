"""
Audit records written by worker handlers (OCR processed, AI action completed, ...).
"""
import uuid

from sqlalchemy import Column, String, DateTime, JSON
from pantry_jobs.database import Base
from pantry_jobs.models.queue_job import utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(255), nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
