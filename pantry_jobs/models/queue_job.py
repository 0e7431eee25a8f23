"""
SQLAlchemy model for the queue_jobs table: durable job queue shared by all lanes.
"""
from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index
from pantry_jobs.database import Base


# Job states: waiting → active → completed | failed
WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

STATES = (WAITING, ACTIVE, COMPLETED, FAILED)
TERMINAL_STATES = frozenset({COMPLETED, FAILED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueJob(Base):
    __tablename__ = "queue_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    queue_name = Column(String(50), nullable=False, index=True)
    owner_id = Column(String(255), nullable=False, index=True)

    state = Column(String(20), nullable=False, default=WAITING, index=True)

    # Payload and outcome (result and failure_reason are mutually exclusive)
    payload = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)

    # Lease tracking - a claim hands out a fresh lease_token each attempt
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    worker_id = Column(String(100), nullable=True)
    lease_token = Column(String(36), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    enqueued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_queue_jobs_lane_state_enqueued", "queue_name", "state", "enqueued_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def __repr__(self) -> str:
        return f"<QueueJob {self.id} {self.queue_name} {self.state}>"
