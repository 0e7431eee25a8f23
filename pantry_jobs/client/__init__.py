"""
Client side of the job queue: bounded polling of one job, a registry of
background jobs with exactly-once notification, and local inventory
write tasks.
"""
from pantry_jobs.client.batch import BatchOutcome, HttpInventoryWriter, build_item_payload, run_batch
from pantry_jobs.client.clock import Clock, SystemClock
from pantry_jobs.client.errors import (
    ClientError,
    InventoryConflict,
    InventoryNotFound,
    InventoryValidationError,
    InventoryWriteError,
    JobFailedError,
    JobForbiddenError,
    JobNotFoundError,
    PollCancelledError,
    PollTimeoutError,
    TransportError,
)
from pantry_jobs.client.poller import JobPoller, PollState
from pantry_jobs.client.registry import BackgroundJobRegistry, JobHandle, is_local_id
from pantry_jobs.client.transport import ApiSession, HttpJobStatusTransport, StatusSnapshot

__all__ = [
    "ApiSession",
    "BackgroundJobRegistry",
    "BatchOutcome",
    "ClientError",
    "Clock",
    "HttpInventoryWriter",
    "HttpJobStatusTransport",
    "InventoryConflict",
    "InventoryNotFound",
    "InventoryValidationError",
    "InventoryWriteError",
    "JobFailedError",
    "JobForbiddenError",
    "JobHandle",
    "JobNotFoundError",
    "JobPoller",
    "PollCancelledError",
    "PollState",
    "PollTimeoutError",
    "StatusSnapshot",
    "SystemClock",
    "TransportError",
    "build_item_payload",
    "is_local_id",
    "run_batch",
]
