"""
Client-side error taxonomy.

TransportError is the only retryable one. Authorization and not-found
errors end polling immediately.
"""
from typing import Optional


class ClientError(Exception):
    """Base class for errors raised by the polling client."""


class TransportError(ClientError):
    """Network failure, timeout or server error talking to the API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class JobForbiddenError(ClientError):
    def __init__(self, job_id: str, status_code: int = 403):
        self.job_id = job_id
        self.status_code = status_code
        super().__init__(f"Not allowed to read job {job_id} (HTTP {status_code})")


class JobNotFoundError(ClientError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobFailedError(ClientError):
    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(reason)


class PollTimeoutError(ClientError):
    """Attempts ran out before the job reached a terminal state."""

    def __init__(self, job_id: str, attempts: int, last_error: Optional[TransportError] = None):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        message = "Processing timeout"
        if last_error is not None:
            message += f": last status request failed ({last_error})"
        super().__init__(message)

    @property
    def transport_failure(self) -> bool:
        return self.last_error is not None


class PollCancelledError(ClientError):
    pass


class InventoryWriteError(ClientError):
    """A reviewed item could not be written to the inventory store."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class InventoryNotFound(InventoryWriteError):
    pass


class InventoryValidationError(InventoryWriteError):
    pass


class InventoryConflict(InventoryWriteError):
    pass
