"""
Server-side error taxonomy for the queue store and the status endpoint.

Routes translate these into HTTP responses; the worker converts anything a
handler raises into a failed job.
"""


class QueueError(Exception):
    """Base class for queue store errors."""


class StoreUnavailable(QueueError):
    """The backing database could not be reached."""


class InvalidTransition(QueueError):
    """A state change was requested that the job lifecycle does not allow."""

    def __init__(self, job_id: str, expected: str, actual: str = None):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        detail = f"Job {job_id} is not {expected}"
        if actual:
            detail += f" (state={actual})"
        super().__init__(detail)


class UnknownQueue(QueueError):
    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Unknown queue: {queue_name}")


class JobNotFound(QueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobForbidden(QueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Unauthorized access to job {job_id}")


class HandlerTimeout(Exception):
    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Handler timed out after {seconds:g}s")


class InferenceError(Exception):
    """Base class for inference service failures."""


class RateLimited(InferenceError):
    pass


class InferenceTimeout(InferenceError):
    pass


class InvalidResponse(InferenceError):
    """The model answered with output that could not be parsed."""
