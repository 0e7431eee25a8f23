"""
Bounded polling of one job until it reaches a terminal state.

A poller makes at most max_attempts status requests, sleeping interval
seconds between them, so the worst case wait is about
interval * max_attempts (60s with the defaults). Transport failures are
retried; authorization and not-found responses end polling at once.
"""
import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pantry_jobs.client.clock import Clock, SystemClock
from pantry_jobs.client.errors import (
    ClientError,
    JobFailedError,
    JobForbiddenError,
    JobNotFoundError,
    PollCancelledError,
    PollTimeoutError,
    TransportError,
)
from pantry_jobs.client.transport import JobStatusTransport, StatusSnapshot
from pantry_jobs.models.queue_job import COMPLETED, FAILED
from pantry_jobs.schemas.jobs import ITEM_EXTRACTION_QUEUES, QueueName
from pantry_jobs.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVAL = 2.0
DEFAULT_MAX_ATTEMPTS = 30

Callback = Callable[..., Union[None, Awaitable[None]]]


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    RESOLVED = "resolved"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def completed_result(queue_name: QueueName, snapshot: StatusSnapshot) -> Dict[str, Any]:
    """Result of a completed job; item lanes always get a data list."""
    result = dict(snapshot.result) if isinstance(snapshot.result, dict) else {}
    if queue_name in ITEM_EXTRACTION_QUEUES and not isinstance(result.get("data"), list):
        result["data"] = []
    return result


async def _invoke(callback: Optional[Callback], *args) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


class JobPoller:
    """
    Single-use poller for one job id.

    Use poll() to await the outcome directly, or start() to run it in the
    background with callbacks. cancel() stops further requests and
    suppresses callbacks; a request already in flight still completes.
    """

    def __init__(
        self,
        transport: JobStatusTransport,
        queue_name: QueueName = QueueName.IMAGE_PROCESSING,
        interval: float = DEFAULT_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Clock] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.transport = transport
        self.queue_name = QueueName(queue_name)
        self.interval = interval
        self.max_attempts = max_attempts
        self.clock = clock or SystemClock()

        self.state = PollState.IDLE
        self.attempts = 0
        self.job_id: Optional[str] = None
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def poll(self, job_id: str) -> Dict[str, Any]:
        """
        Poll until the job completes and return its result.

        Raises JobFailedError, PollTimeoutError, JobForbiddenError,
        JobNotFoundError or PollCancelledError.
        """
        if self._cancelled:
            raise PollCancelledError(job_id)
        if self.state is not PollState.IDLE:
            raise RuntimeError(f"Poller already used (state={self.state.value})")
        self.job_id = job_id
        self.state = PollState.POLLING
        last_error: Optional[TransportError] = None

        for attempt in range(1, self.max_attempts + 1):
            if self._cancelled:
                self.state = PollState.CANCELLED
                raise PollCancelledError(job_id)

            self.attempts = attempt
            try:
                snapshot = await self.transport.fetch_status(self.queue_name, job_id)
            except TransportError as e:
                last_error = e
                logger.warning(
                    "poll.transport_error",
                    extra={"job_id": job_id, "attempt": attempt, "error": str(e)},
                )
            except (JobForbiddenError, JobNotFoundError):
                self.state = PollState.FAILED
                raise
            else:
                last_error = None
                if snapshot.status == COMPLETED:
                    self.state = PollState.RESOLVED
                    return completed_result(self.queue_name, snapshot)
                if snapshot.status == FAILED:
                    self.state = PollState.FAILED
                    raise JobFailedError(job_id, snapshot.error or "Job failed")

            if attempt < self.max_attempts:
                await self.clock.sleep(self.interval)

        self.state = PollState.TIMED_OUT
        logger.warning("poll.timeout", extra={"job_id": job_id, "attempt": self.attempts})
        raise PollTimeoutError(job_id, self.attempts, last_error)

    def start(
        self,
        job_id: str,
        on_resolved: Optional[Callback] = None,
        on_failed: Optional[Callback] = None,
    ) -> asyncio.Task:
        """
        Poll in a background task.

        on_resolved(result) or on_failed(error) is called exactly once
        unless the poller is cancelled first.
        """
        self._task = asyncio.create_task(self._run(job_id, on_resolved, on_failed))
        return self._task

    async def _run(self, job_id: str, on_resolved: Optional[Callback], on_failed: Optional[Callback]) -> None:
        try:
            result = await self.poll(job_id)
        except PollCancelledError:
            return
        except ClientError as e:
            if not self._cancelled:
                await self._notify(job_id, on_failed, e)
            return
        if not self._cancelled:
            await self._notify(job_id, on_resolved, result)

    async def _notify(self, job_id: str, callback: Optional[Callback], arg: Any) -> None:
        try:
            await _invoke(callback, arg)
        except Exception as e:
            logger.error(
                "poll.callback_failed",
                extra={"job_id": job_id, "error": str(e), "error_type": type(e).__name__},
            )

    def cancel(self) -> None:
        """Stop polling. Safe to call in any state."""
        self._cancelled = True
        if self.state in (PollState.IDLE, PollState.POLLING):
            self.state = PollState.CANCELLED
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for a started poller to finish, including after cancel()."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
