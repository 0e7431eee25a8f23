"""
Background job worker: claims jobs from one lane and runs its handler.

Can run as:
  1. Tasks inside the API process (started on FastAPI startup)
  2. Standalone worker process: python -m pantry_jobs.worker

Every claimed job ends in exactly one terminal write: complete_job with the
handler's result, or fail_job with the error message. A worker that dies
before that write leaves the job active until its lease expires; the stall
sweep then puts it back in the lane (or fails it once attempts run out).
"""
import asyncio
import os
import socket
import uuid
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from pantry_jobs.config import get_settings
from pantry_jobs.database import AsyncSessionLocal
from pantry_jobs.errors import HandlerTimeout, InvalidTransition
from pantry_jobs.models.queue_job import QueueJob
from pantry_jobs.schemas.jobs import QueueName, RESULT_TYPES, validate_payload
from pantry_jobs.services import job_manager, queue_signal
from pantry_jobs.utils.logger import logger
from pantry_jobs.utils.metrics import inc, track_duration

Handler = Callable[..., Awaitable[Any]]

# ---------------------------------------------------------------------------
# Job handler registry
# ---------------------------------------------------------------------------
_handlers: Dict[QueueName, Handler] = {}


def register_handler(queue_name: Union[str, QueueName], handler: Handler) -> None:
    """Register an async handler(db, job, payload) for a lane."""
    _handlers[QueueName(queue_name)] = handler


def get_handler(queue_name: QueueName) -> Optional[Handler]:
    return _handlers.get(queue_name)


def register_default_handlers() -> None:
    """Register built-in handlers for every lane."""
    # Imported lazily: handlers pull in the inference client
    from pantry_jobs.handlers import DEFAULT_HANDLERS

    for queue_name, handler in DEFAULT_HANDLERS.items():
        register_handler(queue_name, handler)


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


def _error_message(exc: BaseException) -> str:
    message = str(exc).strip()
    return message if message else type(exc).__name__


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class Worker:
    """
    Drains one lane with up to `concurrency` jobs in flight.

    Ordering between concurrently running jobs is not preserved.
    """

    def __init__(
        self,
        queue_name: Union[str, QueueName],
        session_factory=None,
        handlers: Optional[Dict[QueueName, Handler]] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        max_idle_interval: Optional[float] = None,
        lease_seconds: Optional[float] = None,
        handler_timeout: Optional[float] = None,
        worker_id: Optional[str] = None,
    ):
        settings = get_settings()
        self.queue_name = QueueName(queue_name)
        self.session_factory = session_factory or AsyncSessionLocal
        self.handlers = handlers if handlers is not None else _handlers
        self.concurrency = max(1, concurrency or settings.worker_concurrency)
        self.poll_interval = poll_interval or settings.worker_poll_interval
        self.max_idle_interval = max_idle_interval or settings.worker_max_idle_interval
        self.lease_seconds = lease_seconds or settings.job_lease_seconds
        self.handler_timeout = handler_timeout or settings.handler_timeout_seconds
        self.worker_id = worker_id or _default_worker_id()

        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._in_flight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = False

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self._stopping = False
            self._loop_task = asyncio.create_task(self.run(), name=f"worker:{self.queue_name.value}")
        return self._loop_task

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Stop claiming, then give in-flight jobs drain_timeout seconds to finish."""
        self._stopping = True
        if self._loop_task is not None:
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=drain_timeout)
            for task in pending:
                # Lease expiry hands these back to the lane
                task.cancel()
            if pending:
                logger.warning(
                    "worker.drain_timeout",
                    extra={"queue": self.queue_name.value, "count": len(pending)},
                )
        logger.info("worker.stopped", extra={"queue": self.queue_name.value, "worker_id": self.worker_id})

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # -- main loop ----------------------------------------------------------

    async def run(self) -> None:
        """
        Claim and dispatch jobs until stopped.

        Uses adaptive polling: starts at poll_interval, backs off to
        max_idle_interval while the lane is empty, resets when a job is found.
        """
        lane = self.queue_name.value
        current_interval = self.poll_interval
        logger.info(
            "worker.started",
            extra={"queue": lane, "worker_id": self.worker_id, "count": self.concurrency},
        )

        while not self._stopping:
            await self._semaphore.acquire()
            try:
                job = await self._claim()
            except Exception as exc:
                self._semaphore.release()
                logger.error("worker.poll_error", extra={"queue": lane, "error": str(exc)[:500]})
                await asyncio.sleep(self.max_idle_interval)
                continue

            if job is None:
                self._semaphore.release()
                current_interval = min(current_interval * 1.5, self.max_idle_interval)
                if await queue_signal.wait_for_work(lane, current_interval):
                    current_interval = self.poll_interval
                continue

            current_interval = self.poll_interval
            task = asyncio.create_task(self.execute(job), name=f"job:{job.id}")
            self._in_flight.add(task)
            task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._semaphore.release()

    async def run_once(self) -> int:
        """Process jobs until the lane is empty. Returns how many were executed."""
        processed = 0
        while True:
            batch: List[QueueJob] = []
            for _ in range(self.concurrency):
                job = await self._claim()
                if job is None:
                    break
                batch.append(job)
            if not batch:
                return processed
            await asyncio.gather(*(self.execute(job) for job in batch))
            processed += len(batch)

    async def _claim(self) -> Optional[QueueJob]:
        async with self.session_factory() as db:
            return await job_manager.claim_next_job(
                db, self.queue_name, worker_id=self.worker_id, lease_seconds=self.lease_seconds,
            )

    # -- per job ------------------------------------------------------------

    async def execute(self, job: QueueJob) -> None:
        """Run one claimed job through validate → handler → terminal write."""
        lane = self.queue_name.value
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            async with self.session_factory() as db:
                try:
                    payload = validate_payload(self.queue_name, job.payload or {})
                except ValidationError as exc:
                    first = exc.errors()[0]
                    field = ".".join(str(p) for p in first.get("loc", ())) or "payload"
                    await self._record_failure(db, job, f"Invalid payload: {field}: {first.get('msg')}")
                    return

                handler = self.handlers.get(self.queue_name)
                if handler is None:
                    logger.warning("worker.no_handler", extra={"queue": lane, "job_id": job.id})
                    await self._record_failure(db, job, f"No handler registered for queue: {lane}")
                    return

                try:
                    async with track_duration("handler", lane):
                        value = await self._run_handler(handler, db, job, payload)
                    result = self._shape_result(value)
                except Exception as exc:
                    logger.error(
                        "worker.handler_error",
                        extra={
                            "job_id": job.id,
                            "queue": lane,
                            "error": str(exc)[:500],
                            "error_type": type(exc).__name__,
                        },
                    )
                    await self._record_failure(db, job, _error_message(exc))
                    return

                await self._record_success(db, job, result)
        finally:
            heartbeat.cancel()

    async def _run_handler(self, handler: Handler, db, job: QueueJob, payload: BaseModel) -> Any:
        """Await the handler, cancelling it once handler_timeout has passed."""
        task = asyncio.ensure_future(handler(db, job, payload))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.handler_timeout)
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if not done:
            raise HandlerTimeout(self.handler_timeout)
        return task.result()

    def _shape_result(self, value: Any) -> Dict[str, Any]:
        result_type = RESULT_TYPES[self.queue_name]
        if not isinstance(value, BaseModel):
            try:
                value = result_type.model_validate(value if value is not None else {})
            except ValidationError as exc:
                raise ValueError(f"Handler returned an invalid result: {exc.errors()[0].get('msg')}") from exc
        return value.model_dump(mode="json")

    async def _record_success(self, db, job: QueueJob, result: Dict[str, Any]) -> None:
        try:
            await job_manager.complete_job(db, job.id, result, lease_token=job.lease_token)
            inc(f"jobs.{self.queue_name.value}.completed")
        except InvalidTransition as exc:
            self._lease_lost(job, exc)
        except Exception as exc:
            self._terminal_write_failed(job, exc)

    async def _record_failure(self, db, job: QueueJob, reason: str) -> None:
        try:
            # The handler may have left the session mid-transaction
            await db.rollback()
            await job_manager.fail_job(db, job.id, reason, lease_token=job.lease_token)
            inc(f"jobs.{self.queue_name.value}.failed")
        except InvalidTransition as exc:
            self._lease_lost(job, exc)
        except Exception as exc:
            self._terminal_write_failed(job, exc)

    def _lease_lost(self, job: QueueJob, exc: Exception) -> None:
        # Requeued by the stall sweep while we were running; the new holder reports
        logger.warning(
            "worker.lease_lost",
            extra={"job_id": job.id, "queue": self.queue_name.value, "worker_id": self.worker_id, "error": str(exc)},
        )
        inc(f"jobs.{self.queue_name.value}.lease_lost")

    def _terminal_write_failed(self, job: QueueJob, exc: Exception) -> None:
        # Job stays active until its lease expires and the stall sweep picks it up
        logger.error(
            "worker.record_error",
            extra={"job_id": job.id, "queue": self.queue_name.value, "error": str(exc)[:500]},
        )

    async def _heartbeat(self, job: QueueJob) -> None:
        """Keep the lease alive while the handler runs."""
        interval = max(self.lease_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.session_factory() as db:
                    held = await job_manager.renew_lease(db, job.id, job.lease_token, self.lease_seconds)
            except Exception as exc:
                logger.warning("worker.heartbeat_error", extra={"job_id": job.id, "error": str(exc)[:200]})
                continue
            if not held:
                logger.warning("worker.heartbeat_lost", extra={"job_id": job.id, "worker_id": self.worker_id})
                return


# ---------------------------------------------------------------------------
# Periodic maintenance
# ---------------------------------------------------------------------------

async def run_stall_sweep(session_factory=None, interval_seconds: Optional[float] = None) -> None:
    """Periodically requeue (or fail) active jobs whose lease expired."""
    factory = session_factory or AsyncSessionLocal
    interval = interval_seconds or get_settings().stall_sweep_interval
    while True:
        await asyncio.sleep(interval)
        try:
            async with factory() as db:
                requeued, exhausted = await job_manager.requeue_stalled_jobs(db)
            if requeued or exhausted:
                logger.info("worker.stall_sweep", extra={"requeued": requeued, "exhausted": exhausted})
        except Exception as exc:
            logger.error("worker.stall_sweep_error", extra={"error": str(exc)[:200]})


async def run_cleanup(session_factory=None, interval_hours: int = 6, max_age_hours: Optional[int] = None) -> None:
    """Periodically delete old completed/failed jobs."""
    factory = session_factory or AsyncSessionLocal
    max_age = max_age_hours or get_settings().job_retention_hours
    while True:
        await asyncio.sleep(interval_hours * 3600)
        try:
            async with factory() as db:
                deleted = await job_manager.cleanup_old_jobs(db, max_age_hours=max_age)
            if deleted:
                logger.info("worker.cleanup", extra={"deleted": deleted})
        except Exception as exc:
            logger.error("worker.cleanup_error", extra={"error": str(exc)[:200]})


class WorkerGroup:
    """One Worker per lane plus the stall sweep and retention tasks."""

    def __init__(self, queue_names=None, session_factory=None, **worker_kwargs):
        self.session_factory = session_factory or AsyncSessionLocal
        self.workers = [
            Worker(queue_name, session_factory=self.session_factory, **worker_kwargs)
            for queue_name in (queue_names or list(QueueName))
        ]
        self._maintenance: List[asyncio.Task] = []

    def start(self) -> None:
        for worker in self.workers:
            worker.start()
        if not self._maintenance:
            self._maintenance = [
                asyncio.create_task(run_stall_sweep(self.session_factory), name="worker:stall_sweep"),
                asyncio.create_task(run_cleanup(self.session_factory), name="worker:cleanup"),
            ]

    async def stop(self, drain_timeout: float = 30.0) -> None:
        for task in self._maintenance:
            task.cancel()
        for task in self._maintenance:
            with suppress(asyncio.CancelledError):
                await task
        self._maintenance = []
        await asyncio.gather(*(worker.stop(drain_timeout) for worker in self.workers))

    async def wait(self) -> None:
        await asyncio.gather(*(w.start() for w in self.workers), *self._maintenance)


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run all lanes as a standalone worker process."""
    from pantry_jobs.database import init_db
    from pantry_jobs.services.redis_client import init_redis, close_redis

    await init_db()
    await init_redis()
    register_default_handlers()

    group = WorkerGroup()
    group.start()
    try:
        await group.wait()
    finally:
        await group.stop()
        await close_redis()


def run_forever() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run_forever()
