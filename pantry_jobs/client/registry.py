"""
Registry of background jobs the client is waiting on.

Remote jobs are polled on a fixed tick; local tasks (ids starting with
"task-") run in this process and are never sent to the status API. Every
handle notifies listeners exactly once when it reaches a terminal state,
then stays visible for a grace period before it is pruned.
"""
import asyncio
import inspect
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from pantry_jobs.client.batch import run_batch
from pantry_jobs.client.clock import Clock, SystemClock
from pantry_jobs.client.errors import JobForbiddenError, JobNotFoundError, TransportError
from pantry_jobs.client.poller import completed_result
from pantry_jobs.client.transport import JobStatusTransport, StatusSnapshot
from pantry_jobs.models.queue_job import ACTIVE, COMPLETED, FAILED
from pantry_jobs.schemas.jobs import QueueName
from pantry_jobs.utils.logger import get_logger

logger = get_logger(__name__)

LOCAL_TASK_PREFIX = "task-"
DEFAULT_TICK_INTERVAL = 2.0
DEFAULT_GRACE_PERIOD = 5.0
DEFAULT_STALE_AFTER = 600.0

Listener = Callable[["JobHandle"], Union[None, Awaitable[None]]]


def is_local_id(job_id: str) -> bool:
    return job_id.startswith(LOCAL_TASK_PREFIX)


@dataclass
class JobHandle:
    id: str
    queue_name: QueueName = QueueName.IMAGE_PROCESSING
    owner_context: Optional[str] = None
    status: str = ACTIVE
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: float = 0.0
    finished_at: Optional[float] = None
    notified: bool = False
    local: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (COMPLETED, FAILED)


class BackgroundJobRegistry:
    def __init__(
        self,
        transport: Optional[JobStatusTransport] = None,
        clock: Optional[Clock] = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        stale_after: Optional[float] = DEFAULT_STALE_AFTER,
        on_job_ready: Optional[Listener] = None,
    ):
        self.transport = transport
        self.clock = clock or SystemClock()
        self.tick_interval = tick_interval
        self.grace_period = grace_period
        self.stale_after = stale_after

        self._handles: Dict[str, JobHandle] = {}
        self._listeners: List[Listener] = []
        self._tick_task: Optional[asyncio.Task] = None
        self._detached: Set[asyncio.Task] = set()
        if on_job_ready is not None:
            self._listeners.append(on_job_ready)

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def register(
        self,
        job_id: str,
        owner_context: Optional[str] = None,
        queue_name: QueueName = QueueName.IMAGE_PROCESSING,
    ) -> JobHandle:
        """Track a job. Registering an id twice returns the existing handle."""
        existing = self._handles.get(job_id)
        if existing is not None:
            return existing
        handle = JobHandle(
            id=job_id,
            queue_name=QueueName(queue_name),
            owner_context=owner_context,
            created_at=self.clock.now(),
            local=is_local_id(job_id),
        )
        self._handles[job_id] = handle
        logger.debug("registry.registered", extra={"job_id": job_id, "queue": handle.queue_name.value})
        return handle

    def remove(self, job_id: str) -> bool:
        return self._handles.pop(job_id, None) is not None

    def get(self, job_id: str) -> Optional[JobHandle]:
        return self._handles.get(job_id)

    @property
    def handles(self) -> List[JobHandle]:
        return list(self._handles.values())

    @property
    def pending(self) -> List[JobHandle]:
        return [handle for handle in self._handles.values() if handle.status == ACTIVE]

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> None:
        """Query every active remote handle once, notify transitions, prune."""
        remote = [h for h in self._handles.values() if h.status == ACTIVE and not h.local]
        if remote and self.transport is not None:
            snapshots = await asyncio.gather(*(self._fetch(handle) for handle in remote))
            for handle, snapshot in zip(remote, snapshots):
                if snapshot is not None:
                    self._apply(handle, snapshot)

        now = self.clock.now()
        if self.stale_after is not None:
            for handle in self.pending:
                if not handle.local and now - handle.created_at >= self.stale_after:
                    self._transition(handle, FAILED, error="Timed out waiting for job")
        self._prune(self.clock.now())

    async def _fetch(self, handle: JobHandle) -> Optional[StatusSnapshot]:
        try:
            return await self.transport.fetch_status(handle.queue_name, handle.id)
        except TransportError as e:
            logger.warning("registry.poll_failed", extra={"job_id": handle.id, "error": str(e)})
            return None
        except JobForbiddenError as e:
            return StatusSnapshot(job_id=handle.id, status=FAILED, error=str(e))
        except JobNotFoundError as e:
            return StatusSnapshot(job_id=handle.id, status=FAILED, error=str(e))

    def _apply(self, handle: JobHandle, snapshot: StatusSnapshot) -> None:
        if snapshot.status == COMPLETED:
            if snapshot.inventory_id and handle.owner_context is None:
                handle.owner_context = snapshot.inventory_id
            self._transition(handle, COMPLETED, result=completed_result(handle.queue_name, snapshot))
        elif snapshot.status == FAILED:
            self._transition(handle, FAILED, error=snapshot.error or "Job failed")

    def _transition(self, handle: JobHandle, status: str, result: Any = None, error: Optional[str] = None) -> bool:
        # Status change and notified flag are set together before any listener runs
        if self._handles.get(handle.id) is not handle:
            return False
        if handle.notified or handle.status != ACTIVE:
            return False
        handle.status = status
        handle.result = result
        handle.error = error
        handle.finished_at = self.clock.now()
        handle.notified = True
        logger.info("registry.job_ready", extra={"job_id": handle.id, "status": status})
        self._dispatch(handle)
        return True

    def _dispatch(self, handle: JobHandle) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(handle)
            except Exception as e:
                logger.error("registry.listener_failed", extra={"job_id": handle.id, "error": str(e)})
                continue
            if inspect.isawaitable(outcome):
                self._spawn(self._await_listener(handle, outcome))

    async def _await_listener(self, handle: JobHandle, outcome: Awaitable[None]) -> None:
        try:
            await outcome
        except Exception as e:
            logger.error("registry.listener_failed", extra={"job_id": handle.id, "error": str(e)})

    def _prune(self, now: float) -> None:
        expired = [
            job_id
            for job_id, handle in self._handles.items()
            if handle.is_terminal and handle.finished_at is not None
            and now - handle.finished_at >= self.grace_period
        ]
        for job_id in expired:
            del self._handles[job_id]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._tick_task is None:
            return
        self._tick_task.cancel()
        try:
            await self._tick_task
        except asyncio.CancelledError:
            pass
        self._tick_task = None

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    async def _run(self) -> None:
        while True:
            await self.clock.sleep(self.tick_interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error("registry.tick_failed", extra={"error": str(e)})

    # ------------------------------------------------------------------
    # Local tasks
    # ------------------------------------------------------------------

    def submit_local(self, work: Awaitable[Any], owner_context: Optional[str] = None) -> str:
        """
        Run work in the background under a new "task-" id and return the id.

        The caller never sees the outcome directly; it arrives through the
        listeners like any remote job.
        """
        task_id = f"{LOCAL_TASK_PREFIX}{uuid.uuid4().hex}"
        handle = self.register(task_id, owner_context=owner_context)
        self._spawn(self._run_local(handle, work))
        return task_id

    def add_inventory_task(self, items: Iterable[Any], inventory_id: str, writer) -> str:
        """Write reviewed items to an inventory in the background."""
        write_item = partial(writer.add_item, inventory_id)
        return self.submit_local(self._inventory_batch(list(items), write_item), owner_context=inventory_id)

    @staticmethod
    async def _inventory_batch(items: List[Any], write_item) -> Dict[str, int]:
        outcome = await run_batch(items, write_item)
        return outcome.as_dict()

    async def _run_local(self, handle: JobHandle, work: Awaitable[Any]) -> None:
        try:
            result = await work
        except Exception as e:
            logger.error("registry.local_task_failed", extra={"job_id": handle.id, "error": str(e)})
            self._transition(handle, FAILED, error=str(e) or type(e).__name__)
        else:
            self._transition(handle, COMPLETED, result=result)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        return task

    async def drain(self) -> None:
        """Wait for local tasks and async listeners started so far."""
        while self._detached:
            await asyncio.gather(*list(self._detached), return_exceptions=True)
