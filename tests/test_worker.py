"""
Worker tests: handler dispatch, failure capture and crash recovery.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from pantry_jobs.handlers import DEFAULT_HANDLERS
from pantry_jobs.models.audit_log import AuditLog
from pantry_jobs.models.queue_job import COMPLETED, FAILED, utcnow
from pantry_jobs.schemas.jobs import QueueName
from pantry_jobs.services import job_manager
from pantry_jobs.worker import Worker


def make_worker(session_factory, lane, handlers=None, **kwargs):
    return Worker(
        lane,
        session_factory=session_factory,
        handlers=DEFAULT_HANDLERS if handlers is None else handlers,
        concurrency=kwargs.pop("concurrency", 1),
        worker_id=kwargs.pop("worker_id", "test-worker"),
        **kwargs,
    )


class TestWorkerSuccess:
    @pytest.mark.asyncio
    async def test_audit_job_completes_with_result(self, db, session_factory):
        job_id = await job_manager.enqueue_job(
            db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "ITEM_ADDED", "details": {"name": "Milk"}},
        )

        worker = make_worker(session_factory, QueueName.AUDIT_LOGGING)
        assert await worker.run_once() == 1

        job = await job_manager.get_job(db, job_id)
        assert job.state == COMPLETED
        audit_id = job.result["audit_log_id"]

        row = (await db.execute(select(AuditLog).where(AuditLog.id == audit_id))).scalar_one()
        assert row.owner_id == "user_alice"
        assert row.action == "ITEM_ADDED"
        assert row.details == {"name": "Milk"}

    @pytest.mark.asyncio
    async def test_image_job_returns_extracted_items(self, db, session_factory):
        job_id = await job_manager.enqueue_job(
            db, QueueName.IMAGE_PROCESSING, "user_alice",
            {"image_url": "https://uploads.example/receipt.jpg", "inventory_id": "inv-1"},
        )

        await make_worker(session_factory, QueueName.IMAGE_PROCESSING).run_once()

        job = await job_manager.get_job(db, job_id)
        assert job.state == COMPLETED
        assert job.result["success"] is True
        assert [item["name"] for item in job.result["data"]] == ["Milk", "Eggs"]

    @pytest.mark.asyncio
    async def test_ai_job_completes(self, db, session_factory):
        job_id = await job_manager.enqueue_job(
            db, QueueName.AI_ANALYSIS, "user_alice", {"action": "GENERATE_INSIGHTS", "query": "What expires soon?"},
        )

        await make_worker(session_factory, QueueName.AI_ANALYSIS).run_once()

        job = await job_manager.get_job(db, job_id)
        assert job.state == COMPLETED
        assert job.result["action"] == "GENERATE_INSIGHTS"
        assert job.result["insights"]

    @pytest.mark.asyncio
    async def test_run_once_drains_lane(self, db, session_factory):
        for i in range(5):
            await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": f"A{i}"})

        worker = make_worker(session_factory, QueueName.AUDIT_LOGGING, concurrency=2)
        assert await worker.run_once() == 5

        counts = await job_manager.get_counts(db, QueueName.AUDIT_LOGGING)
        assert counts["completed"] == 5
        assert counts["waiting"] == counts["active"] == 0


class TestWorkerFailures:
    @pytest.mark.asyncio
    async def test_handler_exception_fails_job_with_message(self, db, session_factory):
        async def broken(db, job, payload):
            raise RuntimeError("vision provider returned 500")

        job_id = await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "X"})
        await make_worker(session_factory, QueueName.AUDIT_LOGGING, {QueueName.AUDIT_LOGGING: broken}).run_once()

        job = await job_manager.get_job(db, job_id)
        assert job.state == FAILED
        assert job.failure_reason == "vision provider returned 500"

    @pytest.mark.asyncio
    async def test_exception_without_message_uses_type_name(self, db, session_factory):
        async def broken(db, job, payload):
            raise TimeoutError()

        job_id = await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "X"})
        await make_worker(session_factory, QueueName.AUDIT_LOGGING, {QueueName.AUDIT_LOGGING: broken}).run_once()

        assert (await job_manager.get_job(db, job_id)).failure_reason == "TimeoutError"

    @pytest.mark.asyncio
    async def test_hung_handler_fails_after_timeout(self, db, session_factory):
        cancelled = []

        async def hangs(db, job, payload):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(job.id)
                raise

        job_id = await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "X"})
        worker = make_worker(
            session_factory, QueueName.AUDIT_LOGGING, {QueueName.AUDIT_LOGGING: hangs},
            lease_seconds=0.3, handler_timeout=0.5,
        )
        assert await asyncio.wait_for(worker.run_once(), timeout=5) == 1

        job = await job_manager.get_job(db, job_id)
        assert job.state == FAILED
        assert job.failure_reason == "Handler timed out after 0.5s"
        assert cancelled == [job_id]

    @pytest.mark.asyncio
    async def test_handler_raising_timeout_error_is_not_a_deadline(self, db, session_factory):
        async def broken(db, job, payload):
            raise asyncio.TimeoutError("inventory lookup timed out")

        job_id = await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "X"})
        await make_worker(
            session_factory, QueueName.AUDIT_LOGGING, {QueueName.AUDIT_LOGGING: broken}, handler_timeout=5,
        ).run_once()

        assert (await job_manager.get_job(db, job_id)).failure_reason == "inventory lookup timed out"

    @pytest.mark.asyncio
    async def test_invalid_payload_fails_without_calling_handler(self, db, session_factory):
        calls = []

        async def handler(db, job, payload):
            calls.append(job.id)
            return {"success": True}

        job_id = await job_manager.enqueue_job(db, QueueName.IMAGE_PROCESSING, "user_alice", {"inventory_id": "inv-1"})
        await make_worker(session_factory, QueueName.IMAGE_PROCESSING, {QueueName.IMAGE_PROCESSING: handler}).run_once()

        job = await job_manager.get_job(db, job_id)
        assert job.state == FAILED
        assert job.failure_reason.startswith("Invalid payload: image_url")
        assert calls == []

    @pytest.mark.asyncio
    async def test_missing_handler_fails_job(self, db, session_factory):
        job_id = await job_manager.enqueue_job(db, QueueName.AI_ANALYSIS, "user_alice", {"action": "ANALYZE_WASTE"})
        await make_worker(session_factory, QueueName.AI_ANALYSIS, handlers={}).run_once()

        job = await job_manager.get_job(db, job_id)
        assert job.state == FAILED
        assert job.failure_reason == "No handler registered for queue: ai-analysis"

    @pytest.mark.asyncio
    async def test_malformed_result_fails_job(self, db, session_factory):
        async def handler(db, job, payload):
            return {"unexpected": True}

        job_id = await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "X"})
        await make_worker(session_factory, QueueName.AUDIT_LOGGING, {QueueName.AUDIT_LOGGING: handler}).run_once()

        job = await job_manager.get_job(db, job_id)
        assert job.state == FAILED
        assert job.failure_reason.startswith("Handler returned an invalid result")


class TestCrashRecovery:
    @pytest.mark.asyncio
    async def test_job_from_dead_worker_is_reclaimed(self, db, session_factory):
        job_id = await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "X"})

        # Claimed by a worker that never reports back
        await job_manager.claim_next_job(db, QueueName.AUDIT_LOGGING, worker_id="crashed", lease_seconds=5)
        worker = make_worker(session_factory, QueueName.AUDIT_LOGGING)
        assert await worker.run_once() == 0

        requeued, exhausted = await job_manager.requeue_stalled_jobs(db, now=utcnow() + timedelta(seconds=6))
        assert (requeued, exhausted) == (1, 0)

        assert await worker.run_once() == 1
        job = await job_manager.get_job(db, job_id)
        assert job.state == COMPLETED
        assert job.attempts == 2
        assert job.worker_id == "test-worker"
