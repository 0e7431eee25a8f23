"""
Queue store tests: state transitions, atomic claims, stall recovery.
"""
import asyncio
from datetime import timedelta

import pytest

from pantry_jobs.errors import InvalidTransition, JobNotFound, UnknownQueue
from pantry_jobs.models.queue_job import ACTIVE, COMPLETED, FAILED, WAITING, utcnow
from pantry_jobs.schemas.jobs import QueueName
from pantry_jobs.services import job_manager

LANE = QueueName.AUDIT_LOGGING


async def _enqueue(db, count=1, owner="user_alice", **kwargs):
    return [
        await job_manager.enqueue_job(db, LANE, owner, {"action": "TEST", "details": {"n": i}}, **kwargs)
        for i in range(count)
    ]


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_new_job_is_waiting(self, db):
        [job_id] = await _enqueue(db)
        job = await job_manager.get_job(db, job_id)

        assert job.state == WAITING
        assert job.queue_name == LANE.value
        assert job.owner_id == "user_alice"
        assert job.payload == {"action": "TEST", "details": {"n": 0}}
        assert job.attempts == 0

    @pytest.mark.asyncio
    async def test_counts_per_state(self, db):
        await _enqueue(db, count=3)
        counts = await job_manager.get_counts(db, LANE)
        assert counts == {"waiting": 3, "active": 0, "completed": 0, "failed": 0}

        other = await job_manager.get_counts(db, QueueName.AI_ANALYSIS)
        assert other["waiting"] == 0

    @pytest.mark.asyncio
    async def test_unknown_lane_rejected(self, db):
        with pytest.raises(UnknownQueue):
            await job_manager.enqueue_job(db, "video-processing", "user_alice", {})

    @pytest.mark.asyncio
    async def test_get_jobs_rejects_unknown_state(self, db):
        with pytest.raises(ValueError):
            await job_manager.get_jobs(db, LANE, states=["paused"])


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_moves_job_to_active(self, db):
        [job_id] = await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w-1")

        assert job.id == job_id
        assert job.state == ACTIVE
        assert job.attempts == 1
        assert job.worker_id == "w-1"
        assert job.lease_token
        assert job.lease_expires_at is not None

    @pytest.mark.asyncio
    async def test_empty_lane_returns_none(self, db):
        await _enqueue(db)
        await job_manager.claim_next_job(db, LANE, worker_id="w-1")
        assert await job_manager.claim_next_job(db, LANE, worker_id="w-2") is None

    @pytest.mark.asyncio
    async def test_claims_oldest_first(self, db):
        first, second = await _enqueue(db, count=2)
        assert (await job_manager.claim_next_job(db, LANE, worker_id="w")).id == first
        assert (await job_manager.claim_next_job(db, LANE, worker_id="w")).id == second

    @pytest.mark.asyncio
    async def test_concurrent_claimers_never_share_a_job(self, db, session_factory):
        job_ids = await _enqueue(db, count=12)

        async def claimer(name):
            claimed = []
            async with session_factory() as session:
                while True:
                    job = await job_manager.claim_next_job(session, LANE, worker_id=name)
                    if job is None:
                        return claimed
                    claimed.append(job.id)

        results = await asyncio.gather(*(claimer(f"w-{i}") for i in range(4)))
        claimed = [job_id for batch in results for job_id in batch]

        assert len(claimed) == len(set(claimed))
        assert sorted(claimed) == sorted(job_ids)


class TestTerminalTransitions:
    @pytest.mark.asyncio
    async def test_complete_active_job(self, db):
        await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w")
        await job_manager.complete_job(db, job.id, {"audit_log_id": "a-1"}, lease_token=job.lease_token)

        done = await job_manager.get_job(db, job.id)
        assert done.state == COMPLETED
        assert done.result == {"audit_log_id": "a-1"}
        assert done.finished_at is not None
        assert done.lease_token is None

    @pytest.mark.asyncio
    async def test_fail_active_job(self, db):
        await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w")
        await job_manager.fail_job(db, job.id, "OCR provider unreachable")

        failed = await job_manager.get_job(db, job.id)
        assert failed.state == FAILED
        assert failed.failure_reason == "OCR provider unreachable"
        assert failed.result is None

    @pytest.mark.asyncio
    async def test_failure_reason_is_truncated(self, db):
        await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w")
        await job_manager.fail_job(db, job.id, "x" * 5000)

        failed = await job_manager.get_job(db, job.id)
        assert len(failed.failure_reason) == job_manager.MAX_REASON_LENGTH

    @pytest.mark.asyncio
    async def test_cannot_complete_waiting_job(self, db):
        [job_id] = await _enqueue(db)
        with pytest.raises(InvalidTransition) as exc_info:
            await job_manager.complete_job(db, job_id, {})
        assert exc_info.value.actual == WAITING

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, db):
        await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w")
        await job_manager.complete_job(db, job.id, {"audit_log_id": "a-1"})

        with pytest.raises(InvalidTransition):
            await job_manager.fail_job(db, job.id, "late failure")
        with pytest.raises(InvalidTransition):
            await job_manager.complete_job(db, job.id, {"audit_log_id": "a-2"})

        job = await job_manager.get_job(db, job.id)
        assert job.state == COMPLETED
        assert job.result == {"audit_log_id": "a-1"}

    @pytest.mark.asyncio
    async def test_unknown_job(self, db):
        with pytest.raises(JobNotFound):
            await job_manager.complete_job(db, "missing", {})

    @pytest.mark.asyncio
    async def test_stale_lease_token_rejected(self, db):
        await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w")
        with pytest.raises(InvalidTransition):
            await job_manager.complete_job(db, job.id, {}, lease_token="not-the-token")


class TestStallRecovery:
    @pytest.mark.asyncio
    async def test_expired_lease_goes_back_to_waiting(self, db):
        await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="dead", lease_seconds=30)

        later = utcnow() + timedelta(seconds=31)
        assert await job_manager.requeue_stalled_jobs(db, now=later) == (1, 0)

        requeued = await job_manager.get_job(db, job.id)
        assert requeued.state == WAITING
        assert requeued.worker_id is None
        assert requeued.attempts == 1

    @pytest.mark.asyncio
    async def test_live_lease_left_alone(self, db):
        await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w", lease_seconds=30)

        assert await job_manager.requeue_stalled_jobs(db) == (0, 0)
        assert (await job_manager.get_job(db, job.id)).state == ACTIVE

    @pytest.mark.asyncio
    async def test_exhausted_job_fails_with_distinct_reason(self, db):
        await _enqueue(db, max_attempts=1)
        job = await job_manager.claim_next_job(db, LANE, worker_id="dead", lease_seconds=30)

        later = utcnow() + timedelta(seconds=31)
        assert await job_manager.requeue_stalled_jobs(db, now=later) == (0, 1)

        failed = await job_manager.get_job(db, job.id)
        assert failed.state == FAILED
        assert failed.failure_reason.startswith("Job stalled")
        assert "1 of 1 attempts" in failed.failure_reason

    @pytest.mark.asyncio
    async def test_late_worker_cannot_finish_reclaimed_job(self, db):
        await _enqueue(db)
        first = await job_manager.claim_next_job(db, LANE, worker_id="slow", lease_seconds=30)
        job_id, old_token = first.id, first.lease_token
        await job_manager.requeue_stalled_jobs(db, now=utcnow() + timedelta(seconds=31))

        second = await job_manager.claim_next_job(db, LANE, worker_id="fresh")
        new_token = second.lease_token
        assert second.id == job_id
        assert second.attempts == 2
        assert new_token != old_token

        with pytest.raises(InvalidTransition):
            await job_manager.complete_job(db, job_id, {"audit_log_id": "old"}, lease_token=old_token)
        await job_manager.complete_job(db, job_id, {"audit_log_id": "new"}, lease_token=new_token)
        assert (await job_manager.get_job(db, job_id)).result == {"audit_log_id": "new"}

    @pytest.mark.asyncio
    async def test_renew_lease_only_for_holder(self, db):
        await _enqueue(db)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w")

        assert await job_manager.renew_lease(db, job.id, job.lease_token, 60) is True
        assert await job_manager.renew_lease(db, job.id, "someone-else", 60) is False

        await job_manager.complete_job(db, job.id, {})
        assert await job_manager.renew_lease(db, job.id, job.lease_token, 60) is False


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_cleanup_removes_only_old_terminal_jobs(self, db):
        done_id, waiting_id = await _enqueue(db, count=2)
        job = await job_manager.claim_next_job(db, LANE, worker_id="w")
        await job_manager.complete_job(db, job.id, {})

        assert await job_manager.cleanup_old_jobs(db, max_age_hours=1) == 0
        assert await job_manager.cleanup_old_jobs(db, max_age_hours=-1) == 1
        assert await job_manager.get_job(db, done_id) is None
        assert await job_manager.get_job(db, waiting_id) is not None

    @pytest.mark.asyncio
    async def test_clear_queue(self, db):
        await _enqueue(db, count=3)
        await job_manager.enqueue_job(db, QueueName.AI_ANALYSIS, "user_alice", {"action": "GENERATE_INSIGHTS"})

        assert await job_manager.clear_queue(db, LANE) == 3
        assert (await job_manager.get_counts(db, QueueName.AI_ANALYSIS))["waiting"] == 1
