"""
Queue maintenance commands against the test database.
"""
from unittest.mock import AsyncMock

import pytest

from pantry_jobs import queue_admin
from pantry_jobs.schemas.jobs import QueueName
from pantry_jobs.services import job_manager


@pytest.fixture
def admin(monkeypatch, engine, session_factory):
    monkeypatch.setattr(queue_admin, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(queue_admin, "engine", engine)
    monkeypatch.setattr(queue_admin, "init_db", AsyncMock())
    return queue_admin


async def _run(admin, *argv):
    return await admin.run(admin.build_parser().parse_args(list(argv)))


class TestQueueAdmin:
    @pytest.mark.asyncio
    async def test_counts(self, admin, db, capsys):
        await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "X"})

        assert await _run(admin, "counts", "audit-logging") == 0
        assert "waiting=1" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_clear_needs_confirmation(self, admin, db):
        await job_manager.enqueue_job(db, QueueName.AUDIT_LOGGING, "user_alice", {"action": "X"})

        assert await _run(admin, "clear", "audit-logging") == 1
        assert (await job_manager.get_counts(db, QueueName.AUDIT_LOGGING))["waiting"] == 1

        assert await _run(admin, "clear", "audit-logging", "--yes") == 0
        assert (await job_manager.get_counts(db, QueueName.AUDIT_LOGGING))["waiting"] == 0

    @pytest.mark.asyncio
    async def test_latest_failure(self, admin, db, capsys):
        await job_manager.enqueue_job(db, QueueName.AI_ANALYSIS, "user_alice", {"action": "ANALYZE_WASTE"})
        job = await job_manager.claim_next_job(db, QueueName.AI_ANALYSIS, worker_id="w")
        await job_manager.fail_job(db, job.id, "model returned nothing")

        assert await _run(admin, "latest-failure", "ai-analysis") == 0
        out = capsys.readouterr().out
        assert job.id in out
        assert "model returned nothing" in out

    def test_unknown_lane_exit_code(self, capsys):
        assert queue_admin.main(["counts", "video"]) == 2
        assert "Unknown queue: video" in capsys.readouterr().out
