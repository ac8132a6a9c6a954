"""
Tests for maintenance jobs and job guards.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from silent_trust.decision.mail import MailMessage
from silent_trust.models import (
    Action,
    AnalysisQueueItem,
    Penalty,
    PenaltyType,
    QueueStatus,
    SentVia,
    TargetType,
)
from silent_trust.pipeline.jobs import InProcessJobGuard, RedisJobGuard


class TestJobGuards:
    """Tests for InProcessJobGuard and RedisJobGuard."""

    @pytest.mark.asyncio
    async def test_in_process_guard(self):
        guard = InProcessJobGuard()

        token = await guard.acquire("penalty_sweep")
        assert token is not None
        assert await guard.acquire("penalty_sweep") is None
        assert await guard.acquire("queue_cleanup") is not None

        await guard.release("penalty_sweep", "someone-else")
        assert await guard.acquire("penalty_sweep") is None

        await guard.release("penalty_sweep", token)
        assert await guard.acquire("penalty_sweep") is not None

    @pytest.mark.asyncio
    async def test_redis_guard_acquire(self):
        redis_client = MagicMock()
        redis_client.set = AsyncMock(side_effect=[True, None])
        guard = RedisJobGuard(redis_client, ttl_seconds=300)

        token = await guard.acquire("queue_reclaim")

        assert token is not None
        redis_client.set.assert_awaited_once_with(
            "silent_trust:job:queue_reclaim", token, nx=True, ex=300
        )
        assert await guard.acquire("queue_reclaim") is None

    @pytest.mark.asyncio
    async def test_redis_guard_release_own_token(self):
        redis_client = MagicMock()
        redis_client.get = AsyncMock(return_value=b"token-1")
        redis_client.delete = AsyncMock(return_value=1)
        guard = RedisJobGuard(redis_client)

        await guard.release("queue_reclaim", "token-1")

        redis_client.delete.assert_awaited_once_with("silent_trust:job:queue_reclaim")

    @pytest.mark.asyncio
    async def test_redis_guard_keeps_foreign_lock(self):
        redis_client = MagicMock()
        redis_client.get = AsyncMock(return_value="token-2")
        redis_client.delete = AsyncMock()
        guard = RedisJobGuard(redis_client)

        await guard.release("queue_reclaim", "token-1")

        redis_client.delete.assert_not_awaited()


class TestMaintenanceScheduler:
    """Tests for MaintenanceScheduler.run()."""

    def test_job_names(self, services):
        assert set(services.maintenance.job_names) == {
            "penalty_sweep",
            "queue_cleanup",
            "queue_reclaim",
            "stalled_mail_flush",
            "weight_retraining",
            "drop_spike_check",
            "daily_digest",
            "weekly_report",
        }

    @pytest.mark.asyncio
    async def test_unknown_job(self, services):
        with pytest.raises(KeyError):
            await services.maintenance.run("vacuum")

    @pytest.mark.asyncio
    async def test_penalty_sweep(self, services, gateway, now):
        await gateway.add_penalty(
            Penalty(
                penalty_type=PenaltyType.SOFT,
                target_type=TargetType.FINGERPRINT,
                target_value="fp-1",
                reason="Risk score: 72",
                created_at=now - timedelta(days=2),
                expires_at=now - timedelta(days=1),
            )
        )

        job = await services.maintenance.run("penalty_sweep", now)

        assert job.status == "completed"
        assert job.result == {"deleted": 1}

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, services, now):
        token = await services.maintenance.guard.acquire("penalty_sweep")

        job = await services.maintenance.run("penalty_sweep", now)

        assert job.status == "skipped"
        await services.maintenance.guard.release("penalty_sweep", token)
        assert (await services.maintenance.run("penalty_sweep", now)).status == "completed"

    @pytest.mark.asyncio
    async def test_failed_job_releases_guard(self, services, now):
        async def explode(run_at):
            raise RuntimeError("disk full")

        services.maintenance.register("explode", explode)

        first = await services.maintenance.run("explode", now)
        second = await services.maintenance.run("explode", now)

        assert first.status == "failed"
        assert first.error == "disk full"
        assert second.status == "failed"

    @pytest.mark.asyncio
    async def test_queue_reclaim_drains(self, services, gateway, now):
        item_id = await gateway.enqueue_analysis(
            AnalysisQueueItem(None, "192.0.2.1", "fp-a", device_cookie="cookie-a", created_at=now)
        )
        await gateway.claim_queue_item(now - timedelta(minutes=20), item_id)

        job = await services.maintenance.run("queue_reclaim", now)

        assert job.result == {"reclaimed": 1, "processed": 1}
        assert (await gateway.get_queue_item(item_id)).status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stalled_mail_flush(self, services, gateway, transport, now, record_factory):
        # Scheduled by a worker that died before sending; only the log remembers it
        record = record_factory(action=Action.DELAY, risk_score=55, email_sent=False, submitted_at=now)
        record.mail_data = MailMessage("a@example.com", "Hi", "Body").to_dict()
        submission_id = await gateway.insert_submission(record)

        job = await services.maintenance.run("stalled_mail_flush", now + timedelta(seconds=30))

        assert job.result == {"flushed": 1}
        assert transport.sent[0].to == "a@example.com"
        assert (await gateway.get_submission(submission_id)).sent_via == SentVia.FALLBACK

    @pytest.mark.asyncio
    async def test_weight_retraining_needs_data(self, services):
        job = await services.maintenance.run("weight_retraining")

        assert job.status == "completed"
        assert job.result == {"trained": False, "reason": "insufficient_data"}

    @pytest.mark.asyncio
    async def test_drop_spike_check(self, services, gateway, now, record_factory):
        for action in (Action.DROP, Action.HARD_PENALTY, Action.ALLOW, Action.ALLOW, Action.ALLOW):
            await gateway.insert_submission(
                record_factory(action=action, submitted_at=now - timedelta(minutes=10))
            )

        job = await services.maintenance.run("drop_spike_check", now)

        assert job.result["spike"] is True
        assert job.result["alert"]["drop_rate"] == 40.0
        assert job.to_dict()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_daily_digest(self, services, gateway, transport, now, record_factory):
        services.reporter.recipients = ["ops@example.com"]
        await gateway.insert_submission(record_factory(submitted_at=now - timedelta(hours=2)))

        job = await services.maintenance.run("daily_digest", now)

        assert job.result == {"delivered": 1}
        assert transport.sent[-1].subject == "[Silent Trust] Daily Digest - 2025-03-14"

    @pytest.mark.asyncio
    async def test_weekly_report_without_recipients(self, services, transport, now):
        job = await services.maintenance.run("weekly_report", now)

        assert job.status == "completed"
        assert job.result == {"delivered": 0}
        assert transport.sent == []
