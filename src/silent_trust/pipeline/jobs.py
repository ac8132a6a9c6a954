"""
Periodic maintenance jobs.

Jobs are triggered from outside (cron, a scheduler container, or the
HTTP maintenance endpoint). Each run goes through a ``JobGuard`` so a
job never overlaps its own previous run:
- ``InProcessJobGuard`` for a single worker process
- ``RedisJobGuard`` (``SET NX EX`` advisory lock) across workers
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis

from silent_trust.decision.mail import DelayedMailQueue
from silent_trust.db.gateway import PersistenceGateway
from silent_trust.pipeline.async_gate import AsyncGate
from silent_trust.reporting import Reporter
from silent_trust.scoring.weights import WeightStore

logger = logging.getLogger(__name__)

JobFn = Callable[[datetime], Awaitable[dict[str, Any]]]


class JobGuard(ABC):
    """Mutual exclusion for a named job."""

    @abstractmethod
    async def acquire(self, job_name: str) -> Optional[str]:
        """Return a token if the job may run, None if it is already running."""
        pass

    @abstractmethod
    async def release(self, job_name: str, token: str) -> None:
        pass


class InProcessJobGuard(JobGuard):
    """Running-flag per job name, valid within one process."""

    def __init__(self):
        self._running: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, job_name: str) -> Optional[str]:
        async with self._lock:
            if job_name in self._running:
                return None
            token = uuid.uuid4().hex
            self._running[job_name] = token
            return token

    async def release(self, job_name: str, token: str) -> None:
        async with self._lock:
            if self._running.get(job_name) == token:
                del self._running[job_name]


class RedisJobGuard(JobGuard):
    """
    Advisory lock in Redis.

    The key expires after ``ttl_seconds`` so a crashed worker cannot hold
    a job forever. Release only deletes the key when it still holds our
    token.
    """

    KEY_PREFIX = "silent_trust:job:"

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 600):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds

    def _key(self, job_name: str) -> str:
        return f"{self.KEY_PREFIX}{job_name}"

    async def acquire(self, job_name: str) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self._redis.set(self._key(job_name), token, nx=True, ex=self.ttl_seconds)
        return token if acquired else None

    async def release(self, job_name: str, token: str) -> None:
        key = self._key(job_name)
        current = await self._redis.get(key)
        if isinstance(current, bytes):
            current = current.decode()
        if current == token:
            await self._redis.delete(key)


@dataclass
class MaintenanceJob:
    """One run of a maintenance job."""

    job_type: str
    status: str = "pending"  # pending, running, completed, failed, skipped
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_type": self.job_type,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result,
            "error": self.error,
        }


class MaintenanceScheduler:
    """
    Registry and runner for maintenance jobs.

    Jobs:
    - penalty_sweep: delete expired penalties
    - queue_cleanup: purge terminal queue items past retention
    - queue_reclaim: requeue stale processing items, then drain pending
    - stalled_mail_flush: send delayed mail past the fallback deadline
    - weight_retraining: retrain weights when enough data exists
    - drop_spike_check: alert on a high drop rate
    - daily_digest: mail the daily stats to the report recipients
    - weekly_report: mail the trailing week stats to the report recipients
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        async_gate: AsyncGate,
        mail_queue: DelayedMailQueue,
        weight_store: WeightStore,
        reporter: Reporter,
        guard: Optional[JobGuard] = None,
    ):
        self.gateway = gateway
        self.async_gate = async_gate
        self.mail_queue = mail_queue
        self.weight_store = weight_store
        self.reporter = reporter
        self.guard = guard or InProcessJobGuard()
        self._jobs: dict[str, JobFn] = {
            "penalty_sweep": self._penalty_sweep,
            "queue_cleanup": self._queue_cleanup,
            "queue_reclaim": self._queue_reclaim,
            "stalled_mail_flush": self._stalled_mail_flush,
            "weight_retraining": self._weight_retraining,
            "drop_spike_check": self._drop_spike_check,
            "daily_digest": self._daily_digest,
            "weekly_report": self._weekly_report,
        }

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def register(self, name: str, fn: JobFn) -> None:
        self._jobs[name] = fn
        logger.info(f"Registered maintenance job: {name}")

    async def run(self, name: str, now: Optional[datetime] = None) -> MaintenanceJob:
        """
        Run a job unless a previous run still holds its guard.

        Raises:
            KeyError: Unknown job name.
        """
        if name not in self._jobs:
            raise KeyError(name)

        now = now or datetime.utcnow()
        job = MaintenanceJob(job_type=name)

        token = await self.guard.acquire(name)
        if token is None:
            job.status = "skipped"
            logger.info(f"Maintenance job {name} already running, skipped")
            return job

        job.status = "running"
        job.started_at = datetime.utcnow()
        try:
            job.result = await self._jobs[name](now)
            job.status = "completed"
        except Exception as e:
            job.status = "failed"
            job.error = str(e)
            logger.exception(f"Maintenance job {name} failed: {e}")
        finally:
            job.completed_at = datetime.utcnow()
            await self.guard.release(name, token)

        logger.info(f"Maintenance job {name} {job.status} in {job.duration_seconds:.2f}s")
        return job

    async def _penalty_sweep(self, now: datetime) -> dict[str, Any]:
        return {"deleted": await self.gateway.delete_expired_penalties(now)}

    async def _queue_cleanup(self, now: datetime) -> dict[str, Any]:
        return {"deleted": await self.async_gate.cleanup_old_queue(now)}

    async def _queue_reclaim(self, now: datetime) -> dict[str, Any]:
        reclaimed = await self.async_gate.reclaim_stale_items(now)
        processed = await self.async_gate.process_pending(now=now)
        return {"reclaimed": reclaimed, "processed": processed}

    async def _stalled_mail_flush(self, now: datetime) -> dict[str, Any]:
        return {"flushed": await self.mail_queue.flush_stalled(now)}

    async def _weight_retraining(self, now: datetime) -> dict[str, Any]:
        if not await self.weight_store.can_train():
            return {"trained": False, "reason": "insufficient_data"}
        result = await self.weight_store.train(now=now)
        return {"trained": result.persisted, **result.to_dict()}

    async def _drop_spike_check(self, now: datetime) -> dict[str, Any]:
        alert = await self.reporter.check_drop_spike(now)
        return {"spike": alert is not None, "alert": alert.to_dict() if alert else None}

    async def _daily_digest(self, now: datetime) -> dict[str, Any]:
        return {"delivered": await self.reporter.send_daily_digest(now)}

    async def _weekly_report(self, now: datetime) -> dict[str, Any]:
        return {"delivered": await self.reporter.send_weekly_report(now)}
