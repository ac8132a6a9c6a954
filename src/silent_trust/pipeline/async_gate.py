"""
Two-tier async gate.

Tier 1 (request path): ``quick_precheck`` runs only indexed lookups and
can block instantly. Everything else is allowed through, logged, and
queued.

Tier 2 (deferred): ``process_queued_item`` runs the full risk engine
on the queued snapshot and applies retroactive consequences:
- score >= 70: 30-day hard fingerprint penalty, 7-day soft IP penalty
- score < 20 with a clean recent history: 90-day device whitelist
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from silent_trust.db.gateway import PersistenceError, PersistenceGateway
from silent_trust.models import (
    AnalysisQueueItem,
    Penalty,
    PenaltyType,
    TargetType,
)
from silent_trust.scoring.risk_engine import RiskEngine, RiskResult
from silent_trust.signals import RequestContext, SignalPayload
from silent_trust.tasks import TaskScheduler

logger = logging.getLogger(__name__)

EXTREME_FREQUENCY_WINDOW = timedelta(seconds=60)
EXTREME_FREQUENCY_LIMIT = 10
BOT_TIME_PER_FIELD_MS = 50

RETROACTIVE_THRESHOLD = 70
RETROACTIVE_FP_PENALTY = timedelta(days=30)
RETROACTIVE_IP_PENALTY = timedelta(days=7)

AUTO_WHITELIST_THRESHOLD = 20
AUTO_WHITELIST_HISTORY = 10
AUTO_WHITELIST_DURATION = timedelta(days=90)


@dataclass
class QuickCheckResult:
    instant_block: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "instant_block": self.instant_block,
            "reason": self.reason,
            "action": "drop" if self.instant_block else None,
        }


class AsyncGate:
    """Quick request-path check plus the deferred full analysis worker."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        risk_engine: RiskEngine,
        scheduler: TaskScheduler,
        enabled: bool = True,
        retention_minutes: int = 60,
        lease_minutes: int = 10,
    ):
        self.gateway = gateway
        self.risk_engine = risk_engine
        self.scheduler = scheduler
        self.enabled = enabled
        self.retention = timedelta(minutes=retention_minutes)
        self.lease = timedelta(minutes=lease_minutes)

    def should_use_async(self) -> bool:
        """Async only when enabled and the scheduler can actually run tasks."""
        return self.enabled and self.scheduler.is_functional()

    async def quick_precheck(
        self,
        payload: Optional[SignalPayload],
        context: RequestContext,
    ) -> QuickCheckResult:
        now = context.received_at
        fingerprint_hash = payload.fingerprint_hash if payload else None

        try:
            if await self.gateway.is_penalized(
                TargetType.FINGERPRINT, fingerprint_hash or "", now, PenaltyType.HARD
            ):
                return QuickCheckResult(True, "device_hard_penalty")

            if await self.gateway.is_penalized(
                TargetType.IP, context.ip_address, now, PenaltyType.HARD
            ):
                return QuickCheckResult(True, "ip_blacklisted")

            recent = await self.gateway.count_submissions(
                ip_address=context.ip_address,
                since=now - EXTREME_FREQUENCY_WINDOW,
                until=now,
            )
            if recent > EXTREME_FREQUENCY_LIMIT:
                return QuickCheckResult(True, "extreme_frequency")
        except PersistenceError as e:
            logger.warning(f"Quick pre-check lookups unavailable: {e}")

        if payload and payload.time_per_field is not None and payload.time_per_field < BOT_TIME_PER_FIELD_MS:
            return QuickCheckResult(True, "bot_typing_speed")

        return QuickCheckResult(False, "quick_check_passed")

    async def queue_analysis(
        self,
        payload: Optional[SignalPayload],
        context: RequestContext,
        fingerprint_hash: str,
        submission_id: Optional[int] = None,
    ) -> int:
        """Create a pending queue item and schedule its processing."""
        item = AnalysisQueueItem(
            payload=payload.snapshot() if payload else None,
            ip_address=context.ip_address,
            fingerprint_hash=fingerprint_hash,
            form_id=context.form_id,
            device_cookie=context.device_cookie,
            user_agent=context.user_agent,
            submission_id=submission_id,
            created_at=context.received_at,
        )
        item_id = await self.gateway.enqueue_analysis(item)
        self.scheduler.schedule(context.received_at, self.process_queued_item, item_id)
        logger.debug(f"Queued analysis {item_id} for submission {submission_id}")
        return item_id

    async def process_queued_item(
        self,
        item_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RiskResult]:
        """
        Claim and fully analyze one queue item.

        With ``item_id`` None the oldest pending item is claimed. Returns
        None when nothing was claimed or the analysis failed.
        """
        now = now or datetime.utcnow()
        item = await self.gateway.claim_queue_item(now, item_id)
        if item is None:
            return None
        return await self._analyze(item, now)

    async def process_pending(self, limit: int = 100, now: Optional[datetime] = None) -> int:
        """Drain up to ``limit`` pending items, oldest first. Returns how many were claimed."""
        now = now or datetime.utcnow()
        processed = 0
        while processed < limit:
            item = await self.gateway.claim_queue_item(now)
            if item is None:
                break
            await self._analyze(item, now)
            processed += 1
        return processed

    async def _analyze(self, item: AnalysisQueueItem, now: datetime) -> Optional[RiskResult]:
        try:
            context = RequestContext(
                ip_address=item.ip_address,
                received_at=item.created_at,
                device_cookie=item.device_cookie,
                user_agent=item.user_agent,
                form_id=item.form_id,
            )
            result = await self.risk_engine.calculate_risk(SignalPayload.from_raw(item.payload), context)

            if item.submission_id is not None:
                await self.gateway.patch_submission(item.submission_id, deferred_score=result.score)

            if result.score >= RETROACTIVE_THRESHOLD:
                await self._apply_retroactive_penalty(item, result, now)
            elif result.score < AUTO_WHITELIST_THRESHOLD:
                await self._consider_whitelist(item, now)

            await self.gateway.complete_queue_item(item.id, now, result.score, result.breakdown)
            return result
        except Exception as e:
            logger.exception(f"Async analysis of queue item {item.id} failed: {e}")
            try:
                await self.gateway.fail_queue_item(item.id, now, str(e))
            except PersistenceError as fail_error:
                logger.error(f"Could not mark queue item {item.id} failed: {fail_error}")
            return None

    async def _apply_retroactive_penalty(
        self,
        item: AnalysisQueueItem,
        result: RiskResult,
        now: datetime,
    ) -> None:
        await self.gateway.add_penalty(
            Penalty(
                penalty_type=PenaltyType.HARD,
                target_type=TargetType.FINGERPRINT,
                target_value=item.fingerprint_hash,
                reason="retroactive_spam_detected",
                created_at=now,
                expires_at=now + RETROACTIVE_FP_PENALTY,
            )
        )
        await self.gateway.add_penalty(
            Penalty(
                penalty_type=PenaltyType.SOFT,
                target_type=TargetType.IP,
                target_value=item.ip_address,
                reason="retroactive_spam_ip",
                created_at=now,
                expires_at=now + RETROACTIVE_IP_PENALTY,
            )
        )
        logger.warning(
            f"Retroactive spam penalty applied - device: {item.fingerprint_hash[:8]}, "
            f"IP: {item.ip_address}, risk: {result.score}"
        )

    async def _consider_whitelist(self, item: AnalysisQueueItem, now: datetime) -> bool:
        """
        Whitelist the device when its last submissions were all low risk.

        Deferred submissions count by their deferred result; one still
        awaiting analysis (or whose analysis failed) blocks the whitelist.
        """
        if not item.device_cookie:
            return False

        history = await self.gateway.fingerprint_history(item.fingerprint_hash, limit=AUTO_WHITELIST_HISTORY)
        if len(history) < AUTO_WHITELIST_HISTORY:
            return False
        for record in history:
            score = record.analyzed_score
            if score is None or score >= AUTO_WHITELIST_THRESHOLD:
                return False

        await self.gateway.whitelist_device(item.device_cookie, now, now + AUTO_WHITELIST_DURATION)
        logger.info(f"Auto-whitelisted device {item.device_cookie[:8]} for 90 days")
        return True

    async def cleanup_old_queue(self, now: Optional[datetime] = None) -> int:
        """Delete completed and failed items older than the retention window."""
        now = now or datetime.utcnow()
        deleted = await self.gateway.purge_queue(now - self.retention)
        if deleted:
            logger.info(f"Cleaned up {deleted} old queue items")
        return deleted

    async def reclaim_stale_items(self, now: Optional[datetime] = None) -> int:
        """Return items stuck in processing past the lease to pending."""
        now = now or datetime.utcnow()
        reclaimed = await self.gateway.reclaim_stale_queue_items(now - self.lease)
        if reclaimed:
            logger.warning(f"Reclaimed {reclaimed} stale queue items")
        return reclaimed

    async def get_queue_stats(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or datetime.utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return await self.gateway.queue_stats(day_start)
