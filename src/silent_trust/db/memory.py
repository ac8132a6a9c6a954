"""
In-memory persistence backend for development and testing.

Implements the full gateway contract with plain lists guarded by an
asyncio lock. Returned objects are copies, so callers cannot mutate
stored state behind the gateway's back.
"""

import asyncio
import copy
import logging
import math
from datetime import datetime
from typing import Any, Optional

from silent_trust.db.gateway import PersistenceError, PersistenceGateway
from silent_trust.models import (
    PATCHABLE_SUBMISSION_FIELDS,
    Action,
    AnalysisQueueItem,
    FingerprintFrequency,
    Penalty,
    QueueStatus,
    SentVia,
    SubmissionRecord,
    SubmissionSummary,
    TargetType,
    WeightSet,
    WhitelistEntry,
)

logger = logging.getLogger(__name__)


def _in_window(ts: datetime, since: Optional[datetime], until: Optional[datetime]) -> bool:
    if since is not None and ts < since:
        return False
    if until is not None and ts >= until:
        return False
    return True


class InMemoryGateway(PersistenceGateway):
    """Gateway backed by process memory. Not shared between processes."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._submissions: list[SubmissionRecord] = []
        self._penalties: list[Penalty] = []
        self._whitelist: dict[str, WhitelistEntry] = {}
        self._weights: Optional[WeightSet] = None
        self._queue: dict[int, AnalysisQueueItem] = {}
        self._next_id = {"submission": 1, "penalty": 1, "queue": 1}

    def _allocate(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] = value + 1
        return value

    # Submissions

    async def insert_submission(self, record: SubmissionRecord) -> int:
        async with self._lock:
            stored = copy.deepcopy(record)
            stored.id = self._allocate("submission")
            self._submissions.append(stored)
            return stored.id

    async def patch_submission(self, submission_id: int, **fields: Any) -> bool:
        unknown = set(fields) - PATCHABLE_SUBMISSION_FIELDS
        if unknown:
            raise PersistenceError(f"Submission fields are immutable: {sorted(unknown)}")

        async with self._lock:
            for record in self._submissions:
                if record.id == submission_id:
                    for name, value in fields.items():
                        if name == "sent_via" and value is not None:
                            value = SentVia(value)
                        setattr(record, name, value)
                    return True
        return False

    async def get_submission(self, submission_id: int) -> Optional[SubmissionRecord]:
        for record in self._submissions:
            if record.id == submission_id:
                return copy.deepcopy(record)
        return None

    def _filter(
        self,
        device_cookie: Optional[str] = None,
        fingerprint_hash: Optional[str] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[SubmissionRecord]:
        matches = []
        for record in self._submissions:
            if device_cookie is not None and record.device_cookie != device_cookie:
                continue
            if fingerprint_hash is not None and record.fingerprint_hash != fingerprint_hash:
                continue
            if ip_address is not None and record.ip_address != ip_address:
                continue
            if not _in_window(record.submitted_at, since, until):
                continue
            matches.append(record)
        return matches

    async def count_submissions(
        self,
        *,
        device_cookie: Optional[str] = None,
        fingerprint_hash: Optional[str] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        return len(self._filter(device_cookie, fingerprint_hash, ip_address, since, until))

    async def count_distinct_fingerprints_for_ip(
        self,
        ip_address: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> int:
        records = self._filter(ip_address=ip_address, since=since, until=until)
        return len({r.fingerprint_hash for r in records})

    async def get_fingerprint_frequency(
        self,
        fingerprint_hash: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> FingerprintFrequency:
        records = self._filter(fingerprint_hash=fingerprint_hash, since=since, until=until)
        reference = until or datetime.utcnow()
        decayed = sum(
            math.exp(-((reference - r.submitted_at).days) / 2) for r in records
        )
        return FingerprintFrequency(count=len(records), decayed_count=decayed)

    async def fingerprint_history(
        self,
        fingerprint_hash: str,
        limit: int = 10,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[SubmissionRecord]:
        records = self._filter(fingerprint_hash=fingerprint_hash, since=since, until=until)
        records.sort(key=lambda r: (r.submitted_at, r.id or 0), reverse=True)
        return copy.deepcopy(records[:limit])

    async def recent_submissions_with_breakdown(self, limit: int) -> list[SubmissionRecord]:
        records = [r for r in self._submissions if r.risk_breakdown is not None]
        records.sort(key=lambda r: (r.submitted_at, r.id or 0), reverse=True)
        return copy.deepcopy(records[:limit])

    async def summarize_submissions(
        self,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> SubmissionSummary:
        summary = SubmissionSummary()
        for record in self._filter(since=since, until=until):
            summary.total += 1
            if record.action in (Action.ALLOW, Action.ALLOW_LOG):
                summary.allowed += 1
            elif record.action == Action.DELAY:
                summary.delayed += 1
            elif record.action.is_blocking:
                summary.dropped += 1
            if record.email_sent:
                summary.emails_sent += 1
            elif record.email_failure_reason is not None:
                summary.smtp_failures += 1
        return summary

    @staticmethod
    def _mail_pending(record: SubmissionRecord) -> bool:
        return (
            record.action == Action.DELAY
            and not record.email_sent
            and record.email_failure_reason is None
        )

    async def pending_delayed_mail(
        self,
        submitted_before: datetime,
        limit: int = 100,
    ) -> list[SubmissionRecord]:
        records = [
            r for r in self._submissions
            if self._mail_pending(r) and r.mail_data and r.submitted_at < submitted_before
        ]
        records.sort(key=lambda r: (r.submitted_at, r.id or 0))
        return copy.deepcopy(records[:limit])

    async def claim_delayed_mail(self, submission_id: int, sent_via: SentVia) -> bool:
        async with self._lock:
            for record in self._submissions:
                if record.id == submission_id:
                    if not self._mail_pending(record):
                        return False
                    record.email_sent = True
                    record.sent_via = SentVia(sent_via)
                    return True
        return False

    # Penalties

    async def add_penalty(self, penalty: Penalty) -> int:
        async with self._lock:
            stored = copy.deepcopy(penalty)
            stored.id = self._allocate("penalty")
            self._penalties.append(stored)
            return stored.id

    async def get_active_penalties(
        self,
        target_type: TargetType,
        target_value: str,
        now: datetime,
    ) -> list[Penalty]:
        return [
            copy.deepcopy(p)
            for p in self._penalties
            if p.target_type == target_type
            and p.target_value == target_value
            and p.is_active(now)
        ]

    async def delete_expired_penalties(self, now: datetime) -> int:
        async with self._lock:
            before = len(self._penalties)
            self._penalties = [p for p in self._penalties if p.expires_at >= now]
            return before - len(self._penalties)

    # Whitelist

    async def get_whitelist_entry(self, device_cookie: str) -> Optional[WhitelistEntry]:
        entry = self._whitelist.get(device_cookie)
        return copy.deepcopy(entry) if entry else None

    async def update_whitelist(self, device_cookie: str, now: datetime) -> WhitelistEntry:
        async with self._lock:
            entry = self._whitelist.get(device_cookie)
            if entry is None:
                entry = WhitelistEntry(device_cookie=device_cookie, created_at=now)
                self._whitelist[device_cookie] = entry
            entry.success_count += 1
            entry.last_success_at = now
            entry.expires_at = None
            return copy.deepcopy(entry)

    async def whitelist_device(
        self,
        device_cookie: str,
        now: datetime,
        expires_at: Optional[datetime],
    ) -> WhitelistEntry:
        async with self._lock:
            entry = self._whitelist.get(device_cookie)
            if entry is None:
                entry = WhitelistEntry(device_cookie=device_cookie, created_at=now)
                self._whitelist[device_cookie] = entry
            entry.expires_at = expires_at
            return copy.deepcopy(entry)

    # Weight set

    async def get_weight_set(self) -> Optional[WeightSet]:
        return self._weights

    async def save_weight_set(self, weights: WeightSet) -> None:
        self._weights = weights

    async def delete_weight_set(self) -> bool:
        existed = self._weights is not None
        self._weights = None
        return existed

    # Analysis queue

    async def enqueue_analysis(self, item: AnalysisQueueItem) -> int:
        async with self._lock:
            stored = copy.deepcopy(item)
            stored.id = self._allocate("queue")
            stored.status = QueueStatus.PENDING
            self._queue[stored.id] = stored
            return stored.id

    async def get_queue_item(self, item_id: int) -> Optional[AnalysisQueueItem]:
        item = self._queue.get(item_id)
        return copy.deepcopy(item) if item else None

    async def claim_queue_item(
        self,
        now: datetime,
        item_id: Optional[int] = None,
    ) -> Optional[AnalysisQueueItem]:
        async with self._lock:
            if item_id is not None:
                item = self._queue.get(item_id)
            else:
                pending = [i for i in self._queue.values() if i.status == QueueStatus.PENDING]
                item = min(pending, key=lambda i: (i.created_at, i.id)) if pending else None

            if item is None or item.status != QueueStatus.PENDING:
                return None

            item.status = QueueStatus.PROCESSING
            item.started_at = now
            return copy.deepcopy(item)

    async def complete_queue_item(
        self,
        item_id: int,
        now: datetime,
        score: int,
        breakdown: dict[str, int],
    ) -> None:
        async with self._lock:
            item = self._queue.get(item_id)
            if item is None:
                raise PersistenceError(f"Queue item {item_id} not found")
            item.status = QueueStatus.COMPLETED
            item.processed_at = now
            item.result_score = score
            item.result_breakdown = dict(breakdown)

    async def fail_queue_item(self, item_id: int, now: datetime, error: str) -> None:
        async with self._lock:
            item = self._queue.get(item_id)
            if item is None:
                raise PersistenceError(f"Queue item {item_id} not found")
            item.status = QueueStatus.FAILED
            item.processed_at = now
            item.error_message = error

    async def purge_queue(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                item_id
                for item_id, item in self._queue.items()
                if item.status.is_terminal and item.created_at < before
            ]
            for item_id in doomed:
                del self._queue[item_id]
            return len(doomed)

    async def reclaim_stale_queue_items(self, started_before: datetime) -> int:
        async with self._lock:
            reclaimed = 0
            for item in self._queue.values():
                if (
                    item.status == QueueStatus.PROCESSING
                    and item.started_at is not None
                    and item.started_at < started_before
                ):
                    item.status = QueueStatus.PENDING
                    item.started_at = None
                    reclaimed += 1
            return reclaimed

    async def queue_stats(self, day_start: datetime) -> dict[str, int]:
        items = list(self._queue.values())
        return {
            "pending": sum(1 for i in items if i.status == QueueStatus.PENDING),
            "processing": sum(1 for i in items if i.status == QueueStatus.PROCESSING),
            "completed_today": sum(
                1 for i in items
                if i.status == QueueStatus.COMPLETED and i.created_at >= day_start
            ),
            "failed_today": sum(
                1 for i in items
                if i.status == QueueStatus.FAILED and i.created_at >= day_start
            ),
        }
