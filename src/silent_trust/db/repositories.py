"""
SQLAlchemy-backed persistence gateway.

Every gateway call runs in its own short transaction, so the submission
log commit never depends on a later penalty or whitelist write.
"""

import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from silent_trust.db.gateway import PersistenceError, PersistenceGateway
from silent_trust.db.orm import (
    AnalysisQueueRow,
    PenaltyRow,
    Submission,
    WeightSetRow,
    WhitelistRow,
)
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

WEIGHT_SET_ROW_ID = 1


def _to_record(row: Submission) -> SubmissionRecord:
    return SubmissionRecord(
        id=row.id,
        form_id=row.form_id,
        fingerprint_hash=row.fingerprint_hash,
        device_cookie=row.device_cookie,
        device_type=row.device_type,
        ip_address=row.ip_address,
        payload=row.payload or {},
        risk_score=row.risk_score,
        risk_breakdown=row.risk_breakdown,
        action=row.action,
        email_sent=row.email_sent,
        email_failure_reason=row.email_failure_reason,
        sent_via=row.sent_via,
        submitted_at=row.submitted_at,
        analytics=row.analytics or {},
        mail_data=row.mail_data,
        deferred_score=row.deferred_score,
    )


def _to_penalty(row: PenaltyRow) -> Penalty:
    return Penalty(
        id=row.id,
        penalty_type=row.penalty_type,
        target_type=row.target_type,
        target_value=row.target_value,
        reason=row.reason,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _to_whitelist(row: WhitelistRow) -> WhitelistEntry:
    return WhitelistEntry(
        device_cookie=row.device_cookie,
        success_count=row.success_count,
        last_success_at=row.last_success_at,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _to_queue_item(row: AnalysisQueueRow) -> AnalysisQueueItem:
    return AnalysisQueueItem(
        id=row.id,
        payload=row.payload,
        ip_address=row.ip_address,
        fingerprint_hash=row.fingerprint_hash,
        form_id=row.form_id,
        device_cookie=row.device_cookie,
        user_agent=row.user_agent,
        submission_id=row.submission_id,
        status=row.status,
        created_at=row.created_at,
        started_at=row.started_at,
        processed_at=row.processed_at,
        error_message=row.error_message,
        result_score=row.result_score,
        result_breakdown=row.result_breakdown,
    )


class SqlPersistenceGateway(PersistenceGateway):
    """Gateway over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(f"Database operation failed: {e}")
            raise PersistenceError(str(e)) from e

    # Submissions

    async def insert_submission(self, record: SubmissionRecord) -> int:
        row = Submission(
            form_id=record.form_id,
            fingerprint_hash=record.fingerprint_hash,
            device_cookie=record.device_cookie,
            device_type=record.device_type,
            ip_address=record.ip_address,
            payload=record.payload,
            risk_score=record.risk_score,
            risk_breakdown=record.risk_breakdown,
            action=record.action,
            email_sent=record.email_sent,
            email_failure_reason=record.email_failure_reason,
            sent_via=record.sent_via,
            submitted_at=record.submitted_at,
            analytics=record.analytics,
            country_code=record.analytics.get("country_code"),
            utm_source=record.analytics.get("utm_source"),
            session_id=record.analytics.get("session_id"),
            mail_data=record.mail_data,
            deferred_score=record.deferred_score,
        )
        async with self._transaction() as session:
            session.add(row)
            await session.flush()
            return row.id

    async def patch_submission(self, submission_id: int, **fields: Any) -> bool:
        unknown = set(fields) - PATCHABLE_SUBMISSION_FIELDS
        if unknown:
            raise PersistenceError(f"Submission fields are immutable: {sorted(unknown)}")
        if "sent_via" in fields and fields["sent_via"] is not None:
            fields["sent_via"] = SentVia(fields["sent_via"])

        async with self._transaction() as session:
            result = await session.execute(
                update(Submission).where(Submission.id == submission_id).values(**fields)
            )
            return result.rowcount > 0

    async def get_submission(self, submission_id: int) -> Optional[SubmissionRecord]:
        async with self._transaction() as session:
            row = await session.get(Submission, submission_id)
            return _to_record(row) if row else None

    def _window(self, stmt, since: Optional[datetime], until: Optional[datetime]):
        if since is not None:
            stmt = stmt.where(Submission.submitted_at >= since)
        if until is not None:
            stmt = stmt.where(Submission.submitted_at < until)
        return stmt

    async def count_submissions(
        self,
        *,
        device_cookie: Optional[str] = None,
        fingerprint_hash: Optional[str] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        stmt = select(func.count(Submission.id))
        if device_cookie is not None:
            stmt = stmt.where(Submission.device_cookie == device_cookie)
        if fingerprint_hash is not None:
            stmt = stmt.where(Submission.fingerprint_hash == fingerprint_hash)
        if ip_address is not None:
            stmt = stmt.where(Submission.ip_address == ip_address)
        stmt = self._window(stmt, since, until)

        async with self._transaction() as session:
            return (await session.execute(stmt)).scalar_one()

    async def count_distinct_fingerprints_for_ip(
        self,
        ip_address: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> int:
        stmt = select(func.count(func.distinct(Submission.fingerprint_hash))).where(
            Submission.ip_address == ip_address
        )
        stmt = self._window(stmt, since, until)

        async with self._transaction() as session:
            return (await session.execute(stmt)).scalar_one()

    async def get_fingerprint_frequency(
        self,
        fingerprint_hash: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> FingerprintFrequency:
        stmt = select(Submission.submitted_at).where(
            Submission.fingerprint_hash == fingerprint_hash
        )
        stmt = self._window(stmt, since, until)

        async with self._transaction() as session:
            timestamps = list((await session.execute(stmt)).scalars().all())

        reference = until or datetime.utcnow()
        decayed = sum(math.exp(-((reference - ts).days) / 2) for ts in timestamps)
        return FingerprintFrequency(count=len(timestamps), decayed_count=decayed)

    async def fingerprint_history(
        self,
        fingerprint_hash: str,
        limit: int = 10,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[SubmissionRecord]:
        stmt = select(Submission).where(Submission.fingerprint_hash == fingerprint_hash)
        stmt = self._window(stmt, since, until)
        stmt = stmt.order_by(Submission.submitted_at.desc(), Submission.id.desc()).limit(limit)

        async with self._transaction() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r) for r in rows]

    async def recent_submissions_with_breakdown(self, limit: int) -> list[SubmissionRecord]:
        stmt = (
            select(Submission)
            .where(Submission.risk_breakdown.is_not(None))
            .order_by(Submission.submitted_at.desc(), Submission.id.desc())
            .limit(limit)
        )
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r) for r in rows]

    async def summarize_submissions(
        self,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> SubmissionSummary:
        failed = Submission.email_failure_reason.is_not(None)
        stmt = select(
            Submission.action,
            Submission.email_sent,
            failed,
            func.count(Submission.id),
        ).group_by(Submission.action, Submission.email_sent, failed)
        stmt = self._window(stmt, since, until)

        async with self._transaction() as session:
            rows = (await session.execute(stmt)).all()

        summary = SubmissionSummary()
        for action, email_sent, has_failure, count in rows:
            action = Action(action)
            summary.total += count
            if action in (Action.ALLOW, Action.ALLOW_LOG):
                summary.allowed += count
            elif action == Action.DELAY:
                summary.delayed += count
            elif action.is_blocking:
                summary.dropped += count
            if email_sent:
                summary.emails_sent += count
            elif has_failure:
                summary.smtp_failures += count
        return summary

    async def pending_delayed_mail(
        self,
        submitted_before: datetime,
        limit: int = 100,
    ) -> list[SubmissionRecord]:
        stmt = (
            select(Submission)
            .where(
                Submission.action == Action.DELAY,
                Submission.email_sent.is_(False),
                Submission.email_failure_reason.is_(None),
                Submission.mail_data.is_not(None),
                Submission.submitted_at < submitted_before,
            )
            .order_by(Submission.submitted_at, Submission.id)
            .limit(limit)
        )
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r) for r in rows]

    async def claim_delayed_mail(self, submission_id: int, sent_via: SentVia) -> bool:
        # Conditional update so concurrent workers cannot both claim the mail
        stmt = (
            update(Submission)
            .where(
                Submission.id == submission_id,
                Submission.action == Action.DELAY,
                Submission.email_sent.is_(False),
                Submission.email_failure_reason.is_(None),
            )
            .values(email_sent=True, sent_via=SentVia(sent_via))
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount > 0

    # Penalties

    async def add_penalty(self, penalty: Penalty) -> int:
        row = PenaltyRow(
            penalty_type=penalty.penalty_type,
            target_type=penalty.target_type,
            target_value=penalty.target_value,
            reason=penalty.reason,
            created_at=penalty.created_at,
            expires_at=penalty.expires_at,
        )
        async with self._transaction() as session:
            session.add(row)
            await session.flush()
            return row.id

    async def get_active_penalties(
        self,
        target_type: TargetType,
        target_value: str,
        now: datetime,
    ) -> list[Penalty]:
        stmt = select(PenaltyRow).where(
            PenaltyRow.target_type == target_type,
            PenaltyRow.target_value == target_value,
            PenaltyRow.expires_at > now,
        )
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_penalty(r) for r in rows]

    async def delete_expired_penalties(self, now: datetime) -> int:
        async with self._transaction() as session:
            result = await session.execute(delete(PenaltyRow).where(PenaltyRow.expires_at < now))
            return result.rowcount or 0

    # Whitelist

    async def _get_whitelist_row(self, session: AsyncSession, device_cookie: str) -> Optional[WhitelistRow]:
        result = await session.execute(
            select(WhitelistRow).where(WhitelistRow.device_cookie == device_cookie)
        )
        return result.scalar_one_or_none()

    async def get_whitelist_entry(self, device_cookie: str) -> Optional[WhitelistEntry]:
        async with self._transaction() as session:
            row = await self._get_whitelist_row(session, device_cookie)
            return _to_whitelist(row) if row else None

    async def update_whitelist(self, device_cookie: str, now: datetime) -> WhitelistEntry:
        async with self._transaction() as session:
            row = await self._get_whitelist_row(session, device_cookie)
            if row is None:
                row = WhitelistRow(device_cookie=device_cookie, success_count=0, created_at=now)
                session.add(row)
            row.success_count = (row.success_count or 0) + 1
            row.last_success_at = now
            row.expires_at = None
            await session.flush()
            return _to_whitelist(row)

    async def whitelist_device(
        self,
        device_cookie: str,
        now: datetime,
        expires_at: Optional[datetime],
    ) -> WhitelistEntry:
        async with self._transaction() as session:
            row = await self._get_whitelist_row(session, device_cookie)
            if row is None:
                row = WhitelistRow(device_cookie=device_cookie, success_count=0, created_at=now)
                session.add(row)
            row.expires_at = expires_at
            await session.flush()
            return _to_whitelist(row)

    # Weight set

    async def get_weight_set(self) -> Optional[WeightSet]:
        async with self._transaction() as session:
            row = await session.get(WeightSetRow, WEIGHT_SET_ROW_ID)
            if row is None:
                return None
            return WeightSet(
                fingerprint=row.fingerprint,
                behavior=row.behavior,
                ip=row.ip,
                frequency=row.frequency,
                trained_at=row.trained_at,
            )

    async def save_weight_set(self, weights: WeightSet) -> None:
        async with self._transaction() as session:
            await session.merge(
                WeightSetRow(
                    id=WEIGHT_SET_ROW_ID,
                    fingerprint=weights.fingerprint,
                    behavior=weights.behavior,
                    ip=weights.ip,
                    frequency=weights.frequency,
                    trained_at=weights.trained_at,
                )
            )

    async def delete_weight_set(self) -> bool:
        async with self._transaction() as session:
            result = await session.execute(delete(WeightSetRow))
            return (result.rowcount or 0) > 0

    # Analysis queue

    async def enqueue_analysis(self, item: AnalysisQueueItem) -> int:
        row = AnalysisQueueRow(
            fingerprint_hash=item.fingerprint_hash,
            payload=item.payload,
            ip_address=item.ip_address,
            device_cookie=item.device_cookie,
            user_agent=item.user_agent,
            form_id=item.form_id,
            submission_id=item.submission_id,
            status=QueueStatus.PENDING,
            created_at=item.created_at,
        )
        async with self._transaction() as session:
            session.add(row)
            await session.flush()
            return row.id

    async def get_queue_item(self, item_id: int) -> Optional[AnalysisQueueItem]:
        async with self._transaction() as session:
            row = await session.get(AnalysisQueueRow, item_id)
            return _to_queue_item(row) if row else None

    async def claim_queue_item(
        self,
        now: datetime,
        item_id: Optional[int] = None,
    ) -> Optional[AnalysisQueueItem]:
        async with self._transaction() as session:
            if item_id is None:
                candidate = (
                    await session.execute(
                        select(AnalysisQueueRow.id)
                        .where(AnalysisQueueRow.status == QueueStatus.PENDING)
                        .order_by(AnalysisQueueRow.created_at, AnalysisQueueRow.id)
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if candidate is None:
                    return None
                item_id = candidate

            # Conditional update: only one worker wins the pending -> processing transition
            result = await session.execute(
                update(AnalysisQueueRow)
                .where(
                    AnalysisQueueRow.id == item_id,
                    AnalysisQueueRow.status == QueueStatus.PENDING,
                )
                .values(status=QueueStatus.PROCESSING, started_at=now)
            )
            if result.rowcount == 0:
                return None

            row = await session.get(AnalysisQueueRow, item_id, populate_existing=True)
            return _to_queue_item(row) if row else None

    async def complete_queue_item(
        self,
        item_id: int,
        now: datetime,
        score: int,
        breakdown: dict[str, int],
    ) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(AnalysisQueueRow)
                .where(AnalysisQueueRow.id == item_id)
                .values(
                    status=QueueStatus.COMPLETED,
                    processed_at=now,
                    result_score=score,
                    result_breakdown=breakdown,
                )
            )

    async def fail_queue_item(self, item_id: int, now: datetime, error: str) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(AnalysisQueueRow)
                .where(AnalysisQueueRow.id == item_id)
                .values(status=QueueStatus.FAILED, processed_at=now, error_message=error)
            )

    async def purge_queue(self, before: datetime) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                delete(AnalysisQueueRow).where(
                    AnalysisQueueRow.status.in_([QueueStatus.COMPLETED, QueueStatus.FAILED]),
                    AnalysisQueueRow.created_at < before,
                )
            )
            return result.rowcount or 0

    async def reclaim_stale_queue_items(self, started_before: datetime) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                update(AnalysisQueueRow)
                .where(
                    AnalysisQueueRow.status == QueueStatus.PROCESSING,
                    AnalysisQueueRow.started_at < started_before,
                )
                .values(status=QueueStatus.PENDING, started_at=None)
            )
            return result.rowcount or 0

    async def queue_stats(self, day_start: datetime) -> dict[str, int]:
        today = AnalysisQueueRow.created_at >= day_start
        stmt = select(
            AnalysisQueueRow.status,
            today,
            func.count(AnalysisQueueRow.id),
        ).group_by(AnalysisQueueRow.status, today)

        async with self._transaction() as session:
            rows = (await session.execute(stmt)).all()

        stats = {"pending": 0, "processing": 0, "completed_today": 0, "failed_today": 0}
        for status, today, count in rows:
            status = QueueStatus(status)
            if status == QueueStatus.PENDING:
                stats["pending"] += count
            elif status == QueueStatus.PROCESSING:
                stats["processing"] += count
            elif today and status == QueueStatus.COMPLETED:
                stats["completed_today"] += count
            elif today and status == QueueStatus.FAILED:
                stats["failed_today"] += count
        return stats
