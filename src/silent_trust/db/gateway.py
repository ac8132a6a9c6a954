"""
Persistence gateway contract.

The scoring and decision engines depend only on this interface.
Two backends implement it:

- ``SqlPersistenceGateway`` (``silent_trust.db.repositories``) for production
- ``InMemoryGateway`` (``silent_trust.db.memory``) for development and tests

Time windows are half-open ``[since, until)``; ``None`` leaves a bound open.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from silent_trust.models import (
    AnalysisQueueItem,
    FingerprintFrequency,
    Penalty,
    PenaltyType,
    SentVia,
    SubmissionRecord,
    SubmissionSummary,
    TargetType,
    WeightSet,
    WhitelistEntry,
)


class PersistenceError(Exception):
    """Raised when the backing store cannot complete an operation."""


class PersistenceGateway(ABC):
    """Abstract base class for persistence backends."""

    # Submissions

    @abstractmethod
    async def insert_submission(self, record: SubmissionRecord) -> int:
        """Append a submission record and return its id."""
        pass

    @abstractmethod
    async def patch_submission(self, submission_id: int, **fields: Any) -> bool:
        """Update delivery fields (email_sent, email_failure_reason, sent_via) or deferred_score."""
        pass

    @abstractmethod
    async def get_submission(self, submission_id: int) -> Optional[SubmissionRecord]:
        pass

    @abstractmethod
    async def count_submissions(
        self,
        *,
        device_cookie: Optional[str] = None,
        fingerprint_hash: Optional[str] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        """Count submissions matching every given filter."""
        pass

    @abstractmethod
    async def count_distinct_fingerprints_for_ip(
        self,
        ip_address: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> int:
        pass

    @abstractmethod
    async def get_fingerprint_frequency(
        self,
        fingerprint_hash: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> FingerprintFrequency:
        """Count plus time-decayed count (weight ``exp(-age_days / 2)``)."""
        pass

    @abstractmethod
    async def fingerprint_history(
        self,
        fingerprint_hash: str,
        limit: int = 10,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[SubmissionRecord]:
        """Most recent submissions for a fingerprint, newest first."""
        pass

    @abstractmethod
    async def recent_submissions_with_breakdown(self, limit: int) -> list[SubmissionRecord]:
        """Most recent submissions that carry a risk breakdown, newest first."""
        pass

    @abstractmethod
    async def summarize_submissions(
        self,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> SubmissionSummary:
        pass

    @abstractmethod
    async def pending_delayed_mail(
        self,
        submitted_before: datetime,
        limit: int = 100,
    ) -> list[SubmissionRecord]:
        """
        Delay records whose stored mail is still unsent, oldest first.

        Unsent means email_sent is False with no failure reason.
        """
        pass

    @abstractmethod
    async def claim_delayed_mail(self, submission_id: int, sent_via: SentVia) -> bool:
        """
        Atomically take an unsent delayed mail for delivery.

        Marks the record sent via ``sent_via``. Returns False when the record
        is not an unsent delay, e.g. another worker already claimed it.
        """
        pass

    # Penalties

    @abstractmethod
    async def add_penalty(self, penalty: Penalty) -> int:
        pass

    @abstractmethod
    async def get_active_penalties(
        self,
        target_type: TargetType,
        target_value: str,
        now: datetime,
    ) -> list[Penalty]:
        pass

    @abstractmethod
    async def delete_expired_penalties(self, now: datetime) -> int:
        pass

    async def is_penalized(
        self,
        target_type: TargetType,
        target_value: str,
        now: datetime,
        penalty_type: Optional[PenaltyType] = None,
    ) -> bool:
        """True if at least one non-expired penalty matches the target."""
        if not target_value:
            return False
        penalties = await self.get_active_penalties(target_type, target_value, now)
        if penalty_type is not None:
            penalties = [p for p in penalties if p.penalty_type == penalty_type]
        return bool(penalties)

    # Whitelist

    @abstractmethod
    async def get_whitelist_entry(self, device_cookie: str) -> Optional[WhitelistEntry]:
        pass

    @abstractmethod
    async def update_whitelist(self, device_cookie: str, now: datetime) -> WhitelistEntry:
        """Create the entry or bump its success count, clearing any expiry."""
        pass

    @abstractmethod
    async def whitelist_device(
        self,
        device_cookie: str,
        now: datetime,
        expires_at: Optional[datetime],
    ) -> WhitelistEntry:
        """Create or refresh an entry with an explicit expiry."""
        pass

    # Weight set

    @abstractmethod
    async def get_weight_set(self) -> Optional[WeightSet]:
        pass

    @abstractmethod
    async def save_weight_set(self, weights: WeightSet) -> None:
        """Replace the single stored weight set."""
        pass

    @abstractmethod
    async def delete_weight_set(self) -> bool:
        pass

    # Analysis queue

    @abstractmethod
    async def enqueue_analysis(self, item: AnalysisQueueItem) -> int:
        pass

    @abstractmethod
    async def get_queue_item(self, item_id: int) -> Optional[AnalysisQueueItem]:
        pass

    @abstractmethod
    async def claim_queue_item(
        self,
        now: datetime,
        item_id: Optional[int] = None,
    ) -> Optional[AnalysisQueueItem]:
        """
        Move a pending item to processing and return it.

        With ``item_id`` None the oldest pending item is claimed. Returns
        None when there is nothing pending to claim.
        """
        pass

    @abstractmethod
    async def complete_queue_item(
        self,
        item_id: int,
        now: datetime,
        score: int,
        breakdown: dict[str, int],
    ) -> None:
        pass

    @abstractmethod
    async def fail_queue_item(self, item_id: int, now: datetime, error: str) -> None:
        pass

    @abstractmethod
    async def purge_queue(self, before: datetime) -> int:
        """Delete completed/failed items created before ``before``."""
        pass

    @abstractmethod
    async def reclaim_stale_queue_items(self, started_before: datetime) -> int:
        """Return items stuck in processing since before ``started_before`` to pending."""
        pass

    @abstractmethod
    async def queue_stats(self, day_start: datetime) -> dict[str, int]:
        pass
