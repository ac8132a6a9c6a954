"""
Domain records shared by the scoring, decision and persistence layers.

These are plain dataclasses; the SQLAlchemy tables in
``silent_trust.db.orm`` map onto them one-to-one.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Action(str, Enum):
    """Graduated response to a submission, ordered by severity."""

    ALLOW = "allow"
    ALLOW_LOG = "allow_log"
    DELAY = "delay"
    DROP = "drop"
    SOFT_PENALTY = "soft_penalty"
    HARD_PENALTY = "hard_penalty"

    @property
    def proceeds(self) -> bool:
        """Whether mail may be sent immediately for this action."""
        return self in (Action.ALLOW, Action.ALLOW_LOG)

    @property
    def is_blocking(self) -> bool:
        return self in (Action.DROP, Action.SOFT_PENALTY, Action.HARD_PENALTY)


class PenaltyType(str, Enum):
    SOFT = "soft"
    HARD = "hard"


class TargetType(str, Enum):
    IP = "ip"
    FINGERPRINT = "fingerprint"


class SentVia(str, Enum):
    DIRECT = "direct"
    CRON = "cron"
    FALLBACK = "fallback"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED)


class ThresholdMode(str, Enum):
    """Adaptive behavioral strictness, selected from traffic volume."""

    LENIENT = "lenient"
    NORMAL = "normal"
    STRICT = "strict"

    @property
    def confidence_multiplier(self) -> float:
        return {
            ThresholdMode.LENIENT: 3.0,
            ThresholdMode.NORMAL: 2.0,
            ThresholdMode.STRICT: 1.5,
        }[self]


@dataclass
class SubmissionRecord:
    """One decided submission. Append-only except for delivery fields."""

    form_id: Optional[str]
    fingerprint_hash: str
    ip_address: str
    risk_score: int
    risk_breakdown: dict[str, int]
    action: Action
    device_cookie: Optional[str] = None
    device_type: str = "unknown"
    payload: dict[str, Any] = field(default_factory=dict)
    email_sent: bool = False
    email_failure_reason: Optional[str] = None
    sent_via: SentVia = SentVia.DIRECT
    submitted_at: datetime = field(default_factory=datetime.utcnow)
    analytics: dict[str, Any] = field(default_factory=dict)
    mail_data: Optional[dict[str, Any]] = None
    deferred_score: Optional[int] = None
    id: Optional[int] = None

    @property
    def is_deferred(self) -> bool:
        return DEFERRED_ANALYSIS_KEY in (self.risk_breakdown or {})

    @property
    def analyzed_score(self) -> Optional[int]:
        """
        Score the submission was judged by.

        Deferred submissions are logged with a placeholder score; their real
        score is the deferred result, None until that analysis completes.
        """
        if self.is_deferred:
            return self.deferred_score
        return self.risk_score


DEFERRED_ANALYSIS_KEY = "deferred_analysis"

# Fields of a SubmissionRecord that may be patched after insert.
PATCHABLE_SUBMISSION_FIELDS = frozenset(
    {"email_sent", "email_failure_reason", "sent_via", "deferred_score"}
)


@dataclass
class Penalty:
    """Time-boxed restriction on a fingerprint or IP."""

    penalty_type: PenaltyType
    target_type: TargetType
    target_value: str
    reason: str
    created_at: datetime
    expires_at: datetime
    id: Optional[int] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class WhitelistEntry:
    """Trusted device cookie."""

    device_cookie: str
    success_count: int = 0
    last_success_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass
class FingerprintFrequency:
    """Submission count for a fingerprint within a window."""

    count: int = 0
    decayed_count: float = 0.0


FACTOR_NAMES = ("fingerprint", "behavior", "ip", "frequency")


@dataclass(frozen=True)
class WeightSet:
    """
    Per-factor influence percentages.

    The four factors always sum to 100. ``trained_at`` is None for the
    built-in defaults and set when the trainer produced the weights.
    """

    fingerprint: int
    behavior: int
    ip: int
    frequency: int
    trained_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.fingerprint + self.behavior + self.ip + self.frequency

    @property
    def is_learned(self) -> bool:
        return self.trained_at is not None

    def as_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in FACTOR_NAMES}


DEFAULT_WEIGHTS = WeightSet(fingerprint=25, behavior=30, ip=15, frequency=30)


@dataclass
class AnalysisQueueItem:
    """Submission waiting for deferred full analysis."""

    payload: Optional[dict[str, Any]]
    ip_address: str
    fingerprint_hash: str
    form_id: Optional[str] = None
    device_cookie: Optional[str] = None
    user_agent: Optional[str] = None
    submission_id: Optional[int] = None
    status: QueueStatus = QueueStatus.PENDING
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result_score: Optional[int] = None
    result_breakdown: Optional[dict[str, int]] = None
    id: Optional[int] = None


@dataclass
class SubmissionSummary:
    """Aggregate counts over a time window, used for reporting."""

    total: int = 0
    allowed: int = 0
    delayed: int = 0
    dropped: int = 0
    emails_sent: int = 0
    smtp_failures: int = 0

    @property
    def drop_rate(self) -> float:
        """Percentage of submissions dropped or penalized."""
        if self.total == 0:
            return 0.0
        return self.dropped / self.total * 100

    @property
    def delivery_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.emails_sent / self.total * 100
