"""
SQLAlchemy database models for Silent Trust.

Tables:
- Submission log (append-only audit trail with analytics context)
- Penalties on fingerprints and IPs
- Device whitelist
- Learned weight set (single row)
- Deferred analysis queue

JSON columns use the generic ``JSON`` type so the schema runs on
PostgreSQL in production and SQLite in tests.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum as SQLEnum, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from silent_trust.models import Action, PenaltyType, QueueStatus, SentVia, TargetType


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def _enum(enum_cls, name: str) -> SQLEnum:
    # Store the enum values ("soft_penalty"), not the member names.
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class Submission(Base):
    """
    One decided form submission.

    Immutable after insert except for the delivery columns
    (email_sent, email_failure_reason, sent_via) and the deferred
    analysis result (deferred_score).
    """

    __tablename__ = "st_submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    form_id: Mapped[Optional[str]] = mapped_column(String(64))
    fingerprint_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    device_cookie: Mapped[Optional[str]] = mapped_column(String(128))
    device_type: Mapped[str] = mapped_column(String(16), default="unknown")
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)

    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    risk_score: Mapped[int] = mapped_column(Integer, default=0)
    risk_breakdown: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    action: Mapped[Action] = mapped_column(_enum(Action, "st_action"), nullable=False)
    deferred_score: Mapped[Optional[int]] = mapped_column(Integer)

    # NULL failure reason with email_sent=False means an intentional silent drop
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    email_failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    sent_via: Mapped[SentVia] = mapped_column(_enum(SentVia, "st_sent_via"), default=SentVia.DIRECT)

    submitted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    # Geo, URL chain, UTM, session and device analytics
    analytics: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    country_code: Mapped[Optional[str]] = mapped_column(String(2))
    utm_source: Mapped[Optional[str]] = mapped_column(String(255))
    session_id: Mapped[Optional[str]] = mapped_column(String(64))

    # Posted form values for the mail collaborator
    mail_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))

    __table_args__ = (
        Index("idx_st_submissions_fp_time", "fingerprint_hash", "submitted_at"),
        Index("idx_st_submissions_ip_time", "ip_address", "submitted_at"),
        Index("idx_st_submissions_cookie_time", "device_cookie", "submitted_at"),
        Index("idx_st_submissions_action", "action"),
        Index("idx_st_submissions_time", "submitted_at"),
        Index("idx_st_submissions_country", "country_code"),
    )


class PenaltyRow(Base):
    """Penalty on a fingerprint or IP. Expiry is checked by timestamp."""

    __tablename__ = "st_penalties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    penalty_type: Mapped[PenaltyType] = mapped_column(_enum(PenaltyType, "st_penalty_type"), nullable=False)
    target_type: Mapped[TargetType] = mapped_column(_enum(TargetType, "st_target_type"), nullable=False)
    target_value: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_st_penalties_target", "target_type", "target_value"),
        Index("idx_st_penalties_expires", "expires_at"),
    )


class WhitelistRow(Base):
    """Trusted device cookie."""

    __tablename__ = "st_whitelist"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_cookie: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class WeightSetRow(Base):
    """The learned weight set. At most one row exists."""

    __tablename__ = "st_weight_sets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fingerprint: Mapped[int] = mapped_column(Integer, nullable=False)
    behavior: Mapped[int] = mapped_column(Integer, nullable=False)
    ip: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[int] = mapped_column(Integer, nullable=False)
    trained_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class AnalysisQueueRow(Base):
    """Deferred full-analysis work item."""

    __tablename__ = "st_analysis_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fingerprint_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    device_cookie: Mapped[Optional[str]] = mapped_column(String(128))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    form_id: Mapped[Optional[str]] = mapped_column(String(64))
    submission_id: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[QueueStatus] = mapped_column(
        _enum(QueueStatus, "st_queue_status"), default=QueueStatus.PENDING
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    result_score: Mapped[Optional[int]] = mapped_column(Integer)
    result_breakdown: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))

    __table_args__ = (
        Index("idx_st_queue_status_created", "status", "created_at"),
        Index("idx_st_queue_fp", "fingerprint_hash"),
    )
