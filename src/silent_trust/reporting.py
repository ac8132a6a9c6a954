"""
Operational reporting over the submission log.

- Daily stats (total, allowed, delayed, dropped, mail delivery)
- Weekly stats over the trailing seven days
- Drop-rate spike detection over the past hour
- Daily digest and weekly report mails to the configured recipients
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from silent_trust.db.gateway import PersistenceGateway
from silent_trust.decision.mail import MailMessage, MailTransport
from silent_trust.models import SubmissionSummary

logger = logging.getLogger(__name__)


@dataclass
class DropSpikeAlert:
    drop_rate: float
    total: int
    dropped: int
    window_start: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "drop_rate": round(self.drop_rate, 1),
            "total": self.total,
            "dropped": self.dropped,
            "window_start": self.window_start.isoformat(),
        }


def _summary_stats(summary: SubmissionSummary) -> dict[str, Any]:
    return {
        "total": summary.total,
        "allowed": summary.allowed,
        "delayed": summary.delayed,
        "dropped": summary.dropped,
        "emails_sent": summary.emails_sent,
        "smtp_failures": summary.smtp_failures,
        "drop_rate": round(summary.drop_rate, 1),
        "delivery_rate": round(summary.delivery_rate, 1),
    }


def render_daily_digest(stats: dict[str, Any]) -> str:
    return (
        "Silent Trust - Daily Digest\n"
        f"Date: {stats['date']}\n\n"
        "=== Summary ===\n"
        f"Total Submissions: {stats['total']}\n"
        f"Allowed: {stats['allowed']}\n"
        f"Dropped: {stats['dropped']} ({stats['drop_rate']:.1f}%)\n"
        f"Emails Sent: {stats['emails_sent']} ({stats['delivery_rate']:.1f}% delivery rate)\n"
        f"SMTP Failures: {stats['smtp_failures']}\n"
    )


def render_weekly_report(stats: dict[str, Any]) -> str:
    return (
        "Silent Trust - Weekly Report\n"
        f"Week of: {stats['week_start']}\n\n"
        "=== Summary ===\n"
        f"Total Submissions: {stats['total']}\n"
        f"Dropped: {stats['dropped']} ({stats['drop_rate']:.1f}%)\n"
    )


class Reporter:
    """Builds stats and alerts from gateway summaries."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        spike_threshold_percent: float = 20.0,
        spike_min_submissions: int = 5,
        transport: Optional[MailTransport] = None,
        recipients: Iterable[str] = (),
    ):
        self.gateway = gateway
        self.spike_threshold_percent = spike_threshold_percent
        self.spike_min_submissions = spike_min_submissions
        self.transport = transport
        self.recipients = list(recipients)

    async def daily_stats(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or datetime.utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        summary = await self.gateway.summarize_submissions(day_start, now)
        return {"date": day_start.date().isoformat(), **_summary_stats(summary)}

    async def weekly_stats(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Stats for the trailing seven days."""
        now = now or datetime.utcnow()
        since = now - timedelta(days=7)
        summary = await self.gateway.summarize_submissions(since, now)
        return {"week_start": since.date().isoformat(), **_summary_stats(summary)}

    async def check_drop_spike(self, now: Optional[datetime] = None) -> Optional[DropSpikeAlert]:
        """Alert when the past hour's drop rate exceeds the threshold."""
        now = now or datetime.utcnow()
        since = now - timedelta(hours=1)
        summary = await self.gateway.summarize_submissions(since, now)

        if summary.total < self.spike_min_submissions:
            return None
        if summary.drop_rate <= self.spike_threshold_percent:
            return None

        alert = DropSpikeAlert(
            drop_rate=summary.drop_rate,
            total=summary.total,
            dropped=summary.dropped,
            window_start=since,
        )
        logger.warning(
            f"Drop rate spike: {alert.drop_rate:.1f}% "
            f"({alert.dropped}/{alert.total} submissions in the past hour)"
        )
        return alert

    async def send_daily_digest(self, now: Optional[datetime] = None) -> int:
        """Mail the daily digest. Returns how many recipients it reached."""
        stats = await self.daily_stats(now)
        subject = f"[Silent Trust] Daily Digest - {stats['date']}"
        return await self._send_report(subject, render_daily_digest(stats))

    async def send_weekly_report(self, now: Optional[datetime] = None) -> int:
        """Mail the weekly report. Returns how many recipients it reached."""
        stats = await self.weekly_stats(now)
        subject = f"[Silent Trust] Weekly Report - Week of {stats['week_start']}"
        return await self._send_report(subject, render_weekly_report(stats))

    async def _send_report(self, subject: str, body: str) -> int:
        if not self.recipients or self.transport is None:
            logger.info(f"Report not sent, no recipients or mail transport: {subject}")
            return 0

        delivered = 0
        for recipient in self.recipients:
            if await self.transport.send(MailMessage(to=recipient, subject=subject, body=body)):
                delivered += 1
            else:
                logger.warning(f"Report delivery to {recipient} failed: {subject}")
        return delivered
