"""
Silent delayed mail.

A "delay" decision does not hand the mail to the form framework. Instead
the message is sent by a deferred task after a random 2-5 second jitter.
A safety-net flush, run from any worker, sends every delayed mail the
submission log still shows as unsent after the fallback deadline, so a
stalled or dead worker cannot swallow legitimate mail.

Every send claims, and on failure patches, the delivery columns of the
submission record.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

import httpx

from silent_trust.db.gateway import PersistenceError, PersistenceGateway
from silent_trust.models import SentVia
from silent_trust.tasks import TaskScheduler

logger = logging.getLogger(__name__)

# Posted fields that belong to the collector or the form framework
INTERNAL_FIELD_PREFIXES = ("st_", "_")


@dataclass
class MailMessage:
    """Mail the form framework would have sent for a submission."""

    to: str
    subject: str
    body: str
    headers: str = ""
    form_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "headers": self.headers,
            "form_id": self.form_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MailMessage":
        return cls(
            to=data["to"],
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            headers=data.get("headers", ""),
            form_id=data.get("form_id"),
        )


def build_mail_body(posted_fields: Mapping[str, Any]) -> str:
    """Render posted form values as ``Label: value`` lines."""
    lines = []
    for key, value in posted_fields.items():
        if key.startswith(INTERNAL_FIELD_PREFIXES):
            continue
        label = key.replace("-", " ").replace("_", " ")
        lines.append(f"{label[:1].upper()}{label[1:]}: {value}")
    return "\n".join(lines) + ("\n" if lines else "")


class MailTransport(ABC):
    """Delivers a message. Returns False on delivery failure."""

    @abstractmethod
    async def send(self, message: MailMessage) -> bool:
        pass


class HttpMailTransport(MailTransport):
    """
    Delivers mail through an HTTP relay.

    The relay receives the message as JSON and answers 2xx when it
    accepted it for delivery.
    """

    def __init__(self, relay_url: str, timeout: float = 10.0):
        self.relay_url = relay_url
        self.timeout = timeout
        self._http: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._http = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def send(self, message: MailMessage) -> bool:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await self._http.post(self.relay_url, json=message.to_dict())
            response.raise_for_status()
            return True
        except httpx.HTTPStatusError as e:
            logger.error(f"Mail relay rejected message: {e.response.status_code}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Mail relay unreachable: {e}")
            return False


@dataclass
class DelayedMailJob:
    submission_id: int
    message: MailMessage
    scheduled_at: datetime
    run_at: datetime


class DelayedMailQueue:
    """
    Schedules silent delayed sends and their fallback flush.

    The submission record is the source of truth: a delay record with
    stored mail, ``email_sent`` False and no failure reason is unsent. Each
    send first claims the record through the gateway, so the scheduled
    task and a fallback flush on any worker deliver the mail once.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        scheduler: TaskScheduler,
        transport: Optional[MailTransport] = None,
        delay_min_seconds: int = 2,
        delay_max_seconds: int = 5,
        fallback_after_seconds: int = 10,
        rng: Optional[random.Random] = None,
    ):
        self.gateway = gateway
        self.scheduler = scheduler
        self.transport = transport
        self.delay_min_seconds = delay_min_seconds
        self.delay_max_seconds = delay_max_seconds
        self.fallback_after_seconds = fallback_after_seconds
        self._rng = rng or random.Random()
        self._pending: dict[int, DelayedMailJob] = {}

    @property
    def pending_count(self) -> int:
        """Jobs scheduled by this process that have not run yet."""
        return len(self._pending)

    def schedule(self, submission_id: int, message: MailMessage, now: datetime) -> DelayedMailJob:
        delay = self._rng.randint(self.delay_min_seconds, self.delay_max_seconds)
        job = DelayedMailJob(
            submission_id=submission_id,
            message=message,
            scheduled_at=now,
            run_at=now + timedelta(seconds=delay),
        )
        self._pending[submission_id] = job
        self.scheduler.schedule(job.run_at, self.send, submission_id, message, SentVia.CRON)
        logger.debug(f"Delayed mail for submission {submission_id} in {delay}s")
        return job

    async def send(
        self,
        submission_id: int,
        message: MailMessage,
        sent_via: SentVia = SentVia.CRON,
    ) -> bool:
        """
        Send the delayed mail of a submission once.

        Returns False when the mail was already claimed (by the scheduler
        or a fallback flush) or delivery failed.
        """
        self._pending.pop(submission_id, None)
        try:
            if not await self.gateway.claim_delayed_mail(submission_id, sent_via):
                return False
        except PersistenceError as e:
            logger.error(f"Could not claim delayed mail of submission {submission_id}: {e}")
            return False

        if self.transport is None:
            sent, failure = False, "No mail transport configured"
        else:
            try:
                sent = await self.transport.send(message)
            except Exception as e:
                logger.error(f"Mail transport raised for submission {submission_id}: {e}")
                sent = False
            failure = None if sent else "Mail send failed"

        if sent:
            logger.info(f"Delayed mail sent for submission {submission_id} via {sent_via.value}")
            return True

        try:
            await self.gateway.patch_submission(
                submission_id,
                email_sent=False,
                email_failure_reason=failure,
            )
        except PersistenceError as e:
            logger.error(f"Could not record failed delivery of submission {submission_id}: {e}")
        logger.warning(f"Delayed mail failed for submission {submission_id}: {failure}")
        return False

    async def flush_stalled(self, now: datetime, limit: int = 100) -> int:
        """Send every stored delayed mail still unsent past the fallback deadline."""
        deadline = now - timedelta(seconds=self.fallback_after_seconds)
        stalled = await self.gateway.pending_delayed_mail(deadline, limit=limit)

        flushed = 0
        for record in stalled:
            if await self.send(record.id, MailMessage.from_dict(record.mail_data), SentVia.FALLBACK):
                flushed += 1

        if stalled:
            logger.warning(
                f"Scheduler stalled, sent {flushed} of {len(stalled)} delayed mails via fallback"
            )
        return flushed
