"""
Server-side payload validation.

Catches the cheap, obvious bot signals before the heavier analyzers
run: a filled honeypot field, a missing or incomplete signal payload,
and inconsistencies between what the client claims and what the server
observes (GeoIP timezone, User-Agent header).
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from silent_trust.reputation.lookup import ReputationLookup
from silent_trust.signals import RequestContext, SignalPayload

logger = logging.getLogger(__name__)

HONEYPOT_PREFIX = "st_hp_"
HONEYPOT_NAME_POOL = ("user_verify", "email_check", "website_url", "phone_verify", "contact_name")

REQUIRED_FIELDS = ("device_type", "fingerprint_hash", "canvas_hash")

HONEYPOT_SCORE = 100
MISSING_PAYLOAD_SCORE = 50
MISSING_FIELD_SCORE = 15
TIMEZONE_MISMATCH_SCORE = 10
UA_MISMATCH_SCORE = 20


def honeypot_field_name(day: date) -> str:
    """
    Name of the invisible honeypot input for a given day.

    The form injector and the validator both call this, so they agree on
    the name without sharing state.
    """
    digest = hashlib.md5(day.strftime("%Y%m%d").encode()).hexdigest()
    index = int(digest[:2], 16) % len(HONEYPOT_NAME_POOL)
    return HONEYPOT_PREFIX + HONEYPOT_NAME_POOL[index]


@dataclass
class ValidationResult:
    score: int = 0
    flags: list[str] = field(default_factory=list)

    @property
    def honeypot_triggered(self) -> bool:
        return "honeypot_triggered" in self.flags


class PayloadValidator:
    """Scores structural and consistency problems of a submission."""

    def __init__(self, lookup: ReputationLookup, honeypot_enabled: bool = True):
        self.lookup = lookup
        self.honeypot_enabled = honeypot_enabled

    def check_honeypot(self, context: RequestContext) -> Optional[str]:
        """Return the honeypot field name if it was filled, else None."""
        if not self.honeypot_enabled:
            return None
        name = honeypot_field_name(context.received_at.date())
        value = context.posted_fields.get(name)
        if value not in (None, "") and str(value).strip():
            logger.warning(f"Honeypot triggered: field {name} filled from {context.ip_address}")
            return name
        return None

    async def validate(
        self,
        payload: Optional[SignalPayload],
        context: RequestContext,
    ) -> ValidationResult:
        if self.check_honeypot(context):
            return ValidationResult(score=HONEYPOT_SCORE, flags=["honeypot_triggered"])

        if payload is None:
            return ValidationResult(score=MISSING_PAYLOAD_SCORE, flags=["missing_payload"])

        result = ValidationResult()

        for name in REQUIRED_FIELDS:
            if not getattr(payload, name):
                result.score += MISSING_FIELD_SCORE
                result.flags.append(f"missing_{name}")

        if payload.timezone and context.ip_address:
            location = await self.lookup.safe_location(context.ip_address)
            if location and location.timezone and location.timezone != payload.timezone:
                result.score += TIMEZONE_MISMATCH_SCORE
                result.flags.append("timezone_mismatch")

        # Substring check: proxies and in-app browsers append to the UA
        reported, actual = payload.user_agent, context.user_agent
        if reported and actual and reported not in actual and actual not in reported:
            result.score += UA_MISMATCH_SCORE
            result.flags.append("ua_mismatch")

        return result
