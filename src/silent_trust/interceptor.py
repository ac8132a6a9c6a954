"""
Submission interceptor.

The single entry point the form framework calls once per submission,
before it sends any mail. It answers ``proceed`` (may the framework send
the mail now?) and never reveals the outcome to the submitter.

Order:
1. Honeypot (instant hard block)
2. Async path: quick pre-check, then log + queue full analysis
   Sync path: full risk engine inline
3. Decision engine writes the record and applies side effects

If the submission record cannot be written, the configured failure
policy decides: fail-open lets the mail through, fail-closed blocks it.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from silent_trust.analytics import collect_analytics
from silent_trust.db.gateway import PersistenceError, PersistenceGateway
from silent_trust.decision.engine import Decision, DecisionEngine, SubmissionContext
from silent_trust.decision.mail import MailMessage
from silent_trust.models import DEFERRED_ANALYSIS_KEY, Action, SentVia
from silent_trust.pipeline.async_gate import AsyncGate
from silent_trust.reputation.lookup import ReputationLookup
from silent_trust.scoring.risk_engine import MAX_SCORE, RiskEngine
from silent_trust.scoring.validator import PayloadValidator
from silent_trust.signals import RequestContext, SignalPayload

logger = logging.getLogger(__name__)

SMTP_FAILURE_REASON = "SMTP send failed"


def fingerprint_for(payload: Optional[SignalPayload]) -> str:
    """The payload's fingerprint hash, or a stable hash of the payload itself."""
    if payload is not None and payload.fingerprint_hash:
        return payload.fingerprint_hash
    snapshot = payload.snapshot() if payload is not None else {}
    return hashlib.sha256(json.dumps(snapshot, sort_keys=True).encode()).hexdigest()


@dataclass
class SubmissionRequest:
    """What the form framework hands over for one submission."""

    ip_address: str
    raw_payload: Any = None
    device_cookie: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    form_id: Optional[str] = None
    posted_fields: Mapping[str, Any] = field(default_factory=dict)
    mail: Optional[MailMessage] = None
    received_at: Optional[datetime] = None


@dataclass
class InterceptResult:
    proceed: bool
    path: str  # honeypot, quick_block, async, sync, persistence_failure
    action: Optional[Action] = None
    score: Optional[int] = None
    reason: Optional[str] = None
    submission_id: Optional[int] = None
    queue_item_id: Optional[int] = None
    breakdown: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "proceed": self.proceed,
            "path": self.path,
            "action": self.action.value if self.action else None,
            "score": self.score,
            "reason": self.reason,
            "submission_id": self.submission_id,
            "queue_item_id": self.queue_item_id,
            "breakdown": dict(self.breakdown),
        }


class SubmissionInterceptor:
    """Gates mail delivery for form submissions."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        lookup: ReputationLookup,
        validator: PayloadValidator,
        risk_engine: RiskEngine,
        decision_engine: DecisionEngine,
        async_gate: AsyncGate,
        fail_open: bool = True,
    ):
        self.gateway = gateway
        self.lookup = lookup
        self.validator = validator
        self.risk_engine = risk_engine
        self.decision_engine = decision_engine
        self.async_gate = async_gate
        self.fail_open = fail_open

    async def intercept(self, request: SubmissionRequest) -> InterceptResult:
        context = RequestContext(
            ip_address=request.ip_address,
            received_at=request.received_at or datetime.utcnow(),
            device_cookie=request.device_cookie,
            user_agent=request.user_agent,
            referer=request.referer,
            form_id=request.form_id,
            posted_fields=request.posted_fields,
        )
        payload = SignalPayload.from_raw(request.raw_payload)
        if payload is None:
            logger.info(f"Submission from {context.ip_address} carries no signal payload")

        analytics = await collect_analytics(self.lookup, payload, context)
        submission = SubmissionContext(
            fingerprint_hash=fingerprint_for(payload),
            ip_address=context.ip_address,
            submitted_at=context.received_at,
            form_id=context.form_id,
            device_cookie=context.device_cookie,
            device_type=payload.effective_device_type.value if payload else "unknown",
            payload=payload.snapshot() if payload else {},
            analytics=analytics,
            mail=request.mail,
        )

        try:
            if self.validator.check_honeypot(context):
                breakdown = {"honeypot_triggered": MAX_SCORE}
                decision = await self.decision_engine.execute(MAX_SCORE, breakdown, submission)
                return self._result(decision, "honeypot", "honeypot_triggered", breakdown)

            if self.async_gate.should_use_async():
                return await self._intercept_async(payload, context, submission)

            risk = await self.risk_engine.calculate_risk(payload, context)
            decision = await self.decision_engine.execute(risk.score, risk.breakdown, submission)
            return self._result(decision, "sync", None, risk.breakdown)
        except PersistenceError as e:
            policy = "open" if self.fail_open else "closed"
            logger.error(
                f"Submission record could not be written, failing {policy} "
                f"for {context.ip_address}: {e}"
            )
            return InterceptResult(
                proceed=self.fail_open,
                path="persistence_failure",
                reason="persistence_failure",
            )

    async def _intercept_async(
        self,
        payload: Optional[SignalPayload],
        context: RequestContext,
        submission: SubmissionContext,
    ) -> InterceptResult:
        quick = await self.async_gate.quick_precheck(payload, context)
        if quick.instant_block:
            breakdown = {quick.reason: MAX_SCORE}
            decision = await self.decision_engine.execute(MAX_SCORE, breakdown, submission)
            return self._result(decision, "quick_block", quick.reason, breakdown)

        decision = await self.decision_engine.log_deferred(submission)
        result = self._result(decision, "async", quick.reason, {DEFERRED_ANALYSIS_KEY: 0})
        try:
            result.queue_item_id = await self.async_gate.queue_analysis(
                payload, context, submission.fingerprint_hash, decision.submission_id
            )
        except PersistenceError as e:
            logger.error(f"Could not queue analysis for submission {decision.submission_id}: {e}")
        return result

    @staticmethod
    def _result(
        decision: Decision,
        path: str,
        reason: Optional[str],
        breakdown: dict[str, int],
    ) -> InterceptResult:
        return InterceptResult(
            proceed=decision.proceed,
            path=path,
            action=decision.action,
            score=decision.score,
            reason=reason,
            submission_id=decision.submission_id,
            breakdown=dict(breakdown),
        )

    async def record_delivery_outcome(
        self,
        submission_id: int,
        sent: bool,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """
        Patch the delivery columns after the framework tried to send.

        A failed send always gets a non-null failure reason, which is what
        distinguishes it from an intentional silent drop.
        """
        updated = await self.gateway.patch_submission(
            submission_id,
            email_sent=sent,
            email_failure_reason=None if sent else (failure_reason or SMTP_FAILURE_REASON),
            sent_via=SentVia.DIRECT,
        )
        if not updated:
            logger.warning(f"Delivery outcome for unknown submission {submission_id}")
        elif not sent:
            logger.warning(f"SMTP failure recorded for submission {submission_id}")
        return updated
