"""
Decision engine.

Maps a risk score onto a graduated action and applies its side effects.

Score ladder:
- [0, 30)   allow          send mail, update whitelist
- [30, 50)  allow_log      send mail
- [50, 65)  delay          silent delayed send
- [65, 70)  drop           silent drop
- [70, 85)  soft_penalty   silent drop + soft fingerprint penalty
- [85, 100] hard_penalty   silent drop + hard fingerprint and IP penalties

The submission record is written first. A failed write propagates; a
failed side effect is logged and never rolls the record back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from silent_trust.db.gateway import PersistenceError, PersistenceGateway
from silent_trust.decision.mail import DelayedMailQueue, MailMessage
from silent_trust.models import (
    DEFERRED_ANALYSIS_KEY,
    Action,
    Penalty,
    PenaltyType,
    SentVia,
    SubmissionRecord,
    TargetType,
)

logger = logging.getLogger(__name__)

ALLOW_BELOW = 30
ALLOW_LOG_BELOW = 50
DELAY_BELOW = 65
DROP_BELOW = 70
SOFT_PENALTY_BELOW = 85


def determine_action(score: int) -> Action:
    """Total, non-overlapping partition of [0, 100]; out-of-range scores are clamped."""
    score = max(0, min(100, int(score)))
    if score < ALLOW_BELOW:
        return Action.ALLOW
    if score < ALLOW_LOG_BELOW:
        return Action.ALLOW_LOG
    if score < DELAY_BELOW:
        return Action.DELAY
    if score < DROP_BELOW:
        return Action.DROP
    if score < SOFT_PENALTY_BELOW:
        return Action.SOFT_PENALTY
    return Action.HARD_PENALTY


@dataclass
class SubmissionContext:
    """Everything the decision engine records about one submission."""

    fingerprint_hash: str
    ip_address: str
    submitted_at: datetime
    form_id: Optional[str] = None
    device_cookie: Optional[str] = None
    device_type: str = "unknown"
    payload: dict[str, Any] = field(default_factory=dict)
    analytics: dict[str, Any] = field(default_factory=dict)
    mail: Optional[MailMessage] = None


@dataclass
class Decision:
    proceed: bool
    action: Action
    score: int
    silent: bool = False
    submission_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "proceed": self.proceed,
            "action": self.action.value,
            "score": self.score,
            "silent": self.silent,
            "submission_id": self.submission_id,
        }


class DecisionEngine:
    """Executes the action for a score and writes the submission record."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        mail_queue: DelayedMailQueue,
        penalty_ttl_hours: int = 24,
    ):
        self.gateway = gateway
        self.mail_queue = mail_queue
        self.penalty_ttl = timedelta(hours=penalty_ttl_hours)

    async def execute(
        self,
        score: int,
        breakdown: dict[str, int],
        submission: SubmissionContext,
    ) -> Decision:
        """
        Decide, log and apply side effects for one submission.

        Raises:
            PersistenceError: The submission record could not be written.
        """
        score = max(0, min(100, int(score)))
        action = determine_action(score)

        submission_id = await self._log(submission, score, breakdown, action)
        decision = Decision(
            proceed=action.proceeds,
            action=action,
            score=score,
            silent=not action.proceeds,
            submission_id=submission_id,
        )

        try:
            await self._apply_side_effects(decision, submission)
        except PersistenceError as e:
            logger.error(
                f"Side effect of {action.value} failed for submission {submission_id}: {e}"
            )

        if action.is_blocking:
            logger.warning(
                f"Blocked submission {submission_id} - score: {score}, action: {action.value}, "
                f"fingerprint: {submission.fingerprint_hash[:8]}"
            )
        else:
            logger.info(f"Submission {submission_id} - score: {score}, action: {action.value}")
        return decision

    async def log_deferred(self, submission: SubmissionContext) -> Decision:
        """Record a submission whose full analysis runs later."""
        submission_id = await self._log(
            submission, 0, {DEFERRED_ANALYSIS_KEY: 0}, Action.ALLOW
        )
        logger.info(f"Submission {submission_id} allowed, full analysis deferred")
        return Decision(proceed=True, action=Action.ALLOW, score=0, submission_id=submission_id)

    async def _log(
        self,
        submission: SubmissionContext,
        score: int,
        breakdown: dict[str, int],
        action: Action,
    ) -> int:
        record = SubmissionRecord(
            form_id=submission.form_id,
            fingerprint_hash=submission.fingerprint_hash,
            device_cookie=submission.device_cookie,
            device_type=submission.device_type,
            ip_address=submission.ip_address,
            payload=dict(submission.payload),
            risk_score=score,
            risk_breakdown=dict(breakdown),
            action=action,
            # Proceeding mail is handed to the framework; failures are patched in later
            email_sent=action.proceeds,
            email_failure_reason=None,
            sent_via=SentVia.CRON if action == Action.DELAY else SentVia.DIRECT,
            submitted_at=submission.submitted_at,
            analytics=dict(submission.analytics),
            mail_data=submission.mail.to_dict() if submission.mail else None,
        )
        try:
            return await self.gateway.insert_submission(record)
        except PersistenceError as e:
            logger.error(f"Failed to log submission from {submission.ip_address}: {e}")
            raise

    async def _apply_side_effects(self, decision: Decision, submission: SubmissionContext) -> None:
        action = decision.action
        now = submission.submitted_at

        if action == Action.ALLOW:
            if submission.device_cookie:
                await self.gateway.update_whitelist(submission.device_cookie, now)

        elif action == Action.DELAY:
            if submission.mail is None:
                logger.warning(f"Delayed submission {decision.submission_id} has no mail to send")
            else:
                self.mail_queue.schedule(decision.submission_id, submission.mail, now)

        elif action in (Action.SOFT_PENALTY, Action.HARD_PENALTY):
            penalty_type = PenaltyType.SOFT if action == Action.SOFT_PENALTY else PenaltyType.HARD
            reason = f"Risk score: {decision.score}"
            await self.gateway.add_penalty(
                Penalty(
                    penalty_type=penalty_type,
                    target_type=TargetType.FINGERPRINT,
                    target_value=submission.fingerprint_hash,
                    reason=reason,
                    created_at=now,
                    expires_at=now + self.penalty_ttl,
                )
            )
            if penalty_type == PenaltyType.HARD:
                await self.gateway.add_penalty(
                    Penalty(
                        penalty_type=PenaltyType.HARD,
                        target_type=TargetType.IP,
                        target_value=submission.ip_address,
                        reason=reason,
                        created_at=now,
                        expires_at=now + self.penalty_ttl,
                    )
                )
