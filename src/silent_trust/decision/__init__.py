"""Action decisions and silent delayed mail."""

from silent_trust.decision.engine import Decision, DecisionEngine, SubmissionContext, determine_action
from silent_trust.decision.mail import (
    DelayedMailQueue,
    HttpMailTransport,
    MailMessage,
    MailTransport,
    build_mail_body,
)

__all__ = [
    "Decision",
    "DecisionEngine",
    "DelayedMailQueue",
    "HttpMailTransport",
    "MailMessage",
    "MailTransport",
    "SubmissionContext",
    "build_mail_body",
    "determine_action",
]
