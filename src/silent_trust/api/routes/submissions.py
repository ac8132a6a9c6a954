"""
Submission API routes.

Called by the form framework hook: once before mail is sent (intercept)
and once after the framework tried to deliver it (delivery outcome).
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from silent_trust.api.deps import Services
from silent_trust.db.gateway import PersistenceError
from silent_trust.decision.mail import MailMessage, build_mail_body
from silent_trust.interceptor import SubmissionRequest

logger = logging.getLogger(__name__)

router = APIRouter()


class MailRequest(BaseModel):
    """Mail the framework would send; body defaults to the posted fields."""

    to: str
    subject: str = "Contact Form Submission"
    body: Optional[str] = None
    headers: str = ""


class InterceptRequest(BaseModel):
    ip_address: Optional[str] = Field(
        default=None, description="Client IP; defaults to the caller's address"
    )
    payload: Any = Field(default=None, description="Signal payload (object or JSON string)")
    device_cookie: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    form_id: Optional[str] = None
    posted_fields: dict[str, Any] = Field(default_factory=dict)
    mail: Optional[MailRequest] = None
    received_at: Optional[datetime] = None


class DeliveryRequest(BaseModel):
    sent: bool
    failure_reason: Optional[str] = None


@router.post("/intercept")
async def intercept_submission(
    body: InterceptRequest,
    request: Request,
    services: Services,
) -> dict[str, Any]:
    """Decide whether the framework may send the mail for this submission."""
    ip_address = body.ip_address or (request.client.host if request.client else "0.0.0.0")

    mail = None
    if body.mail is not None:
        mail = MailMessage(
            to=body.mail.to,
            subject=body.mail.subject,
            body=body.mail.body if body.mail.body is not None else build_mail_body(body.posted_fields),
            headers=body.mail.headers,
            form_id=body.form_id,
        )

    result = await services.interceptor.intercept(
        SubmissionRequest(
            ip_address=ip_address,
            raw_payload=body.payload,
            device_cookie=body.device_cookie,
            user_agent=body.user_agent or request.headers.get("user-agent"),
            referer=body.referer,
            form_id=body.form_id,
            posted_fields=body.posted_fields,
            mail=mail,
            received_at=body.received_at,
        )
    )
    return result.to_dict()


@router.post("/{submission_id}/delivery")
async def record_delivery(
    submission_id: int,
    body: DeliveryRequest,
    services: Services,
) -> dict[str, Any]:
    """Record whether the framework's own mail send succeeded."""
    try:
        updated = await services.interceptor.record_delivery_outcome(
            submission_id, body.sent, body.failure_reason
        )
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    return {"submission_id": submission_id, "email_sent": body.sent}
