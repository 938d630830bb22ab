"""
api/routes/v1/contact.py -- Public contact form.

  POST /api/v1/contact -- forward a visitor's message to the site owner by mail.

Unlike the reset flow, a delivery failure here is reported to the caller:
the visitor needs to know the message did not go out.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.limiter import CONTACT_LIMIT, limiter
from api.models import ContactRequest, envelope
from api.validation import validated_body
from auth.errors import Internal
from auth.mailer import ContactNotification, MailDeliveryError
from auth.store import utcnow

logger = logging.getLogger("estategate.api")

router = APIRouter()


@limiter.limit(CONTACT_LIMIT)
@router.post("/contact")
def submit_contact(
    request: Request,
    body: ContactRequest = Depends(validated_body(ContactRequest)),
) -> dict:
    notification = ContactNotification(
        name=body.name,
        email=body.email,
        phone=body.phone,
        subject=body.subject,
        message=body.message,
        submitted_at=utcnow().isoformat(),
    )
    try:
        request.app.state.mailer.send_contact_notification(notification)
    except MailDeliveryError as exc:
        logger.warning("Contact notification from %s not delivered: %s", body.email, exc)
        raise Internal("Failed to send your message. Please try again later.") from exc
    return envelope(message="Contact form submitted successfully")
