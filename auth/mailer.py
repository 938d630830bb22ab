"""
auth/mailer.py -- Outbound mail collaborator.

The core only decides WHEN to send and WHAT payload to hand over; delivery is
this module's concern. Two implementations share the Mailer protocol:

  HttpMailer -- posts JSON to a MailerSend-style HTTP API with requests.
  LogMailer  -- logs the event instead of sending. Used when no API token is
                configured (local dev, tests). Never logs token values.

build_mailer() picks one from Settings. Delivery failures raise
MailDeliveryError; callers in the reset flow log it and carry on so the
client response never depends on mail delivery.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Protocol

import requests

from auth.models import Account
from core.config import Settings, get_settings

logger = logging.getLogger("estategate.mailer")


class MailDeliveryError(Exception):
    """The mail provider rejected the message or could not be reached."""


@dataclass(frozen=True)
class ContactNotification:
    name: str
    email: str
    phone: str
    subject: str
    message: str
    submitted_at: str


class Mailer(Protocol):
    def send_password_reset(self, account: Account, token: str, reset_link: str) -> None: ...

    def send_contact_notification(self, data: ContactNotification) -> None: ...


class LogMailer:
    """Mailer that records what would have been sent."""

    def send_password_reset(self, account: Account, token: str, reset_link: str) -> None:
        logger.info("Password reset mail queued for account %s (delivery disabled)", account.id)

    def send_contact_notification(self, data: ContactNotification) -> None:
        logger.info("Contact notification from %s queued (delivery disabled): %s", data.email, data.subject)


class HttpMailer:
    """Mailer backed by a transactional email HTTP API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        # Dedicated session for connection pooling. A known provider endpoint
        # needs at most a couple of redirects.
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._session.headers.update(
            {
                "Authorization": f"Bearer {settings.mail_api_token}",
                "Content-Type": "application/json",
            }
        )

    def _send(self, to_email: str, to_name: str, subject: str, text: str, html_body: str) -> None:
        payload = {
            "from": {"email": self._settings.mail_from_email, "name": self._settings.mail_from_name},
            "to": [{"email": to_email, "name": to_name}],
            "subject": subject,
            "text": text,
            "html": html_body,
        }
        try:
            resp = self._session.post(
                self._settings.mail_api_url,
                json=payload,
                timeout=self._settings.mail_timeout_seconds,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise MailDeliveryError(str(e)) from e

    def send_password_reset(self, account: Account, token: str, reset_link: str) -> None:
        minutes = self._settings.reset_token_expire_seconds // 60
        text = (
            f"Hello {account.username},\n\n"
            f"Use the link below to set a new password. It expires in {minutes} minutes.\n\n"
            f"{reset_link}\n\n"
            "If you did not request this, you can ignore this email."
        )
        html_body = (
            f"<p>Hello {html.escape(account.username)},</p>"
            f"<p>Use the link below to set a new password. It expires in {minutes} minutes.</p>"
            f'<p><a href="{html.escape(reset_link, quote=True)}">Reset your password</a></p>'
            "<p>If you did not request this, you can ignore this email.</p>"
        )
        self._send(account.email, account.username, "Reset your password", text, html_body)
        logger.info("Password reset mail sent to account %s", account.id)

    def send_contact_notification(self, data: ContactNotification) -> None:
        recipient = self._settings.contact_recipient_email
        if not recipient:
            logger.warning("CONTACT_RECIPIENT_EMAIL not set -- contact notification dropped")
            return
        lines = [
            f"Name: {data.name}",
            f"Email: {data.email}",
            f"Phone: {data.phone}",
            f"Submitted: {data.submitted_at}",
            "",
            data.message,
        ]
        text = "\n".join(lines)
        html_body = "".join(f"<p>{html.escape(line)}</p>" for line in lines if line)
        self._send(recipient, "Site Owner", f"New contact: {data.subject}", text, html_body)
        logger.info("Contact notification sent for %s", data.email)


def build_mailer(settings: Settings | None = None) -> Mailer:
    settings = settings or get_settings()
    if not settings.mail_api_token:
        logger.warning("MAIL_API_TOKEN not set -- outbound mail is logged, not sent")
        return LogMailer()
    return HttpMailer(settings)
