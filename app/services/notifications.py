import html
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import httpx

from app.config.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class Mailer:
    def is_available(self) -> bool:
        raise NotImplementedError

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        raise NotImplementedError


class NullMailer(Mailer):
    def is_available(self) -> bool:
        return False

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        logger.warning("RESEND_API_KEY not configured, email %r to %s not sent", subject, to)
        return True


class ResendMailer(Mailer):
    def __init__(self, client: httpx.Client, api_key: str, sender: str):
        self.client = client
        self.api_key = api_key
        self.sender = sender

    def is_available(self) -> bool:
        return True

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        try:
            response = self.client.post(
                "/emails",
                json={
                    "from": self.sender,
                    "to": [to],
                    "subject": subject,
                    "html": html_body,
                    "text": text_body,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPError:
            logger.exception("Failed to send email %r to %s", subject, to)
            return False
        return True


def build_mailer(settings: Settings = default_settings) -> Mailer:
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY not configured, email service disabled")
        return NullMailer()
    client = httpx.Client(base_url=settings.RESEND_URL, timeout=10.0)
    sender = f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM_ADDRESS}>"
    return ResendMailer(client, settings.RESEND_API_KEY, sender)


def _send_lines(mailer: Mailer, to: str, subject: str, lines: List[str]) -> bool:
    text_body = "\n".join(lines)
    html_body = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    try:
        return mailer.send(to, subject, html_body, text_body)
    except Exception:
        logger.exception("Failed to send email %r to %s", subject, to)
        return False


def send_overdue_reminder(
    mailer: Mailer,
    to: str,
    name: str,
    book_title: str,
    book_author: str,
    due_date: datetime,
    overdue_days: int,
    late_fee_amount: Optional[Decimal] = None,
) -> bool:
    """Send the overdue reminder email. Never raises; failures are logged and reported as False."""
    lines = [
        f"Hello {name},",
        "This is a reminder that you have an overdue book that needs to be returned.",
        f"Book: {book_title}",
        f"Author: {book_author}",
        f"Due Date: {due_date.date().isoformat()}",
        f"Days Overdue: {overdue_days}",
    ]
    if late_fee_amount:
        lines.append(f"Late Fee: ${late_fee_amount:.2f}")
    lines.append("Please return it as soon as possible to avoid additional fees.")
    return _send_lines(mailer, to, f"Overdue Book Reminder - {book_title}", lines)


def send_verification_email(
    mailer: Mailer, to: str, name: str, verify_url: str, settings: Settings = default_settings
) -> bool:
    lines = [
        f"Hello {name},",
        "Please verify your email address to complete your registration.",
        f"You must verify your email within {settings.VERIFICATION_TOKEN_HOURS} hours.",
        f"Verify your email: {verify_url}",
    ]
    return _send_lines(mailer, to, f"Verify Your Email - {settings.EMAIL_FROM_NAME}", lines)


def send_staff_invitation_email(
    mailer: Mailer, to: str, name: str, role: str, settings: Settings = default_settings
) -> bool:
    """Tell an invited staff member their account exists. The password is never emailed."""
    lines = [
        f"Hello {name},",
        f"You've been invited to join {settings.EMAIL_FROM_NAME} as {role}.",
        f"Sign in with this email address: {to}",
        f"Sign in at: {settings.APP_URL.rstrip('/')}/auth/login",
    ]
    return _send_lines(
        mailer, to, f"Welcome to {settings.EMAIL_FROM_NAME} - Staff Invitation", lines
    )
