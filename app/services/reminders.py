"""
Overdue reminder scheduling through QStash.

``build_reminder_scheduler`` picks the QStash client when a token is
configured and the null scheduler otherwise, so callers never branch on
configuration themselves.
"""
import base64
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from jose import JWTError, jwt

from app.config.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

REMINDER_TYPE = "overdue_reminder"
REMINDER_PATH = "/qstash/reminder"


def reminder_time(due_date: datetime, hour: int = 9) -> datetime:
    """One day before ``due_date`` at ``hour`` o'clock, same timezone as the input."""
    day_before = due_date - timedelta(days=1)
    return day_before.replace(hour=hour, minute=0, second=0, microsecond=0)


class ReminderScheduler:
    def is_available(self) -> bool:
        raise NotImplementedError

    def schedule(self, checkout_id: int, due_date: datetime) -> Optional[str]:
        raise NotImplementedError

    def cancel(self, message_id: str) -> bool:
        raise NotImplementedError


class NullReminderScheduler(ReminderScheduler):
    def is_available(self) -> bool:
        return False

    def schedule(self, checkout_id: int, due_date: datetime) -> Optional[str]:
        logger.warning("QSTASH_TOKEN not configured, reminder for checkout %s not scheduled", checkout_id)
        return None

    def cancel(self, message_id: str) -> bool:
        logger.warning("QSTASH_TOKEN not configured, reminder %s not cancelled", message_id)
        return False


class QStashReminderScheduler(ReminderScheduler):
    def __init__(
        self,
        client: httpx.Client,
        token: str,
        callback_url: str,
        reminder_hour: int = 9,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.client = client
        self.token = token
        self.callback_url = callback_url
        self.reminder_hour = reminder_hour
        self.clock = clock

    def is_available(self) -> bool:
        return True

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    def schedule(self, checkout_id: int, due_date: datetime) -> Optional[str]:
        """
        Publish a delayed message that calls back the reminder webhook.

        Parameters:
            checkout_id (int): The checkout to remind about.
            due_date (datetime): The checkout's due date.

        Returns:
            str | None: The QStash message ID, or None when the reminder time
            has already passed or QStash rejected the request.
        """
        fire_at = reminder_time(due_date, self.reminder_hour)
        if fire_at < self.clock():
            logger.warning(
                "Cannot schedule reminder for checkout %s: reminder date %s is in the past",
                checkout_id,
                fire_at.isoformat(),
            )
            return None

        try:
            response = self.client.post(
                f"/v2/publish/{self.callback_url}",
                json={"checkoutId": checkout_id, "type": REMINDER_TYPE},
                headers={
                    **self._headers(),
                    "Upstash-Not-Before": str(int(fire_at.timestamp())),
                },
            )
            response.raise_for_status()
            message_id = response.json()["messageId"]
        except (httpx.HTTPError, KeyError, ValueError):
            logger.exception("Error scheduling reminder for checkout %s", checkout_id)
            return None

        logger.info("Scheduled reminder for checkout %s at %s", checkout_id, fire_at.isoformat())
        return message_id

    def cancel(self, message_id: str) -> bool:
        try:
            response = self.client.delete(f"/v2/messages/{message_id}", headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError:
            logger.exception("Error cancelling reminder %s", message_id)
            return False
        logger.info("Cancelled reminder with message ID %s", message_id)
        return True


def build_reminder_scheduler(settings: Settings = default_settings) -> ReminderScheduler:
    if not settings.QSTASH_TOKEN:
        logger.warning("QSTASH_TOKEN not configured, reminders will not be scheduled")
        return NullReminderScheduler()
    client = httpx.Client(base_url=settings.QSTASH_URL, timeout=10.0)
    return QStashReminderScheduler(
        client,
        settings.QSTASH_TOKEN,
        callback_url=settings.APP_URL.rstrip("/") + REMINDER_PATH,
        reminder_hour=settings.REMINDER_HOUR,
    )


def verify_signature(signature: Optional[str], body: bytes, settings: Settings = default_settings) -> bool:
    """
    Check the ``Upstash-Signature`` JWT against the configured signing keys.

    The token must be issued for this deployment's reminder callback URL.
    Without signing keys verification is skipped and every request passes.
    """
    keys = [k for k in (settings.QSTASH_CURRENT_SIGNING_KEY, settings.QSTASH_NEXT_SIGNING_KEY) if k]
    if not keys:
        logger.warning("QStash signing keys not configured, webhook signature verification is disabled")
        return True
    if not signature:
        return False

    body_hash = base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("=")
    callback_url = settings.APP_URL.rstrip("/") + REMINDER_PATH
    for key in keys:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer="Upstash",
                options={"verify_aud": False},
            )
        except JWTError:
            continue
        if claims.get("sub") != callback_url:
            continue
        if claims.get("body", "").rstrip("=") == body_hash:
            return True
    return False
