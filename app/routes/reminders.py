import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config.db import get_db
from app.errors import ApiError, WebhookErrorCodes, checkout_not_found_error
from app.models.models import Checkout
from app.routes.deps import get_mailer, get_raw_body
from app.schemas.schemas import ReminderPayload
from app.services.checkout import reconcile_overdue
from app.services.notifications import Mailer, send_overdue_reminder
from app.services.reminders import REMINDER_TYPE, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/qstash", tags=["reminders"])


@router.post("/reminder")
def handle_reminder(
    background_tasks: BackgroundTasks,
    body: bytes = Depends(get_raw_body),
    upstash_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    """
    Handles a scheduled overdue reminder delivered by QStash.

    Parameters:
        background_tasks (BackgroundTasks): Runs the email send after the response.
        body (bytes): The raw webhook body, kept as bytes for signature checks.
        upstash_signature (str | None): The ``Upstash-Signature`` header.
        db (Session): The database session.
        mailer (Mailer): The email adapter.

    Returns:
        dict: A message describing what was done with the reminder.

    Raises:
        ApiError: 401 for a bad signature, 400 for a malformed body,
        CHECKOUT_NOT_FOUND if the checkout no longer exists.
    """
    if not verify_signature(upstash_signature, body):
        raise ApiError(
            WebhookErrorCodes.INVALID_SIGNATURE,
            "Invalid webhook signature",
            status.HTTP_401_UNAUTHORIZED,
        )

    try:
        payload = ReminderPayload.model_validate_json(body or b"{}")
    except ValidationError:
        payload = None
    if payload is None or not payload.checkoutId or payload.type != REMINDER_TYPE:
        raise ApiError(
            WebhookErrorCodes.INVALID_REQUEST, "Invalid request body", status.HTTP_400_BAD_REQUEST
        )

    checkout = db.get(Checkout, payload.checkoutId)
    if checkout is None:
        logger.warning("Reminder for unknown checkout %s", payload.checkoutId)
        raise checkout_not_found_error(payload.checkoutId)

    if checkout.returned_date is not None:
        logger.info("Checkout %s already returned, skipping reminder", checkout.id)
        return {"message": "Checkout already returned, reminder skipped"}

    if reconcile_overdue(checkout, datetime.now()):
        db.commit()
        db.refresh(checkout)

    if checkout.user.email:
        background_tasks.add_task(
            send_overdue_reminder,
            mailer,
            to=checkout.user.email,
            name=checkout.user.name or "User",
            book_title=checkout.book.title,
            book_author=checkout.book.author,
            due_date=checkout.due_date,
            overdue_days=checkout.overdue_days,
            late_fee_amount=checkout.late_fee_amount,
        )

    return {"message": "Reminder processed successfully", "checkoutId": checkout.id}
