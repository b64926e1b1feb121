"""
Checkout lifecycle: validation, due dates, late fees, creation and return.

A checkout is ACTIVE until ``returned_date`` is set and RETURNED (terminal)
afterwards. While active its ``is_overdue``/``overdue_days``/``late_fee_amount``
fields are derived state, refreshed by ``reconcile_overdue``; on return they
are frozen at the values computed for the return instant.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional, Union

from fastapi import status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.config.db import SessionLocal
from app.config.settings import settings
from app.errors import (
    ApiError,
    BookErrorCodes,
    CheckoutErrorCodes,
    book_already_checked_out_error,
    checkout_already_returned_error,
    checkout_limit_exceeded_error,
    checkout_not_found_error,
)
from app.models.models import Book, BookStatus, Checkout, User
from app.services.reminders import ReminderScheduler

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)
CENT = Decimal("0.01")

Money = Union[Decimal, float, int, str]


def to_money(value: Money) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class LateFees:
    is_overdue: bool
    overdue_days: int
    late_fee_amount: Decimal


@dataclass(frozen=True)
class CheckoutValidation:
    valid: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    current_checkouts: Optional[int] = None
    max_checkouts: Optional[int] = None

    def to_error(self) -> ApiError:
        details: Dict[str, Any] = {}
        if self.current_checkouts is not None:
            details["currentCheckouts"] = self.current_checkouts
            details["maxCheckouts"] = self.max_checkouts
        return ApiError(
            self.code or "CHECKOUT_CREATE_FAILED",
            self.reason or "Checkout is not allowed",
            status.HTTP_400_BAD_REQUEST,
            details or None,
        )


def calculate_due_date(checkout_date: datetime, max_duration_days: int) -> datetime:
    return checkout_date + timedelta(days=max_duration_days)


def calculate_late_fees(
    due_date: datetime, late_fee_per_day: Money, as_of: Optional[datetime] = None
) -> LateFees:
    """
    Overdue state of a checkout as of a given instant, now when omitted.

    Whole days are floored, so a checkout becomes one day overdue only once a
    full day has passed since ``due_date``. The fee is rounded to cents.
    """
    if as_of is None:
        as_of = datetime.now()
    days = (as_of - due_date) // ONE_DAY
    if days <= 0:
        return LateFees(is_overdue=False, overdue_days=0, late_fee_amount=Decimal("0.00"))

    amount = (days * to_money(late_fee_per_day)).quantize(CENT, rounding=ROUND_HALF_UP)
    return LateFees(is_overdue=True, overdue_days=days, late_fee_amount=amount)


def reconcile_overdue(checkout: Checkout, as_of: datetime) -> bool:
    """Refresh the derived overdue fields in place. Returns True if anything changed."""
    if checkout.returned_date is not None:
        return False

    fees = calculate_late_fees(checkout.due_date, checkout.late_fee_per_day, as_of)
    if fees.is_overdue == checkout.is_overdue and fees.overdue_days == checkout.overdue_days:
        return False

    checkout.is_overdue = fees.is_overdue
    checkout.overdue_days = fees.overdue_days
    checkout.late_fee_amount = fees.late_fee_amount if fees.is_overdue else None
    return True


class CheckoutEngine:
    """
    Checkout operations bound to one database session.

    Reminder scheduling and cancellation are queued on ``tasks`` (anything with
    ``add_task``, normally FastAPI's ``BackgroundTasks``) and only run after the
    business transaction has committed. Their failures are logged and never
    reach the caller.
    """

    def __init__(
        self,
        db: Session,
        reminders: ReminderScheduler,
        tasks,
        session_factory: sessionmaker = SessionLocal,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.reminders = reminders
        self.tasks = tasks
        self.session_factory = session_factory
        self.clock = clock

    def _active_checkouts(self):
        return self.db.query(Checkout).filter(Checkout.returned_date.is_(None))

    def validate_checkout(self, user_id: int, book_id: int) -> CheckoutValidation:
        user = self.db.get(User, user_id)
        if user is None:
            return CheckoutValidation(
                valid=False, code=CheckoutErrorCodes.USER_NOT_FOUND, reason="User not found"
            )

        if not user.is_staff and user.email_verified is None:
            return CheckoutValidation(
                valid=False,
                code=CheckoutErrorCodes.EMAIL_NOT_VERIFIED,
                reason="Please verify your email address before checking out books. "
                "Check your email for a verification link.",
            )

        held = self._active_checkouts().filter(Checkout.user_id == user_id).all()
        current = len(held)
        if current >= user.max_checkout_limit:
            return CheckoutValidation(
                valid=False,
                code=CheckoutErrorCodes.CHECKOUT_LIMIT_EXCEEDED,
                reason=checkout_limit_exceeded_error(current, user.max_checkout_limit).message,
                current_checkouts=current,
                max_checkouts=user.max_checkout_limit,
            )

        book = self.db.get(Book, book_id)
        if book is None:
            return CheckoutValidation(
                valid=False, code=BookErrorCodes.BOOK_NOT_FOUND, reason="Book not found"
            )

        book_active = self._active_checkouts().filter(Checkout.book_id == book_id).count()
        if book.status == BookStatus.CHECKED_OUT or book_active > 0:
            return CheckoutValidation(
                valid=False,
                code=BookErrorCodes.BOOK_ALREADY_CHECKED_OUT,
                reason=book_already_checked_out_error(book_id).message,
            )

        if any(checkout.book_id == book_id for checkout in held):
            return CheckoutValidation(
                valid=False,
                code=CheckoutErrorCodes.BOOK_ALREADY_HELD,
                reason="You already have this book checked out",
            )

        return CheckoutValidation(
            valid=True, current_checkouts=current, max_checkouts=user.max_checkout_limit
        )

    def check_overdue_status(self, checkout_id: int) -> Optional[Checkout]:
        checkout = self.db.get(Checkout, checkout_id)
        if checkout is None:
            return None
        if reconcile_overdue(checkout, self.clock()):
            self.db.commit()
            self.db.refresh(checkout)
        return checkout

    def _sweep(self, checkouts) -> int:
        now = self.clock()
        updated = 0
        for checkout in checkouts:
            if reconcile_overdue(checkout, now):
                updated += 1
        if updated:
            self.db.commit()
        return updated

    def update_all_overdue_statuses(self) -> int:
        updated = self._sweep(self._active_checkouts().all())
        logger.info("Overdue sweep updated %d checkout(s)", updated)
        return updated

    def update_user_overdue_statuses(self, user_id: int) -> int:
        return self._sweep(self._active_checkouts().filter(Checkout.user_id == user_id).all())

    def _commit(self, book_id: int) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            # lost the race against a concurrent checkout of the same book
            raise book_already_checked_out_error(book_id)
        except Exception:
            self.db.rollback()
            raise

    def create_checkout(
        self,
        book_id: int,
        user_id: int,
        max_duration_days: Optional[int] = None,
        late_fee_per_day: Optional[Money] = None,
    ) -> Checkout:
        """
        Check a book out to a user.

        Parameters:
            book_id (int): The book to check out.
            user_id (int): The borrowing user.
            max_duration_days (int | None): Loan length, 14 days when omitted.
            late_fee_per_day (Decimal | None): Daily fee once overdue, 0.50 when omitted.

        Returns:
            Checkout: The new active checkout.

        Raises:
            ApiError: The validation failure (400), INVALID_LOAN_DURATION (400) for a
            loan outside 0 to MAX_LOAN_DAYS days, or BOOK_ALREADY_CHECKED_OUT (409)
            when a concurrent checkout of the same book committed first.
        """
        validation = self.validate_checkout(user_id, book_id)
        if not validation.valid:
            raise validation.to_error()

        if max_duration_days is None:
            max_duration_days = settings.DEFAULT_MAX_DURATION_DAYS
        if not 0 <= max_duration_days <= settings.MAX_LOAN_DAYS:
            raise ApiError(
                CheckoutErrorCodes.INVALID_LOAN_DURATION,
                f"Loan duration must be between 0 and {settings.MAX_LOAN_DAYS} days",
                status.HTTP_400_BAD_REQUEST,
                {"maxDurationDays": max_duration_days},
            )
        fee = to_money(
            settings.DEFAULT_LATE_FEE_PER_DAY if late_fee_per_day is None else late_fee_per_day
        )

        checkout_date = self.clock()
        checkout = Checkout(
            book_id=book_id,
            user_id=user_id,
            checkout_date=checkout_date,
            due_date=calculate_due_date(checkout_date, max_duration_days),
            max_duration_days=max_duration_days,
            late_fee_per_day=fee,
            is_overdue=False,
            overdue_days=0,
            late_fee_amount=None,
        )
        self.db.add(checkout)
        book = self.db.get(Book, book_id)
        book.status = BookStatus.CHECKED_OUT
        self._commit(book_id)
        self.db.refresh(checkout)

        logger.info("Book %s checked out to user %s (checkout %s)", book_id, user_id, checkout.id)
        self.tasks.add_task(self.schedule_reminder, checkout.id, checkout.due_date)
        return checkout

    def return_checkout(self, checkout_id: int) -> Checkout:
        checkout = self.db.get(Checkout, checkout_id)
        if checkout is None:
            raise checkout_not_found_error(checkout_id)
        if checkout.returned_date is not None:
            raise checkout_already_returned_error(checkout_id)

        return_date = self.clock()
        fees = calculate_late_fees(checkout.due_date, checkout.late_fee_per_day, return_date)
        message_id = checkout.qstash_message_id

        checkout.returned_date = return_date
        checkout.is_overdue = fees.is_overdue
        checkout.overdue_days = fees.overdue_days
        checkout.late_fee_amount = fees.late_fee_amount if fees.is_overdue else None
        checkout.book.status = BookStatus.AVAILABLE
        self._commit(checkout.book_id)
        self.db.refresh(checkout)

        logger.info("Checkout %s returned, %d day(s) overdue", checkout_id, fees.overdue_days)
        if message_id:
            self.tasks.add_task(self.cancel_reminder, message_id)
        return checkout

    def schedule_reminder(self, checkout_id: int, due_date: datetime) -> None:
        try:
            message_id = self.reminders.schedule(checkout_id, due_date)
        except Exception:
            logger.exception("Failed to schedule checkout reminder for checkout %s", checkout_id)
            return
        if not message_id:
            return

        try:
            with self.session_factory() as session:
                session.query(Checkout).filter(Checkout.id == checkout_id).update(
                    {Checkout.qstash_message_id: message_id}
                )
                session.commit()
        except Exception:
            logger.exception("Failed to store reminder message ID for checkout %s", checkout_id)

    def cancel_reminder(self, message_id: str) -> None:
        try:
            self.reminders.cancel(message_id)
        except Exception:
            logger.exception("Failed to cancel checkout reminder %s", message_id)
