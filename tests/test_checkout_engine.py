from datetime import timedelta
from decimal import Decimal

import pytest

from app.errors import ApiError, BookErrorCodes, CheckoutErrorCodes
from app.models.models import Book, BookStatus, Checkout
from app.services.checkout import CheckoutValidation


def test_create_checkout_uses_default_terms(db, checkout_engine, clock, make_user, make_book):
    user = make_user()
    book = make_book()

    checkout = checkout_engine.create_checkout(book.id, user.id)

    assert checkout.checkout_date == clock()
    assert checkout.due_date == clock() + timedelta(days=14)
    assert checkout.max_duration_days == 14
    assert checkout.late_fee_per_day == Decimal("0.50")
    assert checkout.returned_date is None
    assert checkout.is_overdue is False
    assert checkout.late_fee_amount is None
    assert db.get(Book, book.id).status == BookStatus.CHECKED_OUT


def test_create_checkout_with_custom_terms(checkout_engine, clock, make_user, make_book):
    checkout = checkout_engine.create_checkout(
        make_book().id, make_user().id, max_duration_days=7, late_fee_per_day=Decimal("1.25")
    )
    assert checkout.due_date == clock() + timedelta(days=7)
    assert checkout.late_fee_per_day == Decimal("1.25")


def test_unknown_user_and_book(checkout_engine, make_user, make_book):
    result = checkout_engine.validate_checkout(9999, make_book().id)
    assert not result.valid
    assert result.code == CheckoutErrorCodes.USER_NOT_FOUND

    result = checkout_engine.validate_checkout(make_user().id, 9999)
    assert not result.valid
    assert result.code == BookErrorCodes.BOOK_NOT_FOUND


def test_unverified_email_blocks_customers_but_not_staff(checkout_engine, make_user, make_book):
    book = make_book()

    customer = make_user(verified=False)
    result = checkout_engine.validate_checkout(customer.id, book.id)
    assert not result.valid
    assert result.code == CheckoutErrorCodes.EMAIL_NOT_VERIFIED

    staff = make_user(verified=False, staff=True)
    assert checkout_engine.validate_checkout(staff.id, book.id).valid


def test_checkout_limit(checkout_engine, make_user, make_book):
    user = make_user(limit=2)
    checkout_engine.create_checkout(make_book("Dune").id, user.id)
    checkout_engine.create_checkout(make_book("Emma").id, user.id)

    with pytest.raises(ApiError) as exc:
        checkout_engine.create_checkout(make_book("Ulysses").id, user.id)

    assert exc.value.status_code == 400
    assert exc.value.code == CheckoutErrorCodes.CHECKOUT_LIMIT_EXCEEDED
    assert exc.value.details == {"currentCheckouts": 2, "maxCheckouts": 2}
    assert exc.value.message == "Checkout limit exceeded. You have 2 active checkouts out of 2 allowed."


def test_returned_checkouts_do_not_count_toward_limit(checkout_engine, make_user, make_book):
    user = make_user(limit=1)
    first = checkout_engine.create_checkout(make_book("Dune").id, user.id)
    checkout_engine.return_checkout(first.id)

    assert checkout_engine.create_checkout(make_book("Emma").id, user.id).id != first.id


def test_book_already_checked_out(db, checkout_engine, make_user, make_book):
    book = make_book()
    checkout_engine.create_checkout(book.id, make_user().id)

    with pytest.raises(ApiError) as exc:
        checkout_engine.create_checkout(book.id, make_user().id)

    assert exc.value.code == BookErrorCodes.BOOK_ALREADY_CHECKED_OUT
    assert exc.value.message == f"Book with ID {book.id} is already checked out"
    assert db.query(Checkout).count() == 1


def test_concurrent_checkout_loses_to_unique_index(db, checkout_engine, make_user, make_book, monkeypatch):
    book = make_book()
    checkout_engine.create_checkout(book.id, make_user().id)
    second = make_user()

    # both requests validated before either committed
    monkeypatch.setattr(
        checkout_engine, "validate_checkout", lambda user_id, book_id: CheckoutValidation(valid=True)
    )
    with pytest.raises(ApiError) as exc:
        checkout_engine.create_checkout(book.id, second.id)

    assert exc.value.status_code == 409
    assert exc.value.code == BookErrorCodes.BOOK_ALREADY_CHECKED_OUT
    assert db.query(Checkout).count() == 1
    assert db.query(Checkout).filter(Checkout.user_id == second.id).count() == 0


def test_reminder_scheduled_after_commit(db, checkout_engine, reminders, run_tasks, make_user, make_book):
    checkout = checkout_engine.create_checkout(make_book().id, make_user().id)
    assert reminders.scheduled == []

    run_tasks()
    db.expire_all()

    assert reminders.scheduled == [(checkout.id, checkout.due_date)]
    assert db.get(Checkout, checkout.id).qstash_message_id == f"msg-{checkout.id}"


def test_reminder_failure_does_not_undo_checkout(db, checkout_engine, reminders, run_tasks, make_user, make_book):
    reminders.fail = True
    checkout = checkout_engine.create_checkout(make_book().id, make_user().id)

    run_tasks()
    db.expire_all()

    stored = db.get(Checkout, checkout.id)
    assert stored.qstash_message_id is None
    assert stored.book.status == BookStatus.CHECKED_OUT


def test_return_cancels_scheduled_reminder(db, checkout_engine, reminders, run_tasks, make_user, make_book):
    checkout = checkout_engine.create_checkout(make_book().id, make_user().id)
    run_tasks()
    db.expire_all()

    checkout_engine.return_checkout(checkout.id)
    run_tasks()

    assert reminders.cancelled == [f"msg-{checkout.id}"]


def test_return_before_due_date_has_no_fee(db, checkout_engine, clock, make_user, make_book):
    book = make_book()
    checkout = checkout_engine.create_checkout(book.id, make_user().id)
    clock.advance(days=3)

    returned = checkout_engine.return_checkout(checkout.id)

    assert returned.returned_date == clock()
    assert returned.is_overdue is False
    assert returned.overdue_days == 0
    assert returned.late_fee_amount is None
    assert db.get(Book, book.id).status == BookStatus.AVAILABLE


def test_returning_twice_conflicts(checkout_engine, make_user, make_book):
    checkout = checkout_engine.create_checkout(make_book().id, make_user().id)
    checkout_engine.return_checkout(checkout.id)

    with pytest.raises(ApiError) as exc:
        checkout_engine.return_checkout(checkout.id)
    assert exc.value.status_code == 409
    assert exc.value.code == CheckoutErrorCodes.CHECKOUT_ALREADY_RETURNED

    with pytest.raises(ApiError) as exc:
        checkout_engine.return_checkout(9999)
    assert exc.value.status_code == 404
    assert exc.value.code == CheckoutErrorCodes.CHECKOUT_NOT_FOUND


def test_overdue_lifecycle(db, checkout_engine, clock, make_user, make_book):
    book = make_book()
    checkout = checkout_engine.create_checkout(book.id, make_user().id)

    clock.advance(days=14)
    current = checkout_engine.check_overdue_status(checkout.id)
    assert current.is_overdue is False

    clock.advance(days=2)
    current = checkout_engine.check_overdue_status(checkout.id)
    assert current.is_overdue is True
    assert current.overdue_days == 2
    assert current.late_fee_amount == Decimal("1.00")

    returned = checkout_engine.return_checkout(checkout.id)
    assert returned.overdue_days == 2
    assert returned.late_fee_amount == Decimal("1.00")
    assert db.get(Book, book.id).status == BookStatus.AVAILABLE

    # fees are frozen once returned
    clock.advance(days=30)
    later = checkout_engine.check_overdue_status(checkout.id)
    assert later.overdue_days == 2
    assert later.late_fee_amount == Decimal("1.00")


def test_check_overdue_status_missing(checkout_engine):
    assert checkout_engine.check_overdue_status(9999) is None


def test_sweep_counts_only_changed_checkouts(checkout_engine, clock, make_user, make_book):
    user = make_user()
    checkout_engine.create_checkout(make_book("Dune").id, user.id, max_duration_days=1)
    checkout_engine.create_checkout(make_book("Emma").id, user.id, max_duration_days=2)
    checkout_engine.create_checkout(make_book("Ulysses").id, user.id, max_duration_days=30)

    clock.advance(days=5)
    assert checkout_engine.update_all_overdue_statuses() == 2
    assert checkout_engine.update_all_overdue_statuses() == 0

    clock.advance(days=1)
    assert checkout_engine.update_user_overdue_statuses(user.id) == 2


def test_loan_duration_is_bounded(db, checkout_engine, make_user, make_book):
    book = make_book()

    with pytest.raises(ApiError) as exc:
        checkout_engine.create_checkout(book.id, make_user().id, max_duration_days=5_000_000)

    assert exc.value.status_code == 400
    assert exc.value.code == CheckoutErrorCodes.INVALID_LOAN_DURATION
    assert exc.value.details == {"maxDurationDays": 5_000_000}
    assert db.query(Checkout).count() == 0
    assert db.get(Book, book.id).status == BookStatus.AVAILABLE
