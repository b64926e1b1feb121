from datetime import datetime, timedelta
from decimal import Decimal

from app.models.models import Checkout
from app.services.checkout import calculate_due_date, calculate_late_fees, reconcile_overdue

DUE = datetime(2024, 3, 15, 10, 0)


def test_due_date_adds_whole_days():
    assert calculate_due_date(datetime(2024, 3, 1, 10, 0), 14) == DUE
    assert calculate_due_date(datetime(2024, 3, 1, 10, 0), 0) == datetime(2024, 3, 1, 10, 0)


def test_not_overdue_before_or_at_due_date():
    for as_of in (DUE - timedelta(days=3), DUE, DUE + timedelta(hours=23, minutes=59)):
        fees = calculate_late_fees(DUE, Decimal("0.50"), as_of)
        assert fees.is_overdue is False
        assert fees.overdue_days == 0
        assert fees.late_fee_amount == Decimal("0.00")


def test_partial_days_are_floored():
    fees = calculate_late_fees(DUE, Decimal("0.50"), DUE + timedelta(days=2, hours=20))
    assert fees.is_overdue is True
    assert fees.overdue_days == 2
    assert fees.late_fee_amount == Decimal("1.00")


def test_fee_is_rounded_to_cents():
    fees = calculate_late_fees(DUE, Decimal("0.333"), DUE + timedelta(days=3))
    assert fees.late_fee_amount == Decimal("1.00")

    fees = calculate_late_fees(DUE, Decimal("0.125"), DUE + timedelta(days=1))
    assert fees.late_fee_amount == Decimal("0.13")


def test_fee_accepts_plain_numbers():
    fees = calculate_late_fees(DUE, "0.50", DUE + timedelta(days=4))
    assert fees.late_fee_amount == Decimal("2.00")

    fees = calculate_late_fees(DUE, 1, DUE + timedelta(days=4))
    assert fees.late_fee_amount == Decimal("4.00")


def _checkout(**overrides):
    values = dict(
        checkout_date=DUE - timedelta(days=14),
        due_date=DUE,
        max_duration_days=14,
        late_fee_per_day=Decimal("0.50"),
        returned_date=None,
        is_overdue=False,
        overdue_days=0,
        late_fee_amount=None,
    )
    values.update(overrides)
    return Checkout(**values)


def test_reconcile_marks_overdue():
    checkout = _checkout()
    assert reconcile_overdue(checkout, DUE + timedelta(days=2)) is True
    assert checkout.is_overdue is True
    assert checkout.overdue_days == 2
    assert checkout.late_fee_amount == Decimal("1.00")


def test_reconcile_without_change_reports_false():
    checkout = _checkout()
    assert reconcile_overdue(checkout, DUE - timedelta(days=1)) is False
    assert checkout.late_fee_amount is None

    reconcile_overdue(checkout, DUE + timedelta(days=2))
    assert reconcile_overdue(checkout, DUE + timedelta(days=2, hours=5)) is False


def test_reconcile_clears_fee_when_no_longer_overdue():
    checkout = _checkout(is_overdue=True, overdue_days=3, late_fee_amount=Decimal("1.50"))
    assert reconcile_overdue(checkout, DUE) is True
    assert checkout.is_overdue is False
    assert checkout.overdue_days == 0
    assert checkout.late_fee_amount is None


def test_reconcile_leaves_returned_checkouts_alone():
    checkout = _checkout(
        returned_date=DUE + timedelta(days=1),
        is_overdue=True,
        overdue_days=1,
        late_fee_amount=Decimal("0.50"),
    )
    assert reconcile_overdue(checkout, DUE + timedelta(days=10)) is False
    assert checkout.overdue_days == 1
    assert checkout.late_fee_amount == Decimal("0.50")


def test_fees_default_to_the_current_time():
    fees = calculate_late_fees(datetime.now() - timedelta(days=3, hours=1), Decimal("1.00"))
    assert fees.is_overdue is True
    assert fees.overdue_days == 3
    assert fees.late_fee_amount == Decimal("3.00")

    assert calculate_late_fees(datetime.now() + timedelta(days=1), Decimal("1.00")).is_overdue is False
