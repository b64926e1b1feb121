import csv
import math
from io import StringIO
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.config.db import get_db
from app.errors import checkout_not_found_error, forbidden_error
from app.models.models import Checkout
from app.routes.deps import authorize, get_checkout_engine
from app.schemas.schemas import CheckoutCreate, CheckoutOut, CheckoutPage, SweepResult
from app.services.checkout import CheckoutEngine
from app.services.rbac import AuthContext, AuthPolicy

router = APIRouter(prefix="/checkouts", tags=["checkouts"])

signed_in = authorize(AuthPolicy.of())
can_create = authorize(AuthPolicy.of(permissions=["checkout:create"]))
can_manage = authorize(AuthPolicy.of(permissions=["checkout:manage"]))


@router.get("", response_model=CheckoutPage)
def list_checkouts(
    status_filter: str = Query("all", alias="status", pattern="^(all|active|returned|overdue)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(can_manage),
    db: Session = Depends(get_db),
):
    """
    Retrieves all checkouts, newest first. Requires ``checkout:manage``.

    Parameters:
        status_filter (str): One of "all", "active", "returned" or "overdue".
        page (int): 1-based page number.
        limit (int): Page size.
        auth (AuthContext): The caller's authorization context.
        db (Session): The database session.

    Returns:
        CheckoutPage: The page of checkouts with pagination details.
    """
    query = db.query(Checkout)
    if status_filter == "active":
        query = query.filter(Checkout.returned_date.is_(None))
    elif status_filter == "returned":
        query = query.filter(Checkout.returned_date.is_not(None))
    elif status_filter == "overdue":
        query = query.filter(Checkout.returned_date.is_(None), Checkout.is_overdue.is_(True))

    total = query.count()
    checkouts = (
        query.order_by(Checkout.checkout_date.desc(), Checkout.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "checkouts": checkouts,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }


@router.post("", response_model=CheckoutOut, status_code=status.HTTP_201_CREATED)
def create_checkout(
    request: CheckoutCreate,
    auth: AuthContext = Depends(can_create),
    engine: CheckoutEngine = Depends(get_checkout_engine),
):
    """
    Checks a book out. Requires ``checkout:create``.

    Checking out on behalf of another user additionally requires
    ``checkout:manage``; otherwise the book goes to the caller.

    Parameters:
        request (CheckoutCreate): The book and optional loan terms.
        auth (AuthContext): The caller's authorization context.
        engine (CheckoutEngine): The checkout engine for this request.

    Returns:
        CheckoutOut: The new checkout with its book and borrower.

    Raises:
        ApiError: Any checkout validation failure (400), or a conflict (409)
        when another checkout of the same book wins a race.
    """
    user_id = request.user_id or auth.user.id
    if user_id != auth.user.id and not auth.user.has_permission("checkout:manage"):
        raise forbidden_error("You do not have permission to check out books for other users")

    return engine.create_checkout(
        request.book_id,
        user_id,
        max_duration_days=request.max_duration_days,
        late_fee_per_day=request.late_fee_per_day,
    )


@router.get("/mine", response_model=List[CheckoutOut])
def my_checkouts(
    active_only: bool = False,
    auth: AuthContext = Depends(signed_in),
    engine: CheckoutEngine = Depends(get_checkout_engine),
):
    """
    Retrieves the caller's checkouts with their overdue state brought up to date.

    Parameters:
        active_only (bool): Only return unreturned checkouts.
        auth (AuthContext): The caller's authorization context.
        engine (CheckoutEngine): The checkout engine for this request.

    Returns:
        List[CheckoutOut]: The caller's checkouts, newest first.
    """
    engine.update_user_overdue_statuses(auth.user.id)
    query = engine.db.query(Checkout).filter(Checkout.user_id == auth.user.id)
    if active_only:
        query = query.filter(Checkout.returned_date.is_(None))
    return query.order_by(Checkout.checkout_date.desc(), Checkout.id.desc()).all()


@router.get("/mine/export")
def export_my_checkouts(auth: AuthContext = Depends(signed_in), db: Session = Depends(get_db)):
    """
    Exports the caller's checkout history as CSV.

    Parameters:
        auth (AuthContext): The caller's authorization context.
        db (Session): The database session.

    Returns:
        dict: A dictionary containing the CSV data of the checkout history.
    """
    checkouts = (
        db.query(Checkout)
        .filter(Checkout.user_id == auth.user.id)
        .order_by(Checkout.checkout_date)
        .all()
    )

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Book Title", "Checkout Date", "Due Date", "Returned Date", "Late Fee"])
    for checkout in checkouts:
        writer.writerow(
            [
                checkout.book.title,
                checkout.checkout_date.isoformat(),
                checkout.due_date.isoformat(),
                checkout.returned_date.isoformat() if checkout.returned_date else "",
                f"{checkout.late_fee_amount:.2f}" if checkout.late_fee_amount is not None else "",
            ]
        )

    output.seek(0)
    return {"csv": output.getvalue()}


@router.post("/overdue-sweep", response_model=SweepResult)
def sweep_overdue(
    auth: AuthContext = Depends(can_manage),
    engine: CheckoutEngine = Depends(get_checkout_engine),
):
    """Recomputes overdue state for every active checkout. Requires ``checkout:manage``."""
    return {"updated": engine.update_all_overdue_statuses()}


@router.get("/{checkout_id}", response_model=CheckoutOut)
def get_checkout(
    checkout_id: int,
    auth: AuthContext = Depends(signed_in),
    engine: CheckoutEngine = Depends(get_checkout_engine),
):
    """
    Retrieves one checkout with live overdue state.

    Borrowers can view their own checkouts; anyone else needs ``checkout:manage``.

    Raises:
        ApiError: CHECKOUT_NOT_FOUND, or FORBIDDEN for someone else's checkout.
    """
    checkout = engine.db.get(Checkout, checkout_id)
    if checkout is None:
        raise checkout_not_found_error(checkout_id)
    if checkout.user_id != auth.user.id and not auth.user.has_permission("checkout:manage"):
        raise forbidden_error("You do not have permission to view this checkout")
    return engine.check_overdue_status(checkout_id)


@router.put("/{checkout_id}", response_model=CheckoutOut)
def return_checkout(
    checkout_id: int,
    auth: AuthContext = Depends(signed_in),
    engine: CheckoutEngine = Depends(get_checkout_engine),
):
    """
    Returns a checked out book.

    Borrowers holding ``checkout:return`` can return their own checkouts;
    returning anyone else's requires ``checkout:manage``.

    Parameters:
        checkout_id (int): The checkout to close.
        auth (AuthContext): The caller's authorization context.
        engine (CheckoutEngine): The checkout engine for this request.

    Returns:
        CheckoutOut: The returned checkout with its late fee frozen.

    Raises:
        ApiError: CHECKOUT_NOT_FOUND (404), FORBIDDEN (403) or
        CHECKOUT_ALREADY_RETURNED (409).
    """
    checkout = engine.db.get(Checkout, checkout_id)
    if checkout is None:
        raise checkout_not_found_error(checkout_id)

    if checkout.user_id == auth.user.id:
        can_return = auth.user.has_any_permission("checkout:return", "checkout:manage")
    else:
        can_return = auth.user.has_permission("checkout:manage")
    if not can_return:
        raise forbidden_error("You do not have permission to return this checkout")

    return engine.return_checkout(checkout_id)
