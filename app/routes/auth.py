from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from app.config.db import get_db
from app.errors import ApiError, AuthErrorCodes, user_not_found_error
from app.models.models import User
from app.routes.deps import authorize, get_mailer
from app.schemas.schemas import LoginRequest, TokenResponse, UserCreate, UserOut, VerifyEmailRequest
from app.services.auth import (
    authenticate,
    issue_verification_token,
    register_user,
    verification_url,
    verify_email_token,
)
from app.services.notifications import Mailer, send_verification_email
from app.services.rbac import AuthContext, AuthPolicy, role_names

router = APIRouter(prefix="/auth", tags=["auth"])

signed_in = authorize(AuthPolicy.of())


def _verification_message(newly_verified: bool) -> dict:
    if newly_verified:
        return {"message": "Email verified successfully"}
    return {"message": "Email is already verified"}


@router.post("/register", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def register(
    user: UserCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    """
    Registers a new customer account and emails a verification link.

    Parameters:
        user (UserCreate): Name, email and password for the new account.
        background_tasks (BackgroundTasks): Sends the verification email after the response.
        db (Session): The database session.
        mailer (Mailer): The email adapter.

    Returns:
        UserOut: The created user, holding the Customer role.

    Raises:
        ApiError: EMAIL_TAKEN if the email is already registered.
    """
    new_user = register_user(db, user.name, user.email, user.password)
    token = issue_verification_token(db, new_user.email)
    background_tasks.add_task(
        send_verification_email,
        mailer,
        to=new_user.email,
        name=new_user.name or "User",
        verify_url=verification_url(token),
    )
    return UserOut(
        id=new_user.id,
        name=new_user.name,
        email=new_user.email,
        is_staff=new_user.is_staff,
        email_verified=new_user.email_verified,
        max_checkout_limit=new_user.max_checkout_limit,
        roles=sorted(role_names(new_user)),
    )


@router.post("/login", response_model=TokenResponse)
def login(credentials: LoginRequest, db: Session = Depends(get_db)):
    """
    Issues a bearer token carrying the user's roles and permissions.

    Raises:
        ApiError: INVALID_CREDENTIALS if the email or password is wrong.
    """
    return {"access_token": authenticate(db, credentials.email, credentials.password)}


@router.get("/verify-email")
def verify_email_link(token: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    """
    Verifies an email address from the link sent by email.

    Raises:
        ApiError: INVALID_TOKEN or TOKEN_EXPIRED.
    """
    return _verification_message(verify_email_token(db, token))


@router.post("/verify-email")
def verify_email(request: VerifyEmailRequest, db: Session = Depends(get_db)):
    return _verification_message(verify_email_token(db, request.token))


@router.post("/resend-verification")
def resend_verification(
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(signed_in),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    """
    Sends the signed-in user a fresh verification link, replacing any earlier one.

    Raises:
        ApiError: EMAIL_ALREADY_VERIFIED if there is nothing to verify.
    """
    user = db.get(User, auth.user.id)
    if user is None:
        raise user_not_found_error(auth.user.id)
    if user.email_verified is not None:
        raise ApiError(
            AuthErrorCodes.EMAIL_ALREADY_VERIFIED,
            "Email is already verified",
            status.HTTP_400_BAD_REQUEST,
        )

    token = issue_verification_token(db, user.email)
    background_tasks.add_task(
        send_verification_email,
        mailer,
        to=user.email,
        name=user.name or "User",
        verify_url=verification_url(token),
    )
    return {"message": "Verification email sent successfully. Please check your inbox."}
