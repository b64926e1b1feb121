import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import status
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.errors import ApiError, AdminErrorCodes, AuthErrorCodes, user_not_found_error
from app.models.models import Role, User, VerificationToken
from app.services.rbac import Identity, SessionPayload, build_session_payload

logger = logging.getLogger(__name__)

CUSTOMER_ROLE = "Customer"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(payload: SessionPayload, expires_delta: Optional[timedelta] = None) -> str:
    claims = payload.model_dump(mode="json")
    claims["sub"] = str(payload.id)
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims["exp"] = expire
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_identity(token: str) -> Identity:
    """Turn a bearer token into an identity; an unusable token yields an empty payload."""
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return Identity(token=token)
    if not claims.get("sub"):
        return Identity(token=token)
    try:
        payload = SessionPayload.model_validate(claims)
    except ValidationError:
        return Identity(token=token)
    return Identity(token=token, payload=payload)


def ensure_customer_role(db: Session, user_id: int) -> bool:
    """
    Give a user the Customer role when they hold no role at all.

    Returns:
        bool: True if the role was assigned, False if the user already had roles
        or the Customer role has not been seeded.
    """
    user = db.get(User, user_id)
    if user is None:
        raise user_not_found_error(user_id)
    if user.roles:
        return False

    customer = db.query(Role).filter(Role.name == CUSTOMER_ROLE).first()
    if customer is None:
        logger.error("Customer role not found, run the seed script first")
        return False

    user.roles.append(customer)
    db.commit()
    return True


def register_user(db: Session, name: str, email: str, password: str) -> User:
    if db.query(User).filter(User.email == email).first():
        raise ApiError(
            AuthErrorCodes.EMAIL_TAKEN, "User already exists", status.HTTP_400_BAD_REQUEST
        )

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        is_staff=False,
        max_checkout_limit=settings.CUSTOMER_CHECKOUT_LIMIT,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    ensure_customer_role(db, user.id)
    db.refresh(user)
    logger.info("Registered user %s", user.id)
    return user


def authenticate(db: Session, email: str, password: str) -> str:
    user = db.query(User).filter(User.email == email).first()
    if not user or not verify_password(password, user.password_hash):
        raise ApiError(
            AuthErrorCodes.INVALID_CREDENTIALS,
            "Invalid email or password",
            status.HTTP_401_UNAUTHORIZED,
        )
    ensure_customer_role(db, user.id)
    db.refresh(user)
    return create_access_token(build_session_payload(user))


def verification_url(token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/auth/verify-email?token={token}"


def issue_verification_token(db: Session, email: str) -> str:
    """Replace any outstanding verification token for an email with a fresh one."""
    db.query(VerificationToken).filter(VerificationToken.identifier == email).delete()
    token = secrets.token_hex(32)
    db.add(
        VerificationToken(
            identifier=email,
            token=token,
            expires=datetime.now() + timedelta(hours=settings.VERIFICATION_TOKEN_HOURS),
        )
    )
    db.commit()
    return token


def verify_email_token(db: Session, token: str) -> bool:
    """
    Mark the owner of a verification token as verified and consume the token.

    Returns:
        bool: True if the email was verified now, False if it already was.

    Raises:
        ApiError: INVALID_TOKEN for an unknown token, TOKEN_EXPIRED once it has
        lapsed (the expired token is deleted), USER_NOT_FOUND if the account is gone.
    """
    record = db.query(VerificationToken).filter(VerificationToken.token == token).first()
    if record is None:
        raise ApiError(
            AuthErrorCodes.INVALID_TOKEN,
            "Invalid or expired verification token",
            status.HTTP_400_BAD_REQUEST,
        )
    if record.expires < datetime.now():
        db.delete(record)
        db.commit()
        raise ApiError(
            AuthErrorCodes.TOKEN_EXPIRED,
            "Verification token has expired. Please request a new one.",
            status.HTTP_400_BAD_REQUEST,
        )

    user = db.query(User).filter(User.email == record.identifier).first()
    if user is None:
        raise user_not_found_error()

    db.delete(record)
    newly_verified = user.email_verified is None
    if newly_verified:
        user.email_verified = datetime.now()
    db.commit()
    if newly_verified:
        logger.info("Verified email for user %s", user.id)
    return newly_verified


def invite_staff(db: Session, name: str, email: str, password: str, role_name: str) -> User:
    """
    Create a staff account holding a single named role.

    Raises:
        ApiError: EMAIL_TAKEN (409) for an existing account, ROLE_NOT_FOUND
        (400) when no role has that name.
    """
    if db.query(User).filter(User.email == email).first():
        raise ApiError(
            AuthErrorCodes.EMAIL_TAKEN,
            "User with this email already exists",
            status.HTTP_409_CONFLICT,
        )
    role = db.query(Role).filter(Role.name == role_name).first()
    if role is None:
        available = [row.name for row in db.query(Role.name).order_by(Role.name)]
        raise ApiError(
            AdminErrorCodes.ROLE_NOT_FOUND,
            f'Role "{role_name}" not found',
            status.HTTP_400_BAD_REQUEST,
            {"role": role_name, "availableRoles": available},
        )

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        is_staff=True,
        max_checkout_limit=settings.STAFF_CHECKOUT_LIMIT,
        roles=[role],
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Invited user %s as %s", user.id, role.name)
    return user
