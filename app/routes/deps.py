from functools import lru_cache
from typing import Optional

from fastapi import BackgroundTasks, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.config.db import get_db
from app.services.auth import decode_identity
from app.services.checkout import CheckoutEngine
from app.services.notifications import Mailer, build_mailer
from app.services.rbac import (
    AuthContext,
    AuthPolicy,
    Identity,
    MethodAuthConfig,
    evaluate_access,
    policy_for_method,
)
from app.services.reminders import ReminderScheduler, build_reminder_scheduler

bearer = HTTPBearer(auto_error=False)


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Optional[Identity]:
    """
    Resolves the caller's identity from the Authorization header.

    Parameters:
        credentials (HTTPAuthorizationCredentials | None): The bearer token, if any.

    Returns:
        Identity | None: None for anonymous requests, otherwise the decoded identity.
    """
    if credentials is None:
        return None
    return decode_identity(credentials.credentials)


def authorize(policy: AuthPolicy):
    """Dependency enforcing a single policy regardless of HTTP method."""

    def dependency(identity: Optional[Identity] = Depends(get_identity)) -> AuthContext:
        return evaluate_access(policy, identity)

    return dependency


def authorize_methods(config: MethodAuthConfig):
    """Dependency choosing the policy by HTTP method; unlisted methods are public."""

    def dependency(
        request: Request, identity: Optional[Identity] = Depends(get_identity)
    ) -> AuthContext:
        return evaluate_access(policy_for_method(config, request.method), identity)

    return dependency


@lru_cache
def get_reminder_scheduler() -> ReminderScheduler:
    return build_reminder_scheduler()


@lru_cache
def get_mailer() -> Mailer:
    return build_mailer()


def get_checkout_engine(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    reminders: ReminderScheduler = Depends(get_reminder_scheduler),
) -> CheckoutEngine:
    return CheckoutEngine(db, reminders, background_tasks)


async def get_raw_body(request: Request) -> bytes:
    """The unparsed request body, read before any JSON decoding."""
    return await request.body()
