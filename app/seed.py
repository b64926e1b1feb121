"""
Seed default permissions, roles and the admin account.

Run with ``python -m app.seed``. Safe to run repeatedly: existing rows are
updated in place and grants are only ever added.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable

from sqlalchemy.orm import Session

from app.config.db import Base, SessionLocal, engine
from app.config.settings import settings
from app.models.models import Permission, Role, User
from app.services.auth import hash_password

logger = logging.getLogger(__name__)

PERMISSIONS = {
    "book:read": "Read books",
    "book:create": "Create books",
    "book:update": "Update books",
    "book:delete": "Delete books",
    "checkout:create": "Create checkouts",
    "checkout:return": "Return checkouts",
    "checkout:manage": "Manage all checkouts",
    "user:manage": "Manage users",
    "role:manage": "Manage roles",
    "permission:manage": "Manage permissions",
    "finance:manage": "Manage finances",
}

ROLES = {
    "Admin": ("Full system access", list(PERMISSIONS)),
    "Finance Manager": (
        "Manages finances and checkouts",
        ["book:read", "checkout:manage", "finance:manage"],
    ),
    "Editor": ("Manages book content", ["book:read", "book:create", "book:update"]),
    "Customer": ("Standard library user", ["book:read", "checkout:create", "checkout:return"]),
}


def upsert_permissions(db: Session) -> Dict[str, Permission]:
    permissions = {}
    for action, description in PERMISSIONS.items():
        permission = db.query(Permission).filter(Permission.action == action).first()
        if permission is None:
            permission = Permission(action=action)
            db.add(permission)
        permission.description = description
        permissions[action] = permission
    db.flush()
    return permissions


def upsert_role(db: Session, name: str, description: str, grants: Iterable[Permission]) -> Role:
    role = db.query(Role).filter(Role.name == name).first()
    if role is None:
        role = Role(name=name)
        db.add(role)
    role.description = description
    for permission in grants:
        if permission not in role.permissions:
            role.permissions.append(permission)
    return role


def seed(db: Session) -> None:
    permissions = upsert_permissions(db)
    roles = {
        name: upsert_role(db, name, description, [permissions[a] for a in actions])
        for name, (description, actions) in ROLES.items()
    }

    admin = db.query(User).filter(User.email == settings.ADMIN_EMAIL).first()
    if admin is None:
        admin = User(
            name=settings.ADMIN_NAME,
            email=settings.ADMIN_EMAIL,
            password_hash=hash_password(settings.ADMIN_PASSWORD),
            is_staff=True,
            email_verified=datetime.now(),
            max_checkout_limit=settings.STAFF_CHECKOUT_LIMIT,
        )
        db.add(admin)
    if roles["Admin"] not in admin.roles:
        admin.roles.append(roles["Admin"])

    db.commit()
    logger.info("Seeded %d permissions, %d roles and admin %s", len(permissions), len(roles), admin.email)


def main() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        seed(db)


if __name__ == "__main__":
    main()
