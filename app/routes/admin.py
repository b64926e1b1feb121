import math
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config.db import get_db
from app.config.settings import settings
from app.errors import (
    AdminErrorCodes,
    ApiError,
    forbidden_error,
    permission_in_use_error,
    permission_not_found_error,
    role_in_use_error,
    role_not_found_error,
    user_not_found_error,
)
from app.models.models import Checkout, Permission, Role, User, VerificationToken
from app.routes.deps import authorize, get_mailer
from app.schemas.schemas import (
    PermissionCreate,
    PermissionOut,
    PermissionUpdate,
    RoleCreate,
    RoleOut,
    RolePermissionsUpdate,
    RoleUpdate,
    StaffInvite,
    UserOut,
    UserPage,
    UserRolesUpdate,
    UserUpdate,
)
from app.services.auth import invite_staff
from app.services.notifications import Mailer, send_staff_invitation_email
from app.services.rbac import AuthContext, AuthPolicy, role_names

router = APIRouter(prefix="/admin", tags=["admin"])

manage_permissions = authorize(AuthPolicy.of(permissions=["permission:manage"]))
manage_roles = authorize(AuthPolicy.of(permissions=["role:manage"]))
manage_users = authorize(AuthPolicy.of(permissions=["user:manage"]))


def _user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        name=user.name,
        email=user.email,
        is_staff=user.is_staff,
        email_verified=user.email_verified,
        max_checkout_limit=user.max_checkout_limit,
        roles=sorted(role_names(user)),
    )


def _load_permissions(db: Session, permission_ids: List[int]) -> List[Permission]:
    permissions = []
    for permission_id in dict.fromkeys(permission_ids):
        permission = db.get(Permission, permission_id)
        if permission is None:
            raise permission_not_found_error(permission_id)
        permissions.append(permission)
    return permissions


@router.get("/permissions", response_model=List[PermissionOut])
def list_permissions(auth: AuthContext = Depends(manage_permissions), db: Session = Depends(get_db)):
    return db.query(Permission).order_by(Permission.action).all()


@router.post("/permissions", response_model=PermissionOut, status_code=status.HTTP_201_CREATED)
def create_permission(
    permission: PermissionCreate,
    auth: AuthContext = Depends(manage_permissions),
    db: Session = Depends(get_db),
):
    """
    Creates a permission action. Requires ``permission:manage``.

    Raises:
        ApiError: PERMISSION_EXISTS if the action is already defined.
    """
    if db.query(Permission).filter(Permission.action == permission.action).first():
        raise ApiError(
            AdminErrorCodes.PERMISSION_EXISTS,
            "Permission with this action already exists",
            status.HTTP_400_BAD_REQUEST,
        )
    new_permission = Permission(action=permission.action, description=permission.description)
    db.add(new_permission)
    db.commit()
    db.refresh(new_permission)
    return new_permission


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_permission(
    permission_id: int,
    auth: AuthContext = Depends(manage_permissions),
    db: Session = Depends(get_db),
):
    """
    Deletes a permission that no role references. Requires ``permission:manage``.

    Parameters:
        permission_id (int): The permission to delete.
        auth (AuthContext): The caller's authorization context.
        db (Session): The database session.

    Raises:
        ApiError: PERMISSION_NOT_FOUND, or PERMISSION_IN_USE (409) while any
        role still grants it.
    """
    permission = db.get(Permission, permission_id)
    if permission is None:
        raise permission_not_found_error(permission_id)
    if permission.roles:
        raise permission_in_use_error(permission.action, len(permission.roles))
    db.delete(permission)
    db.commit()


@router.put("/permissions/{permission_id}", response_model=PermissionOut)
def update_permission(
    permission_id: int,
    update: PermissionUpdate,
    auth: AuthContext = Depends(manage_permissions),
    db: Session = Depends(get_db),
):
    """
    Renames a permission action or changes its description. Requires ``permission:manage``.

    Raises:
        ApiError: PERMISSION_NOT_FOUND, or PERMISSION_EXISTS if another
        permission already uses the new action.
    """
    permission = db.get(Permission, permission_id)
    if permission is None:
        raise permission_not_found_error(permission_id)

    data = update.model_dump(exclude_unset=True)
    action = data.get("action")
    if action and action != permission.action:
        if db.query(Permission).filter(Permission.action == action).first():
            raise ApiError(
                AdminErrorCodes.PERMISSION_EXISTS,
                "Permission with this action already exists",
                status.HTTP_400_BAD_REQUEST,
            )
        permission.action = action
    if "description" in data:
        permission.description = data["description"]
    db.commit()
    db.refresh(permission)
    return permission


@router.get("/roles", response_model=List[RoleOut])
def list_roles(auth: AuthContext = Depends(manage_roles), db: Session = Depends(get_db)):
    return db.query(Role).order_by(Role.name).all()


@router.post("/roles", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
def create_role(
    role: RoleCreate, auth: AuthContext = Depends(manage_roles), db: Session = Depends(get_db)
):
    """
    Creates a role with an initial set of permissions. Requires ``role:manage``.

    Raises:
        ApiError: ROLE_EXISTS for a duplicate name, PERMISSION_NOT_FOUND for an
        unknown permission id.
    """
    if db.query(Role).filter(Role.name == role.name).first():
        raise ApiError(
            AdminErrorCodes.ROLE_EXISTS, "Role with this name already exists", status.HTTP_400_BAD_REQUEST
        )
    new_role = Role(
        name=role.name,
        description=role.description,
        permissions=_load_permissions(db, role.permission_ids),
    )
    db.add(new_role)
    db.commit()
    db.refresh(new_role)
    return new_role


@router.put("/roles/{role_id}/permissions", response_model=RoleOut)
def set_role_permissions(
    role_id: int,
    update: RolePermissionsUpdate,
    auth: AuthContext = Depends(manage_roles),
    db: Session = Depends(get_db),
):
    """
    Replaces the permissions granted by a role. Requires ``role:manage``.

    Changes reach users the next time they sign in, since sessions carry a
    snapshot of their permissions.
    """
    role = db.get(Role, role_id)
    if role is None:
        raise role_not_found_error(role_id)
    role.permissions = _load_permissions(db, update.permission_ids)
    db.commit()
    db.refresh(role)
    return role


@router.put("/roles/{role_id}", response_model=RoleOut)
def update_role(
    role_id: int,
    update: RoleUpdate,
    auth: AuthContext = Depends(manage_roles),
    db: Session = Depends(get_db),
):
    """
    Updates a role's name, description and, when given, its permissions. Requires ``role:manage``.

    Raises:
        ApiError: ROLE_NOT_FOUND, ROLE_EXISTS for a name another role uses,
        PERMISSION_NOT_FOUND for an unknown permission id.
    """
    role = db.get(Role, role_id)
    if role is None:
        raise role_not_found_error(role_id)

    data = update.model_dump(exclude_unset=True)
    name = data.get("name")
    if name and name != role.name:
        if db.query(Role).filter(Role.name == name).first():
            raise ApiError(
                AdminErrorCodes.ROLE_EXISTS, "Role with this name already exists", status.HTTP_400_BAD_REQUEST
            )
        role.name = name
    if "description" in data:
        role.description = data["description"]
    if data.get("permission_ids") is not None:
        role.permissions = _load_permissions(db, data["permission_ids"])
    db.commit()
    db.refresh(role)
    return role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: int,
    auth: AuthContext = Depends(manage_roles),
    db: Session = Depends(get_db),
):
    """
    Deletes a role that no user holds. Requires ``role:manage``.

    Raises:
        ApiError: ROLE_NOT_FOUND, or ROLE_IN_USE (409) while users still hold it.
    """
    role = db.get(Role, role_id)
    if role is None:
        raise role_not_found_error(role_id)
    if role.users:
        raise role_in_use_error(role.name, len(role.users))
    db.delete(role)
    db.commit()


@router.get("/users", response_model=UserPage)
def list_users(
    search: Optional[str] = None,
    is_staff: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(manage_users),
    db: Session = Depends(get_db),
):
    """
    Lists users ordered by email. Requires ``user:manage``.

    Parameters:
        search (str | None): Case-insensitive match on name or email.
        is_staff (bool | None): Restrict to staff or to non-staff users.
        page (int): 1-based page number.
        limit (int): Page size.
        auth (AuthContext): The caller's authorization context.
        db (Session): The database session.

    Returns:
        UserPage: The page of users with pagination details.
    """
    query = db.query(User)
    if is_staff is not None:
        query = query.filter(User.is_staff.is_(is_staff))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    total = query.count()
    users = query.order_by(User.email).offset((page - 1) * limit).limit(limit).all()
    return {
        "users": [_user_out(user) for user in users],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }


@router.post("/users/invite", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def invite_user(
    invite: StaffInvite,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(manage_users),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    """
    Creates a staff account with one role and emails the invitation. Requires ``user:manage``.

    Public registration only ever creates customers; this is how staff accounts
    are made.

    Raises:
        ApiError: EMAIL_TAKEN (409) for an existing account, ROLE_NOT_FOUND
        (400) for an unknown role name.
    """
    user = invite_staff(db, invite.name, invite.email, invite.password, invite.role)
    background_tasks.add_task(
        send_staff_invitation_email, mailer, to=user.email, name=user.name or "User", role=invite.role
    )
    return _user_out(user)


@router.get("/users/{user_id}", response_model=UserOut)
def get_user(user_id: int, auth: AuthContext = Depends(manage_users), db: Session = Depends(get_db)):
    user = db.get(User, user_id)
    if user is None:
        raise user_not_found_error(user_id)
    return _user_out(user)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: int,
    auth: AuthContext = Depends(manage_users),
    db: Session = Depends(get_db),
):
    """
    Deletes a user together with their returned checkouts. Requires ``user:manage``.

    Parameters:
        user_id (int): The user to delete.
        auth (AuthContext): The caller's authorization context.
        db (Session): The database session.

    Raises:
        ApiError: USER_NOT_FOUND, FORBIDDEN for the seeded admin account, or
        USER_HAS_ACTIVE_CHECKOUTS (409) while any book is still out.
    """
    user = db.get(User, user_id)
    if user is None:
        raise user_not_found_error(user_id)
    if user.email == settings.ADMIN_EMAIL:
        raise forbidden_error("Cannot delete the admin user. This account is protected.")

    active = (
        db.query(Checkout)
        .filter(Checkout.user_id == user.id, Checkout.returned_date.is_(None))
        .count()
    )
    if active:
        raise ApiError(
            AdminErrorCodes.USER_HAS_ACTIVE_CHECKOUTS,
            f"Cannot delete user with {active} active checkout(s). Please return all books first.",
            status.HTTP_409_CONFLICT,
            {"activeCheckouts": active},
        )

    db.query(Checkout).filter(Checkout.user_id == user.id).delete()
    db.query(VerificationToken).filter(VerificationToken.identifier == user.email).delete()
    db.delete(user)
    db.commit()


@router.patch("/users/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    update: UserUpdate,
    auth: AuthContext = Depends(manage_users),
    db: Session = Depends(get_db),
):
    """
    Updates a user's staff flag, checkout limit or email verification. Requires ``user:manage``.

    Promoting a user to staff without an explicit limit raises their limit to
    the staff default.
    """
    user = db.get(User, user_id)
    if user is None:
        raise user_not_found_error(user_id)

    data = update.model_dump(exclude_unset=True)
    if data.get("is_staff") is not None:
        if data["is_staff"] and not user.is_staff and "max_checkout_limit" not in data:
            user.max_checkout_limit = settings.STAFF_CHECKOUT_LIMIT
        user.is_staff = data["is_staff"]
    if data.get("max_checkout_limit") is not None:
        user.max_checkout_limit = data["max_checkout_limit"]
    if "email_verified" in data:
        user.email_verified = data["email_verified"]
    if data.get("mark_email_verified"):
        user.email_verified = datetime.now()

    db.commit()
    db.refresh(user)
    return _user_out(user)


@router.put("/users/{user_id}/roles", response_model=UserOut)
def set_user_roles(
    user_id: int,
    update: UserRolesUpdate,
    auth: AuthContext = Depends(manage_users),
    db: Session = Depends(get_db),
):
    """
    Replaces the roles held by a user. Requires ``user:manage``.

    Raises:
        ApiError: USER_NOT_FOUND, ROLE_NOT_FOUND, or a 400 when the list is
        empty, since every user must keep at least one role.
    """
    user = db.get(User, user_id)
    if user is None:
        raise user_not_found_error(user_id)
    if not update.role_ids:
        raise ApiError(
            AdminErrorCodes.ROLE_REQUIRED,
            "A user must hold at least one role",
            status.HTTP_400_BAD_REQUEST,
        )

    roles = []
    for role_id in dict.fromkeys(update.role_ids):
        role = db.get(Role, role_id)
        if role is None:
            raise role_not_found_error(role_id)
        roles.append(role)
    user.roles = roles
    db.commit()
    db.refresh(user)
    return _user_out(user)
