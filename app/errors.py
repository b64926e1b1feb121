from typing import Any, Dict, Iterable, Optional

from fastapi import HTTPException, status


class AuthErrorCodes:
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_SESSION = "INVALID_SESSION"
    FORBIDDEN = "FORBIDDEN"
    MISSING_PERMISSIONS = "MISSING_PERMISSIONS"
    MISSING_ROLES = "MISSING_ROLES"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    EMAIL_TAKEN = "EMAIL_TAKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    EMAIL_ALREADY_VERIFIED = "EMAIL_ALREADY_VERIFIED"


class BookErrorCodes:
    BOOK_NOT_FOUND = "BOOK_NOT_FOUND"
    BOOK_ALREADY_CHECKED_OUT = "BOOK_ALREADY_CHECKED_OUT"
    BOOK_HAS_ACTIVE_CHECKOUT = "BOOK_HAS_ACTIVE_CHECKOUT"
    BOOK_ISBN_TAKEN = "BOOK_ISBN_TAKEN"


class CheckoutErrorCodes:
    USER_NOT_FOUND = "USER_NOT_FOUND"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    CHECKOUT_NOT_FOUND = "CHECKOUT_NOT_FOUND"
    CHECKOUT_LIMIT_EXCEEDED = "CHECKOUT_LIMIT_EXCEEDED"
    BOOK_ALREADY_HELD = "BOOK_ALREADY_HELD"
    CHECKOUT_ALREADY_RETURNED = "CHECKOUT_ALREADY_RETURNED"
    INVALID_LOAN_DURATION = "INVALID_LOAN_DURATION"


class AdminErrorCodes:
    ROLE_NOT_FOUND = "ROLE_NOT_FOUND"
    ROLE_EXISTS = "ROLE_EXISTS"
    PERMISSION_NOT_FOUND = "PERMISSION_NOT_FOUND"
    PERMISSION_EXISTS = "PERMISSION_EXISTS"
    PERMISSION_IN_USE = "PERMISSION_IN_USE"
    ROLE_REQUIRED = "ROLE_REQUIRED"
    ROLE_IN_USE = "ROLE_IN_USE"
    USER_HAS_ACTIVE_CHECKOUTS = "USER_HAS_ACTIVE_CHECKOUTS"


class WebhookErrorCodes:
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_REQUEST = "INVALID_REQUEST"


class ApiError(HTTPException):
    """
    Structured error raised by services and dependencies.

    The ``detail`` of the underlying HTTPException is the human readable
    message, so the error still renders sensibly without the custom handler
    installed in ``app.main``.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


def unauthorized_error(message: str = "Authentication required") -> ApiError:
    return ApiError(AuthErrorCodes.UNAUTHORIZED, message, status.HTTP_401_UNAUTHORIZED)


def invalid_session_error(message: str = "Invalid session data") -> ApiError:
    return ApiError(AuthErrorCodes.INVALID_SESSION, message, status.HTTP_401_UNAUTHORIZED)


def forbidden_error(message: str = "Access forbidden") -> ApiError:
    return ApiError(AuthErrorCodes.FORBIDDEN, message, status.HTTP_403_FORBIDDEN)


def missing_permissions_error(permissions: Iterable[str], require_all: bool = False) -> ApiError:
    required = sorted(permissions)
    if require_all:
        message = f"Missing required permissions: {', '.join(required)}"
    else:
        message = f"Missing required permission. Required: {' or '.join(required)}"
    return ApiError(
        AuthErrorCodes.MISSING_PERMISSIONS,
        message,
        status.HTTP_403_FORBIDDEN,
        {"requiredPermissions": required, "requireAll": require_all},
    )


def missing_roles_error(roles: Iterable[str], require_all: bool = False) -> ApiError:
    required = sorted(roles)
    if require_all:
        message = f"Missing required roles: {', '.join(required)}"
    else:
        message = f"Missing required role. Required: {' or '.join(required)}"
    return ApiError(
        AuthErrorCodes.MISSING_ROLES,
        message,
        status.HTTP_403_FORBIDDEN,
        {"requiredRoles": required, "requireAll": require_all},
    )


def user_not_found_error(user_id: Optional[int] = None) -> ApiError:
    message = f"User with ID {user_id} not found" if user_id is not None else "User not found"
    return ApiError(
        CheckoutErrorCodes.USER_NOT_FOUND, message, status.HTTP_404_NOT_FOUND, {"userId": user_id}
    )


def book_not_found_error(book_id: Optional[int] = None) -> ApiError:
    message = f"Book with ID {book_id} not found" if book_id is not None else "Book not found"
    return ApiError(
        BookErrorCodes.BOOK_NOT_FOUND, message, status.HTTP_404_NOT_FOUND, {"bookId": book_id}
    )


def book_already_checked_out_error(book_id: int) -> ApiError:
    return ApiError(
        BookErrorCodes.BOOK_ALREADY_CHECKED_OUT,
        f"Book with ID {book_id} is already checked out",
        status.HTTP_409_CONFLICT,
        {"bookId": book_id},
    )


def checkout_not_found_error(checkout_id: Optional[int] = None) -> ApiError:
    message = (
        f"Checkout with ID {checkout_id} not found" if checkout_id is not None else "Checkout not found"
    )
    return ApiError(
        CheckoutErrorCodes.CHECKOUT_NOT_FOUND,
        message,
        status.HTTP_404_NOT_FOUND,
        {"checkoutId": checkout_id},
    )


def checkout_limit_exceeded_error(current_checkouts: int, max_checkouts: int) -> ApiError:
    return ApiError(
        CheckoutErrorCodes.CHECKOUT_LIMIT_EXCEEDED,
        f"Checkout limit exceeded. You have {current_checkouts} active checkouts "
        f"out of {max_checkouts} allowed.",
        status.HTTP_400_BAD_REQUEST,
        {"currentCheckouts": current_checkouts, "maxCheckouts": max_checkouts},
    )


def checkout_already_returned_error(checkout_id: int) -> ApiError:
    return ApiError(
        CheckoutErrorCodes.CHECKOUT_ALREADY_RETURNED,
        f"Checkout with ID {checkout_id} has already been returned",
        status.HTTP_409_CONFLICT,
        {"checkoutId": checkout_id},
    )


def role_not_found_error(role_id: int) -> ApiError:
    return ApiError(
        AdminErrorCodes.ROLE_NOT_FOUND,
        f"Role with ID {role_id} not found",
        status.HTTP_404_NOT_FOUND,
        {"roleId": role_id},
    )


def permission_not_found_error(permission_id: int) -> ApiError:
    return ApiError(
        AdminErrorCodes.PERMISSION_NOT_FOUND,
        f"Permission with ID {permission_id} not found",
        status.HTTP_404_NOT_FOUND,
        {"permissionId": permission_id},
    )


def permission_in_use_error(action: str, role_count: int) -> ApiError:
    return ApiError(
        AdminErrorCodes.PERMISSION_IN_USE,
        f"Cannot delete permission {action}: it is assigned to {role_count} role(s)",
        status.HTTP_409_CONFLICT,
        {"action": action, "roleCount": role_count},
    )


def role_in_use_error(name: str, user_count: int) -> ApiError:
    return ApiError(
        AdminErrorCodes.ROLE_IN_USE,
        f"Cannot delete role {name}: it is assigned to {user_count} user(s)",
        status.HTTP_409_CONFLICT,
        {"role": name, "userCount": user_count},
    )
