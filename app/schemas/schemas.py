from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.config.settings import settings
from app.models.models import BookStatus


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: Optional[str] = None
    email: str


class UserOut(UserSummary):
    is_staff: bool
    email_verified: Optional[datetime] = None
    max_checkout_limit: int
    roles: List[str] = []


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1)


class StaffInvite(UserCreate):
    role: str = Field(..., min_length=1)


class UserUpdate(BaseModel):
    is_staff: Optional[bool] = None
    max_checkout_limit: Optional[int] = Field(None, gt=0)
    email_verified: Optional[datetime] = None
    mark_email_verified: Optional[bool] = None


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    isbn: Optional[str] = None
    description: Optional[str] = None
    summary: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    genre: Optional[str] = None
    tags: List[str] = []
    page_count: Optional[int] = Field(None, gt=0)
    language: Optional[str] = None
    cover_image_url: Optional[str] = None


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    isbn: Optional[str] = None
    description: Optional[str] = None
    summary: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    genre: Optional[str] = None
    tags: Optional[List[str]] = None
    page_count: Optional[int] = Field(None, gt=0)
    language: Optional[str] = None
    cover_image_url: Optional[str] = None


class BookOut(BookCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: BookStatus


class CheckoutCreate(BaseModel):
    book_id: int
    user_id: Optional[int] = None
    max_duration_days: Optional[int] = Field(None, ge=0, le=settings.MAX_LOAN_DAYS)
    late_fee_per_day: Optional[Decimal] = Field(None, ge=0)


class CheckoutOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: int
    user_id: int
    checkout_date: datetime
    due_date: datetime
    max_duration_days: int
    late_fee_per_day: Decimal
    returned_date: Optional[datetime] = None
    is_overdue: bool
    overdue_days: int
    late_fee_amount: Optional[Decimal] = None
    book: BookOut
    user: UserSummary


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class CheckoutPage(BaseModel):
    checkouts: List[CheckoutOut]
    pagination: Pagination


class UserPage(BaseModel):
    users: List[UserOut]
    pagination: Pagination


class SweepResult(BaseModel):
    updated: int


class PermissionCreate(BaseModel):
    action: str = Field(..., pattern=r"^[a-z_]+:[a-z_]+$")
    description: Optional[str] = None


class PermissionUpdate(BaseModel):
    action: Optional[str] = Field(None, pattern=r"^[a-z_]+:[a-z_]+$")
    description: Optional[str] = None


class PermissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    description: Optional[str] = None


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    permission_ids: List[int] = []


class RoleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    permissions: List[PermissionOut] = []


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    permission_ids: Optional[List[int]] = None


class RolePermissionsUpdate(BaseModel):
    permission_ids: List[int]


class UserRolesUpdate(BaseModel):
    role_ids: List[int]


class ReminderPayload(BaseModel):
    checkoutId: Optional[int] = None
    type: Optional[str] = None
