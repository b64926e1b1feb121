import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from app.config.db import Base


class BookStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    CHECKED_OUT = "CHECKED_OUT"


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    assigned_at = Column(DateTime, default=datetime.now, nullable=False)


class RolePermission(Base):
    __tablename__ = "role_permissions"
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id = Column(Integer, ForeignKey("permissions.id"), primary_key=True)
    assigned_at = Column(DateTime, default=datetime.now, nullable=False)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=True)
    is_staff = Column(Boolean, default=False, nullable=False)
    email_verified = Column(DateTime, nullable=True)
    max_checkout_limit = Column(Integer, default=5, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    roles = relationship("Role", secondary="user_roles", back_populates="users")
    checkouts = relationship("Checkout", back_populates="user")


class Role(Base):
    __tablename__ = "roles"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(String, nullable=True)

    users = relationship("User", secondary="user_roles", back_populates="roles")
    permissions = relationship(
        "Permission", secondary="role_permissions", back_populates="roles"
    )


class Permission(Base):
    __tablename__ = "permissions"
    id = Column(Integer, primary_key=True, index=True)
    action = Column(String, unique=True, nullable=False)
    description = Column(String, nullable=True)

    roles = relationship("Role", secondary="role_permissions", back_populates="permissions")


class Book(Base):
    __tablename__ = "books"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    author = Column(String, nullable=False)
    isbn = Column(String, unique=True, nullable=True)
    description = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    publisher = Column(String, nullable=True)
    publication_year = Column(Integer, nullable=True)
    genre = Column(String, nullable=True)
    tags = Column(JSON, default=list, nullable=False)
    page_count = Column(Integer, nullable=True)
    language = Column(String, nullable=True)
    cover_image_url = Column(String, nullable=True)
    status = Column(Enum(BookStatus), default=BookStatus.AVAILABLE, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    checkouts = relationship("Checkout", back_populates="book")


class Checkout(Base):
    __tablename__ = "checkouts"
    __table_args__ = (
        # at most one unreturned checkout per book
        Index(
            "uq_checkouts_active_book",
            "book_id",
            unique=True,
            sqlite_where=text("returned_date IS NULL"),
            postgresql_where=text("returned_date IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    checkout_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    max_duration_days = Column(Integer, default=14, nullable=False)
    late_fee_per_day = Column(Numeric(10, 2), nullable=False)
    returned_date = Column(DateTime, nullable=True)
    is_overdue = Column(Boolean, default=False, nullable=False)
    overdue_days = Column(Integer, default=0, nullable=False)
    late_fee_amount = Column(Numeric(10, 2), nullable=True)
    qstash_message_id = Column(String, nullable=True)

    user = relationship("User", back_populates="checkouts")
    book = relationship("Book", back_populates="checkouts")


class VerificationToken(Base):
    __tablename__ = "verification_tokens"
    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String, nullable=False, index=True)
    token = Column(String, unique=True, nullable=False)
    expires = Column(DateTime, nullable=False)
