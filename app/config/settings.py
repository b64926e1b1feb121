import os
from decimal import Decimal


class Settings:
    # Database
    DATABASE_URL: str = os.environ.get("DATABASE_URL") or "sqlite:///./library.db"

    # Session tokens
    SECRET_KEY: str = os.environ.get("SECRET_KEY") or "dev-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60))

    # Public base URL, used for webhook callbacks and email links
    APP_URL: str = os.environ.get("APP_URL") or "http://localhost:8000"

    # QStash reminders (optional)
    QSTASH_TOKEN: str = os.environ.get("QSTASH_TOKEN", "")
    QSTASH_URL: str = os.environ.get("QSTASH_URL") or "https://qstash.upstash.io"
    QSTASH_CURRENT_SIGNING_KEY: str = os.environ.get("QSTASH_CURRENT_SIGNING_KEY", "")
    QSTASH_NEXT_SIGNING_KEY: str = os.environ.get("QSTASH_NEXT_SIGNING_KEY", "")

    # Resend email (optional)
    RESEND_API_KEY: str = os.environ.get("RESEND_API_KEY", "")
    RESEND_URL: str = os.environ.get("RESEND_URL") or "https://api.resend.com"
    EMAIL_FROM_ADDRESS: str = os.environ.get("EMAIL_FROM_ADDRESS") or "noreply@example.com"
    EMAIL_FROM_NAME: str = os.environ.get("EMAIL_FROM_NAME") or "Mini Library"

    # Library business rules
    DEFAULT_MAX_DURATION_DAYS: int = int(os.environ.get("DEFAULT_MAX_DURATION_DAYS", 14))
    DEFAULT_LATE_FEE_PER_DAY: Decimal = Decimal(os.environ.get("DEFAULT_LATE_FEE_PER_DAY") or "0.50")
    CUSTOMER_CHECKOUT_LIMIT: int = int(os.environ.get("CUSTOMER_CHECKOUT_LIMIT", 5))
    STAFF_CHECKOUT_LIMIT: int = int(os.environ.get("STAFF_CHECKOUT_LIMIT", 10))
    # local time on the day before the due date
    REMINDER_HOUR: int = int(os.environ.get("REMINDER_HOUR", 9))
    MAX_LOAN_DAYS: int = int(os.environ.get("MAX_LOAN_DAYS", 365))
    VERIFICATION_TOKEN_HOURS: int = int(os.environ.get("VERIFICATION_TOKEN_HOURS", 24))

    # Seed admin account
    ADMIN_EMAIL: str = os.environ.get("ADMIN_EMAIL") or "admin@library.com"
    ADMIN_PASSWORD: str = os.environ.get("ADMIN_PASSWORD") or "admin123"
    ADMIN_NAME: str = os.environ.get("ADMIN_NAME") or "Admin User"

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL") or "INFO"


settings = Settings()
