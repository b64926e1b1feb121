import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["QSTASH_TOKEN"] = ""
os.environ["QSTASH_CURRENT_SIGNING_KEY"] = ""
os.environ["QSTASH_NEXT_SIGNING_KEY"] = ""
os.environ["RESEND_API_KEY"] = ""

from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from fastapi import BackgroundTasks
from fastapi.testclient import TestClient

from app.config.db import Base, SessionLocal, engine
from app.main import app
from app.models.models import Book, Role, User
from app.routes.deps import get_mailer, get_reminder_scheduler
from app.seed import seed
from app.services.auth import create_access_token
from app.services.checkout import CheckoutEngine
from app.services.notifications import Mailer
from app.services.rbac import build_session_payload
from app.services.reminders import ReminderScheduler


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingScheduler(ReminderScheduler):
    def __init__(self):
        self.scheduled = []
        self.cancelled = []
        self.fail = False

    def is_available(self) -> bool:
        return True

    def schedule(self, checkout_id, due_date):
        if self.fail:
            raise RuntimeError("qstash down")
        self.scheduled.append((checkout_id, due_date))
        return f"msg-{checkout_id}"

    def cancel(self, message_id):
        if self.fail:
            raise RuntimeError("qstash down")
        self.cancelled.append(message_id)
        return True


class RecordingMailer(Mailer):
    def __init__(self):
        self.sent = []

    def is_available(self) -> bool:
        return True

    def send(self, to, subject, html_body, text_body):
        self.sent.append({"to": to, "subject": subject, "text": text_body})
        return True


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    seed(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 15, 30))


@pytest.fixture
def reminders():
    return RecordingScheduler()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def tasks():
    return BackgroundTasks()


@pytest.fixture
def run_tasks(tasks):
    """Run queued background tasks synchronously, in order."""

    def drain() -> None:
        for task in tasks.tasks:
            task.func(*task.args, **task.kwargs)
        tasks.tasks.clear()

    return drain


@pytest.fixture
def checkout_engine(db, reminders, tasks, clock):
    return CheckoutEngine(db, reminders, tasks, clock=clock)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def factory(
        verified: bool = True,
        staff: bool = False,
        limit: int = 5,
        roles: Optional[List[str]] = None,
    ) -> User:
        counter["n"] += 1
        user = User(
            name=f"Reader {counter['n']}",
            email=f"reader{counter['n']}@example.com",
            is_staff=staff,
            email_verified=datetime(2024, 1, 1) if verified else None,
            max_checkout_limit=limit,
        )
        names = roles if roles is not None else ["Customer"]
        user.roles = db.query(Role).filter(Role.name.in_(names)).all()
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return factory


@pytest.fixture
def make_book(db):
    def factory(title: str = "Dune", author: str = "Frank Herbert") -> Book:
        book = Book(title=title, author=author, tags=[])
        db.add(book)
        db.commit()
        db.refresh(book)
        return book

    return factory


@pytest.fixture
def client(db, reminders, mailer):
    app.dependency_overrides[get_reminder_scheduler] = lambda: reminders
    app.dependency_overrides[get_mailer] = lambda: mailer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def headers(user: User) -> dict:
        token = create_access_token(build_session_payload(user))
        return {"Authorization": f"Bearer {token}"}

    return headers
