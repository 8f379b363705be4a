from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Generator
from pathlib import Path

import pytest

# Point the package at a throwaway database before anything imports sms_relay.db
_DB_DIR = Path(tempfile.mkdtemp(prefix="sms_relay_tests_"))
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'test.db'}"
for _var in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER", "PUBLIC_BASE_URL"):
    os.environ.pop(_var, None)
os.environ["DEFAULT_COUNTRY_CODE"] = "1"

from sqlalchemy.orm import Session  # noqa: E402

from sms_relay.config import get_settings  # noqa: E402
from sms_relay.db import Base, Contact, SessionLocal, User, engine  # noqa: E402
from sms_relay.directory import ParticipantDirectory  # noqa: E402
from sms_relay.fanout import FanoutEngine  # noqa: E402
from sms_relay.numbers import NumberAllocator, reset_allocator  # noqa: E402
from sms_relay.twilio_client import GatewayResult, get_gateway  # noqa: E402


class FakeGateway:
    """Records every send; numbers in ``fail_to`` get a failed result, ``raise_for`` raise."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail_to: set[str] = set()
        self.raise_for: set[str] = set()
        self.block_for: set[str] = set()
        self.release = threading.Event()
        self._lock = threading.Lock()

    def send_sms(self, from_: str, to: str, body: str) -> GatewayResult:
        if to in self.block_for:
            self.release.wait(5)
        with self._lock:
            self.sent.append((from_, to, body))
            n = len(self.sent)
        if to in self.raise_for:
            raise ConnectionError("gateway unreachable")
        if to in self.fail_to:
            return GatewayResult(None, "failed", "21610", "Attempt to send to unsubscribed recipient")
        return GatewayResult(f"SM{n:032d}", "queued")


@pytest.fixture(autouse=True)
def fresh_schema() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    get_settings.cache_clear()
    get_gateway.cache_clear()
    reset_allocator()
    yield
    get_settings.cache_clear()
    get_gateway.cache_clear()
    reset_allocator()


@pytest.fixture
def db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def allocator() -> NumberAllocator:
    return NumberAllocator(prefix="910", country_code="1", max_attempts=100)


@pytest.fixture
def directory(allocator: NumberAllocator) -> ParticipantDirectory:
    return ParticipantDirectory(allocator=allocator)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fanout(directory: ParticipantDirectory, gateway: FakeGateway) -> FanoutEngine:
    return FanoutEngine(directory=directory, gateway=gateway, max_workers=4, timeout=2.0)


def make_user(db: Session, username: str, first: str = "", last: str = "") -> User:
    user = User(username=username, first_name=first, last_name=last)
    db.add(user)
    db.commit()
    return user


def make_contact(
    db: Session, *, user_id: int | None = None, phone: str | None = None, first: str = "Pat"
) -> Contact:
    contact = Contact(user_id=user_id, phone_number=phone, first_name=first, last_name="Doe")
    db.add(contact)
    db.commit()
    return contact
