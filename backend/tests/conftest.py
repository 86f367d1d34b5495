"""Shared test fixtures."""

import asyncio
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pushrelay.core.database import Base
from pushrelay.core.notification_types import SendResult
from pushrelay.core.service import NotificationService
from pushrelay.models import NotificationRecord

# Models must be imported so Base.metadata.create_all() sees all tables.
_ALL_MODELS = [NotificationRecord]

FAST_RETRY_DELAYS = (0.01, 0.02, 0.04)


class FakeSender:
    """Stands in for PushSender; replays scripted results and records calls."""

    endpoint_url = "https://push.test/send"

    def __init__(self, results=None, default=None):
        self.results = list(results or [])
        self.default = default or SendResult(success=True)
        self.calls = []

    async def send(self, target, payload):
        self.calls.append((target, payload))
        if self.results:
            result = self.results.pop(0)
        else:
            result = self.default
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def session_factory():
    """In-memory SQLite shared across sessions through a StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    finally:
        engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest_asyncio.fixture
async def service(fake_sender, session_factory):
    svc = NotificationService(
        fake_sender,
        session_factory,
        queue_interval_ms=5,
        queue_max_concurrent=5,
        retry_delays=FAST_RETRY_DELAYS,
    )
    try:
        yield svc
    finally:
        await svc.stop()


@pytest.fixture
def add_record(db_session):
    """Insert a notification_history row directly."""

    def _add(status="pending", retry_count=0, user_id="user-1", created_at=None, **kwargs):
        rec = NotificationRecord(
            user_id=user_id,
            title=kwargs.pop("title", "Test Notification"),
            body=kwargs.pop("body", "This is a test notification"),
            delivery_status=status,
            retry_count=retry_count,
            created_at=created_at or datetime.utcnow(),
            **kwargs,
        )
        db_session.add(rec)
        db_session.commit()
        return rec

    return _add


async def eventually(predicate, timeout=2.0, interval=0.005):
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


@pytest.fixture
def wait_until():
    return eventually
