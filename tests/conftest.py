"""Shared pytest fixtures for bastion-iam tests."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from bastion_iam.auth.models import MFAMethodType, RequestContext
from bastion_iam.service import IAMService

PASSWORD = "Correct-Horse-42"
START = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """A clock that only moves when a test tells it to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class CapturingSender:
    """Code sender that keeps the last code per destination."""

    def __init__(self) -> None:
        self.sent: list[tuple[MFAMethodType, str, str]] = []

    def send(self, method: MFAMethodType, destination: str, code: str) -> None:
        self.sent.append((method, destination, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


def run_parallel(count: int, fn):
    """Run *fn(i)* on *count* threads released together; return the results in order."""
    barrier = threading.Barrier(count)

    def _call(i):
        barrier.wait()
        return fn(i)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(_call, range(count)))


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def sender():
    return CapturingSender()


@pytest.fixture
def iam_config(tmp_path):
    """In-memory store, temporary audit dir, cheap bcrypt."""
    return {
        "storage": {"db_path": ":memory:"},
        "audit": {"dir": str(tmp_path / "audit"), "background": False, "fsync": False},
        "security": {"token_secret": "test-secret", "bcrypt_rounds": 4},
    }


@pytest.fixture
def service(iam_config, clock, sender):
    svc = IAMService(iam_config, clock=clock, code_sender=sender)
    yield svc
    svc.close()


@pytest.fixture
def file_service(iam_config, tmp_path, clock, sender):
    """Service on a SQLite file, so every call gets its own connection."""
    cfg = {
        **iam_config,
        "storage": {"db_path": str(tmp_path / "iam.db"), "busy_timeout_seconds": 30.0},
    }
    svc = IAMService(cfg, clock=clock, code_sender=sender)
    yield svc
    svc.close()


@pytest.fixture
def ctx():
    return RequestContext(ip_address="10.0.0.5", user_agent="Mozilla/5.0", device_id="laptop")


@pytest.fixture
def alice(service):
    return service.create_principal("alice", PASSWORD, email="alice@example.com")


@pytest.fixture
def admin(service):
    return service.create_principal("root", PASSWORD, email="root@example.com", roles=["admin"])
