"""Shared fixtures: in-memory SQLite, fake clocks, fake upstreams."""
import os

from cryptography.fernet import Fernet

os.environ.setdefault("GATEWAY_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GATEWAY_LOG_LEVEL", "warning")
os.environ.setdefault("GATEWAY_ENCRYPTION_KEY", Fernet.generate_key().decode())

from datetime import datetime, timedelta, timezone

import pytest

from core.credentials import CredentialVault


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Manually advanced clock returning aware datetimes."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def date_clock():
    return FakeDateClock()


@pytest.fixture
def vault(date_clock):
    return CredentialVault(encryption_key=Fernet.generate_key().decode(), clock=date_clock)
