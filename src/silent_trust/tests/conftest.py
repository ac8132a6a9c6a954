"""
Pytest configuration and shared fixtures for Silent Trust tests.
"""

import os
from datetime import datetime, timedelta
from typing import Any, Optional

# Keep the app module off PostgreSQL when API tests import it
os.environ.setdefault("SILENT_TRUST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest

from silent_trust.config import Settings
from silent_trust.db.memory import InMemoryGateway
from silent_trust.decision.mail import MailMessage, MailTransport
from silent_trust.models import Action, SubmissionRecord
from silent_trust.reputation.lookup import StaticReputationLookup
from silent_trust.services import build_services
from silent_trust.signals import RequestContext, SignalPayload
from silent_trust.tasks import TaskScheduler

NOW = datetime(2025, 3, 14, 15, 0, 0)


class RecordingScheduler(TaskScheduler):
    """Scheduler that only records tasks; tests run them explicitly."""

    def __init__(self, functional: bool = True):
        self.functional = functional
        self.tasks: list[tuple[datetime, Any, tuple]] = []

    def schedule(self, run_at, fn, *args) -> None:
        self.tasks.append((run_at, fn, args))

    def is_functional(self) -> bool:
        return self.functional

    async def run_all(self) -> None:
        tasks, self.tasks = self.tasks, []
        for _, fn, args in tasks:
            await fn(*args)


class FakeTransport(MailTransport):
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: list[MailMessage] = []

    async def send(self, message: MailMessage) -> bool:
        self.sent.append(message)
        return self.succeed


def make_record(
    fingerprint_hash: str = "fp-1",
    ip_address: str = "203.0.113.10",
    submitted_at: Optional[datetime] = None,
    action: Action = Action.ALLOW,
    risk_score: int = 0,
    risk_breakdown: Optional[dict[str, int]] = None,
    device_cookie: Optional[str] = "cookie-1",
    email_sent: bool = True,
    payload: Optional[dict[str, Any]] = None,
) -> SubmissionRecord:
    return SubmissionRecord(
        form_id="contact",
        fingerprint_hash=fingerprint_hash,
        ip_address=ip_address,
        risk_score=risk_score,
        risk_breakdown=risk_breakdown if risk_breakdown is not None else {},
        action=action,
        device_cookie=device_cookie,
        email_sent=email_sent,
        payload=payload or {},
        submitted_at=submitted_at or NOW - timedelta(minutes=5),
    )


def human_payload(**overrides) -> SignalPayload:
    """A desktop payload that trips no behavioral check."""
    data = {
        "device_type": "desktop",
        "fingerprint_hash": "fp-1",
        "canvas_hash": "c" * 64,
        "webgl_hash": "w" * 64,
        "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36",
        "screen_width": 1920,
        "screen_height": 1080,
        "timezone": "Europe/Stockholm",
        "platform": "Win32",
        "time_per_field": 1500,
        "total_time": 45,
        "mouse_events": 120,
        "key_events": 80,
        "typing_speed": 45,
    }
    data.update(overrides)
    return SignalPayload.model_validate(data)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def record_factory():
    """Build SubmissionRecords with sensible defaults."""
    return make_record


@pytest.fixture
def payload_factory():
    """Build human-looking SignalPayloads; keyword overrides replace fields."""
    return human_payload


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def lookup() -> StaticReputationLookup:
    return StaticReputationLookup()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        traffic_mode="normal",
        daily_limit=3,
        async_mode_enabled=False,
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture
def services(test_settings, gateway, lookup, scheduler, transport):
    return build_services(
        test_settings,
        gateway=gateway,
        scheduler=scheduler,
        lookup=lookup,
        transport=transport,
    )


@pytest.fixture
def recording_scheduler_cls():
    return RecordingScheduler


@pytest.fixture
def transport_cls():
    return FakeTransport


@pytest.fixture
def context(now) -> RequestContext:
    return RequestContext(
        ip_address="203.0.113.10",
        received_at=now,
        device_cookie="cookie-1",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36",
        form_id="contact",
    )
