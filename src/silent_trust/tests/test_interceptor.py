"""
Tests for the submission interceptor (end-to-end over the in-memory gateway).
"""

import hashlib
import json
from datetime import timedelta

import pytest

from silent_trust.config import Settings
from silent_trust.db.gateway import PersistenceError
from silent_trust.db.memory import InMemoryGateway
from silent_trust.decision.mail import MailMessage
from silent_trust.interceptor import SubmissionRequest, fingerprint_for
from silent_trust.models import Action, QueueStatus, SentVia, TargetType
from silent_trust.scoring.validator import honeypot_field_name
from silent_trust.services import build_services

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36"


class FailingInsertGateway(InMemoryGateway):
    async def insert_submission(self, record):
        raise PersistenceError("database unavailable")


@pytest.fixture
def make_request(now, payload_factory):
    def _make(raw_payload="default", **overrides) -> SubmissionRequest:
        values = {
            "ip_address": "203.0.113.10",
            "raw_payload": payload_factory().snapshot() if raw_payload == "default" else raw_payload,
            "device_cookie": "cookie-1",
            "user_agent": USER_AGENT,
            "referer": "https://example.com/contact",
            "form_id": "contact",
            "posted_fields": {"your_name": "Ada", "your_message": "Hello"},
            "mail": MailMessage(to="sales@example.com", subject="New lead", body="Name: Ada\n"),
            "received_at": now,
        }
        values.update(overrides)
        return SubmissionRequest(**values)

    return _make


class TestFingerprintFor:
    """Tests for the fingerprint used in records."""

    def test_payload_hash(self, payload_factory):
        assert fingerprint_for(payload_factory()) == "fp-1"

    def test_missing_payload(self):
        assert fingerprint_for(None) == hashlib.sha256(json.dumps({}).encode()).hexdigest()


class TestSyncPath:
    """Tests for inline scoring."""

    @pytest.mark.asyncio
    async def test_clean_submission_proceeds(self, services, gateway, make_request, now):
        result = await services.interceptor.intercept(make_request())

        assert result.proceed is True
        assert result.path == "sync"
        assert result.action == Action.ALLOW
        assert result.score == 0

        record = await gateway.get_submission(result.submission_id)
        assert record.fingerprint_hash == "fp-1"
        assert record.device_type == "desktop"
        assert record.analytics["referrer_url"] == "https://example.com/contact"
        assert record.email_sent is True
        assert (await gateway.get_whitelist_entry("cookie-1")).success_count == 1

    @pytest.mark.asyncio
    async def test_honeypot(self, services, gateway, make_request, now):
        trap = honeypot_field_name(now.date())

        result = await services.interceptor.intercept(make_request(posted_fields={trap: "buy now"}))

        assert result.proceed is False
        assert result.path == "honeypot"
        assert result.action == Action.HARD_PENALTY
        assert result.breakdown == {"honeypot_triggered": 100}
        assert await gateway.is_penalized(TargetType.IP, "203.0.113.10", now)

    @pytest.mark.asyncio
    async def test_missing_payload_is_delayed(self, services, gateway, make_request, scheduler, transport):
        result = await services.interceptor.intercept(make_request(raw_payload=None))

        assert result.proceed is False
        assert result.action == Action.DELAY
        assert result.breakdown == {"server_validation": 50}

        await scheduler.run_all()
        record = await gateway.get_submission(result.submission_id)
        assert record.fingerprint_hash == fingerprint_for(None)
        assert record.device_type == "unknown"
        assert record.email_sent is True
        assert record.sent_via == SentVia.CRON
        assert transport.sent[0].to == "sales@example.com"

    @pytest.mark.asyncio
    async def test_json_string_payload(self, services, make_request, payload_factory):
        raw = json.dumps(payload_factory(time_per_field=200).snapshot())

        result = await services.interceptor.intercept(make_request(raw_payload=raw))

        assert result.breakdown == {"fast_fill": 20}
        assert result.proceed is True

    @pytest.mark.asyncio
    async def test_malformed_optional_field_keeps_payload(self, services, gateway, make_request, payload_factory):
        raw = payload_factory().snapshot()
        raw["screen_width"] = "1920px"

        result = await services.interceptor.intercept(make_request(raw_payload=raw))

        assert result.action == Action.ALLOW
        assert result.breakdown == {}
        record = await gateway.get_submission(result.submission_id)
        assert record.fingerprint_hash == "fp-1"
        assert "screen_width" not in record.payload


class TestAsyncPath:
    """Tests for the quick check + deferred analysis path."""

    @pytest.mark.asyncio
    async def test_deferred(self, services, gateway, make_request, scheduler):
        services.async_gate.enabled = True

        result = await services.interceptor.intercept(make_request())

        assert result.proceed is True
        assert result.path == "async"
        assert result.reason == "quick_check_passed"
        assert result.queue_item_id is not None

        record = await gateway.get_submission(result.submission_id)
        assert record.risk_breakdown == {"deferred_analysis": 0}
        assert await gateway.get_whitelist_entry("cookie-1") is None

        await scheduler.run_all()
        item = await gateway.get_queue_item(result.queue_item_id)
        assert item.status == QueueStatus.COMPLETED
        assert item.submission_id == result.submission_id

    @pytest.mark.asyncio
    async def test_quick_block(self, services, gateway, make_request, payload_factory, now):
        services.async_gate.enabled = True
        raw = payload_factory(time_per_field=20).snapshot()

        result = await services.interceptor.intercept(make_request(raw_payload=raw))

        assert result.proceed is False
        assert result.path == "quick_block"
        assert result.action == Action.HARD_PENALTY
        assert result.breakdown == {"bot_typing_speed": 100}
        assert result.queue_item_id is None
        assert await gateway.is_penalized(TargetType.FINGERPRINT, "fp-1", now)

    @pytest.mark.asyncio
    async def test_deferred_score_is_recorded(self, services, gateway, make_request, payload_factory, scheduler):
        services.async_gate.enabled = True
        raw = payload_factory(time_per_field=200).snapshot()

        result = await services.interceptor.intercept(make_request(raw_payload=raw))
        record = await gateway.get_submission(result.submission_id)
        assert record.risk_score == 0
        assert record.analyzed_score is None

        await scheduler.run_all()
        record = await gateway.get_submission(result.submission_id)
        assert record.risk_score == 0
        assert record.deferred_score == 20
        assert record.analyzed_score == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("earlier_time_per_field,whitelisted", [(200, False), (1500, True)])
    async def test_auto_whitelist_judges_deferred_results(
        self, services, gateway, make_request, payload_factory, scheduler, now,
        earlier_time_per_field, whitelisted,
    ):
        services.async_gate.enabled = True
        earlier = payload_factory(time_per_field=earlier_time_per_field).snapshot()
        for day in range(11, 1, -1):
            await services.interceptor.intercept(
                make_request(raw_payload=earlier, received_at=now - timedelta(days=day))
            )
            await scheduler.run_all()

        result = await services.interceptor.intercept(make_request())
        await scheduler.run_all()

        assert (await gateway.get_queue_item(result.queue_item_id)).result_score == 0
        entry = await gateway.get_whitelist_entry("cookie-1")
        if whitelisted:
            assert entry is not None
            assert entry.expires_at is not None
        else:
            assert entry is None

    @pytest.mark.asyncio
    async def test_falls_back_to_sync(self, services, make_request, scheduler):
        services.async_gate.enabled = True
        scheduler.functional = False

        result = await services.interceptor.intercept(make_request())

        assert result.path == "sync"


class TestPersistenceFailure:
    """Tests for the failure policy when the log cannot be written."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy,proceed", [("open", True), ("closed", False)])
    async def test_policy(self, lookup, scheduler, transport, make_request, policy, proceed):
        settings = Settings(
            _env_file=None,
            traffic_mode="normal",
            async_mode_enabled=False,
            persistence_failure_policy=policy,
        )
        services = build_services(
            settings, FailingInsertGateway(), scheduler, lookup=lookup, transport=transport
        )

        result = await services.interceptor.intercept(make_request())

        assert result.proceed is proceed
        assert result.path == "persistence_failure"


class TestDeliveryOutcome:
    """Tests for record_delivery_outcome."""

    @pytest.mark.asyncio
    async def test_failed_send(self, services, gateway, make_request):
        result = await services.interceptor.intercept(make_request())

        assert await services.interceptor.record_delivery_outcome(result.submission_id, False)

        record = await gateway.get_submission(result.submission_id)
        assert record.email_sent is False
        assert record.email_failure_reason == "SMTP send failed"

    @pytest.mark.asyncio
    async def test_unknown_submission(self, services):
        assert await services.interceptor.record_delivery_outcome(999, True) is False
