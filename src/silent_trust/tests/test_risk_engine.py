"""
Tests for the multi-factor risk engine.

Tests:
- Pre-check (daily limit, whitelist, penalties)
- Behavior, fingerprint, IP and frequency analyzers
- Timezone escalation
- Threshold mode selection
"""

from datetime import timedelta

import pytest

from silent_trust.db.gateway import PersistenceError
from silent_trust.db.memory import InMemoryGateway
from silent_trust.decision.engine import determine_action
from silent_trust.models import (
    DEFAULT_WEIGHTS,
    Action,
    Penalty,
    PenaltyType,
    TargetType,
    ThresholdMode,
)
from silent_trust.reputation.lookup import AsnInfo, Location
from silent_trust.reputation.vpn import VpnDetector
from silent_trust.scoring.risk_engine import RiskEngine, merge_breakdown
from silent_trust.scoring.validator import PayloadValidator
from silent_trust.scoring.weights import WeightStore
from silent_trust.signals import DeviceType, RequestContext


class CountFailingGateway(InMemoryGateway):
    async def count_submissions(self, **filters):
        raise PersistenceError("statement timeout")


def build_engine(gateway, lookup, traffic_mode="normal", daily_limit=3, vpn_whitelist=()):
    return RiskEngine(
        gateway,
        PayloadValidator(lookup),
        VpnDetector(lookup, whitelist=vpn_whitelist),
        WeightStore(gateway),
        traffic_mode=traffic_mode,
        daily_limit=daily_limit,
    )


def without_cookie(context: RequestContext) -> RequestContext:
    return RequestContext(
        ip_address=context.ip_address,
        received_at=context.received_at,
        user_agent=context.user_agent,
        form_id=context.form_id,
    )


async def seed(gateway, records):
    for record in records:
        await gateway.insert_submission(record)


class TestPrecheck:
    """Tests for the instant allow/block pre-check."""

    @pytest.mark.asyncio
    async def test_clean_submission(self, gateway, lookup, context, payload_factory):
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.score == 0
        assert result.breakdown == {}
        assert result.device_type == DeviceType.DESKTOP
        assert result.threshold_mode == ThresholdMode.NORMAL

    @pytest.mark.asyncio
    async def test_daily_limit_beats_whitelist(
        self, gateway, lookup, context, now, payload_factory, record_factory
    ):
        await seed(gateway, [record_factory(fingerprint_hash=f"fp-{i}") for i in range(3)])
        await gateway.update_whitelist("cookie-1", now - timedelta(days=1))
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.score == 100
        assert result.breakdown == {"daily_limit_exceeded": 100}

    @pytest.mark.asyncio
    async def test_whitelisted_device(self, gateway, lookup, context, now, payload_factory, record_factory):
        await seed(gateway, [record_factory(fingerprint_hash="fp-old")])
        await gateway.update_whitelist("cookie-1", now - timedelta(days=1))
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(time_per_field=100), context)

        assert result.score == 0
        assert result.breakdown == {"whitelisted": 0}

    @pytest.mark.asyncio
    async def test_expired_whitelist_is_ignored(self, gateway, lookup, context, now, payload_factory):
        await gateway.whitelist_device("cookie-1", now - timedelta(days=91), now - timedelta(days=1))
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(time_per_field=100), context)

        assert result.breakdown == {"fast_fill": 20}

    @pytest.mark.asyncio
    async def test_allow_after_lapsed_whitelist_restores_instant_allow(
        self, gateway, lookup, context, now, payload_factory
    ):
        await gateway.whitelist_device("cookie-1", now - timedelta(days=91), now - timedelta(days=1))
        await gateway.update_whitelist("cookie-1", now - timedelta(hours=2))
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(time_per_field=100), context)

        assert result.breakdown == {"whitelisted": 0}

    @pytest.mark.asyncio
    async def test_yesterdays_submissions_do_not_count(
        self, gateway, lookup, context, now, payload_factory, record_factory
    ):
        yesterday = now.replace(hour=0, minute=0) - timedelta(minutes=1)
        await seed(
            gateway,
            [record_factory(fingerprint_hash=f"fp-{i}", submitted_at=yesterday) for i in range(3)],
        )
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.score == 0

    @pytest.mark.asyncio
    async def test_current_instant_is_excluded(
        self, gateway, lookup, context, now, payload_factory, record_factory
    ):
        await seed(
            gateway,
            [
                record_factory(fingerprint_hash="fp-a"),
                record_factory(fingerprint_hash="fp-b"),
                record_factory(fingerprint_hash="fp-c", submitted_at=now),
            ],
        )
        engine = build_engine(gateway, lookup)

        precheck = await engine.precheck("cookie-1", context.ip_address, "fp-1", now)

        assert precheck.instant_block is False

    @pytest.mark.asyncio
    async def test_missing_cookie_is_blocked(self, gateway, lookup, context, payload_factory):
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), without_cookie(context))

        assert result.breakdown == {"daily_limit_exceeded": 100}

    @pytest.mark.asyncio
    async def test_unlimited_ignores_missing_cookie(self, gateway, lookup, context, payload_factory):
        engine = build_engine(gateway, lookup, daily_limit=0)

        result = await engine.calculate_risk(payload_factory(), without_cookie(context))

        assert result.score == 0

    @pytest.mark.asyncio
    async def test_penalized_fingerprint(self, gateway, lookup, context, now, payload_factory):
        await gateway.add_penalty(
            Penalty(
                penalty_type=PenaltyType.HARD,
                target_type=TargetType.FINGERPRINT,
                target_value="fp-1",
                reason="Risk score: 90",
                created_at=now - timedelta(hours=1),
                expires_at=now + timedelta(hours=23),
            )
        )
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.score == 100
        assert result.breakdown == {"penalized": 100}
        assert determine_action(result.score) == Action.HARD_PENALTY

    @pytest.mark.asyncio
    async def test_expired_penalty_is_ignored(self, gateway, lookup, context, now, payload_factory):
        await gateway.add_penalty(
            Penalty(
                penalty_type=PenaltyType.SOFT,
                target_type=TargetType.IP,
                target_value=context.ip_address,
                reason="Risk score: 72",
                created_at=now - timedelta(days=2),
                expires_at=now - timedelta(days=1),
            )
        )
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.score == 0

    @pytest.mark.asyncio
    async def test_storage_failure_falls_through(self, lookup, context, payload_factory):
        engine = build_engine(CountFailingGateway(), lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.score == 0


class TestValidationScoring:
    """Tests for validation points inside the risk calculation."""

    @pytest.mark.asyncio
    async def test_missing_payload(self, gateway, lookup, context):
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(None, context)

        assert result.score == 50
        assert result.breakdown == {"server_validation": 50}
        assert result.device_type == DeviceType.UNKNOWN

    @pytest.mark.asyncio
    async def test_timezone_mismatch_alone(self, gateway, lookup, context, payload_factory):
        lookup.set_location(context.ip_address, Location(timezone="America/Chicago"))
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.breakdown == {"server_validation": 10}
        assert "timezone_escalated" not in result.breakdown

    @pytest.mark.asyncio
    async def test_timezone_escalation(self, gateway, lookup, context, payload_factory):
        lookup.set_location(context.ip_address, Location(timezone="America/Chicago"))
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(time_per_field=250), context)

        assert result.breakdown == {
            "server_validation": 10,
            "fast_fill": 20,
            "timezone_escalated": 15,
        }
        assert result.score == 45


class TestBehavior:
    """Tests for behavioral analysis."""

    def test_fast_fill_desktop(self, gateway, lookup, payload_factory):
        engine = build_engine(gateway, lookup)

        scores = engine.analyze_behavior(payload_factory(time_per_field=399), ThresholdMode.NORMAL)

        assert scores == {"fast_fill": 20}

    def test_fast_fill_thresholds_by_device(self, gateway, lookup, payload_factory):
        engine = build_engine(gateway, lookup)
        touch = {"touch_events": 40, "mouse_events": 0}

        mobile = payload_factory(device_type="mobile", time_per_field=500, **touch)
        tablet = payload_factory(device_type="tablet", time_per_field=500, **touch)

        assert "fast_fill" in engine.analyze_behavior(mobile, ThresholdMode.NORMAL)
        assert "fast_fill" not in engine.analyze_behavior(tablet, ThresholdMode.NORMAL)

    def test_desktop_without_mouse(self, gateway, lookup, payload_factory):
        engine = build_engine(gateway, lookup)
        payload = payload_factory(mouse_events=0, total_time=2, typing_mechanical=True)

        scores = engine.analyze_behavior(payload, ThresholdMode.NORMAL)

        assert scores == {"no_mouse": 15, "mechanical_typing": 20}

    def test_mobile_touch_checks(self, gateway, lookup, payload_factory):
        engine = build_engine(gateway, lookup)
        payload = payload_factory(
            device_type="mobile", mouse_events=0, touch_events=0, total_time=3, touch_speed=14
        )

        scores = engine.analyze_behavior(payload, ThresholdMode.NORMAL)

        assert scores == {"no_touch": 15, "impossible_touch": 20}

    def test_slow_and_superhuman(self, gateway, lookup, payload_factory):
        engine = build_engine(gateway, lookup)
        payload = payload_factory(total_time=900, typing_speed=220)

        scores = engine.analyze_behavior(payload, ThresholdMode.STRICT)

        assert scores == {"too_slow": 10, "superhuman_typing": 25}


class TestHistoryAnalyzers:
    """Tests for fingerprint, IP and frequency analysis."""

    @pytest.mark.asyncio
    async def test_frequency_stacking(self, gateway, lookup, context, now, payload_factory, record_factory):
        await seed(
            gateway,
            [
                record_factory(device_cookie=None, submitted_at=now - timedelta(minutes=10 * i + 1))
                for i in range(4)
            ],
        )
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.breakdown["frequency_fp_hour"] == 30
        assert result.breakdown["daily_limit_exceeded"] == 25
        assert result.breakdown["frequency_fp_day"] == 25
        assert result.breakdown["fingerprint_reuse"] == 25
        assert result.score == 100

    @pytest.mark.asyncio
    async def test_daily_fingerprint_count_without_hourly(
        self, gateway, lookup, now, record_factory
    ):
        await seed(
            gateway,
            [
                record_factory(device_cookie=None, submitted_at=now - timedelta(hours=h + 2))
                for h in range(4)
            ],
        )
        engine = build_engine(gateway, lookup)

        scores = await engine.analyze_frequency("fp-1", "192.0.2.99", 0, now)

        assert scores == {"daily_limit_exceeded": 25}

    @pytest.mark.asyncio
    async def test_fingerprint_collision(self, gateway, lookup, now, payload_factory, record_factory):
        other_device = {"platform": "MacIntel", "timezone": "Europe/Stockholm"}
        await seed(
            gateway,
            [
                record_factory(device_cookie=None, payload=other_device, submitted_at=now - timedelta(minutes=i + 1))
                for i in range(4)
            ],
        )
        engine = build_engine(gateway, lookup)

        scores = await engine.analyze_fingerprint(payload_factory(), 4, now)

        assert scores == {"fingerprint_reuse": 10}

    @pytest.mark.asyncio
    async def test_ip_checks(self, gateway, lookup, context, now, payload_factory, record_factory):
        await seed(
            gateway,
            [
                record_factory(fingerprint_hash=f"fp-{c}", device_cookie=None)
                for c in "abcdef"
            ],
        )
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.breakdown == {"ip_multi_fp": 15, "frequency_ip": 20}
        assert result.score == 35

    @pytest.mark.asyncio
    async def test_vpn_detected(self, gateway, lookup, context, payload_factory):
        lookup.set_asn(context.ip_address, AsnInfo(asn=14061, organization="DigitalOcean"))
        engine = build_engine(gateway, lookup)

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.breakdown == {"vpn_detected": 10}

    @pytest.mark.asyncio
    async def test_whitelisted_vpn_range(self, gateway, lookup, context, payload_factory):
        lookup.set_asn(context.ip_address, AsnInfo(asn=14061, organization="DigitalOcean"))
        engine = build_engine(gateway, lookup, vpn_whitelist=["203.0.113.0/24"])

        result = await engine.calculate_risk(payload_factory(), context)

        assert result.score == 0


class TestThresholdMode:
    """Tests for traffic based threshold selection."""

    @pytest.mark.asyncio
    async def test_configured_mode(self, gateway, lookup, now):
        engine = build_engine(gateway, lookup, traffic_mode="strict")

        assert await engine.get_threshold_mode(now) == ThresholdMode.STRICT

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "volume,expected",
        [
            (0, ThresholdMode.LENIENT),
            (19, ThresholdMode.LENIENT),
            (20, ThresholdMode.NORMAL),
            (100, ThresholdMode.NORMAL),
            (101, ThresholdMode.STRICT),
        ],
    )
    async def test_auto_mode(self, gateway, lookup, now, record_factory, volume, expected):
        await seed(
            gateway,
            [
                record_factory(fingerprint_hash=f"fp-{i}", submitted_at=now - timedelta(minutes=i + 1))
                for i in range(volume)
            ],
        )
        engine = build_engine(gateway, lookup, traffic_mode="auto")

        assert await engine.get_threshold_mode(now) == expected


class TestWeightsAndBreakdown:
    """Tests for weight reporting and breakdown merging."""

    def test_merge_sums_collisions(self):
        breakdown = {"fast_fill": 20}

        merge_breakdown(breakdown, {"fast_fill": 5, "too_slow": 10})

        assert breakdown == {"fast_fill": 25, "too_slow": 10}

    @pytest.mark.asyncio
    async def test_weights_are_reported_not_applied(self, gateway, lookup, context, payload_factory):
        engine = build_engine(gateway, lookup)
        payload = payload_factory(time_per_field=200)

        before = await engine.calculate_risk(payload, context)
        await engine.weight_store.save_weights(
            {"fingerprint": 10, "behavior": 70, "ip": 10, "frequency": 10}
        )
        after = await engine.calculate_risk(payload, context)

        assert before.weights == DEFAULT_WEIGHTS
        assert after.weights.behavior == 70
        assert before.score == after.score == 20
        assert after.to_dict()["confidence_multiplier"] == 2.0
