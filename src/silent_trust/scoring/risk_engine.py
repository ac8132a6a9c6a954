"""
Multi-factor risk engine.

Produces a 0-100 risk score and a per-signal breakdown for one
submission:

1. Pre-check: daily limit, whitelist, active penalties (may short-circuit)
2. Payload validation (honeypot is an absolute override)
3. Threshold mode (configured or derived from trailing 24h volume)
4. Factor analyzers: fingerprint, behavior, IP reputation, frequency
5. Timezone escalation when a mismatch is corroborated

Every window is anchored at ``context.received_at`` and excludes it, so
a deferred re-analysis sees the same history the request would have.
Point values are fixed; the current weight set is loaded and reported
alongside the result but does not scale the points.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from silent_trust.db.gateway import PersistenceError, PersistenceGateway
from silent_trust.models import DEFAULT_WEIGHTS, TargetType, ThresholdMode, WeightSet
from silent_trust.reputation.vpn import VpnDetector
from silent_trust.scoring.validator import PayloadValidator
from silent_trust.scoring.weights import WeightStore
from silent_trust.signals import DeviceType, RequestContext, SignalPayload, stable_traits

logger = logging.getLogger(__name__)

MAX_SCORE = 100

# Missing device cookie: never instant-allowed, always over a positive limit
MISSING_COOKIE_COUNT = 999

# Behavior
FAST_FILL_MS_DEFAULT = 400
FAST_FILL_MS_MOBILE = 600
NO_MOUSE_MAX_SECONDS = 3
NO_TOUCH_MAX_SECONDS = 4
MAX_TOUCH_SPEED = 10
TOO_SLOW_SECONDS = 600
MAX_TYPING_WPM = 150

# IP and frequency
MAX_FINGERPRINTS_PER_IP = 5
MAX_FP_PER_HOUR = 3
MAX_IP_PER_HOUR = 5

# Auto threshold mode, trailing 24h volume
LENIENT_BELOW = 20
STRICT_ABOVE = 100

POINTS = {
    "fingerprint_reuse": 25,
    "fingerprint_collision": 10,
    "fast_fill": 20,
    "no_mouse": 15,
    "mechanical_typing": 20,
    "no_touch": 15,
    "impossible_touch": 20,
    "too_slow": 10,
    "superhuman_typing": 25,
    "ip_multi_fp": 15,
    "vpn_detected": 10,
    "frequency_fp_hour": 30,
    "daily_limit_exceeded": 25,
    "frequency_fp_day": 25,
    "frequency_ip": 20,
    "timezone_escalated": 15,
}

FREQUENCY_KEYS = ("frequency_fp_hour", "daily_limit_exceeded", "frequency_fp_day", "frequency_ip")
ESCALATION_TRIGGERS = ("fast_fill", "fingerprint_reuse") + FREQUENCY_KEYS


@dataclass
class PrecheckResult:
    instant_allow: bool = False
    instant_block: bool = False
    reason: Optional[str] = None


@dataclass
class RiskResult:
    """Score, explanation and context of one risk calculation."""

    score: int
    breakdown: dict[str, int]
    device_type: DeviceType = DeviceType.UNKNOWN
    threshold_mode: ThresholdMode = ThresholdMode.NORMAL
    flags: list[str] = field(default_factory=list)
    weights: WeightSet = DEFAULT_WEIGHTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "breakdown": dict(self.breakdown),
            "device_type": self.device_type.value,
            "threshold_mode": self.threshold_mode.value,
            "confidence_multiplier": self.threshold_mode.confidence_multiplier,
            "flags": list(self.flags),
            "weights": self.weights.as_dict(),
        }


def merge_breakdown(breakdown: dict[str, int], scores: dict[str, int]) -> None:
    """Add ``scores`` into ``breakdown``; colliding keys sum their points."""
    for key, points in scores.items():
        if key in breakdown:
            logger.warning(f"Breakdown key collision on {key}: {breakdown[key]} + {points}")
            breakdown[key] += points
        else:
            breakdown[key] = points


def _short(value: Optional[str]) -> str:
    return (value or "")[:8]


class RiskEngine:
    """Computes risk scores from signals and submission history."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        validator: PayloadValidator,
        vpn_detector: VpnDetector,
        weight_store: WeightStore,
        traffic_mode: str = "auto",
        daily_limit: int = 3,
    ):
        self.gateway = gateway
        self.validator = validator
        self.vpn_detector = vpn_detector
        self.weight_store = weight_store
        self.traffic_mode = traffic_mode
        self.daily_limit = daily_limit

    async def calculate_risk(
        self,
        payload: Optional[SignalPayload],
        context: RequestContext,
    ) -> RiskResult:
        now = context.received_at
        device_type = payload.effective_device_type if payload else DeviceType.UNKNOWN
        fingerprint_hash = (payload.fingerprint_hash if payload else None) or ""
        weights = await self._load_weights()

        precheck = await self.precheck(context.device_cookie, context.ip_address, fingerprint_hash, now)
        if precheck.instant_allow:
            return RiskResult(
                score=0,
                breakdown={"whitelisted": 0},
                device_type=device_type,
                flags=["whitelisted"],
                weights=weights,
            )
        if precheck.instant_block:
            reason = precheck.reason or "penalized"
            return RiskResult(
                score=MAX_SCORE,
                breakdown={reason: MAX_SCORE},
                device_type=device_type,
                flags=[reason],
                weights=weights,
            )

        breakdown: dict[str, int] = {}

        validation = await self.validator.validate(payload, context)
        if validation.honeypot_triggered:
            return RiskResult(
                score=MAX_SCORE,
                breakdown={"honeypot_triggered": MAX_SCORE},
                device_type=device_type,
                flags=list(validation.flags),
                weights=weights,
            )
        if validation.score > 0:
            breakdown["server_validation"] = validation.score

        threshold_mode = await self.get_threshold_mode(now)

        hourly_count = 0
        if fingerprint_hash:
            hourly_count = await self._fingerprint_count(fingerprint_hash, now - timedelta(hours=1), now)

        if payload is not None:
            merge_breakdown(breakdown, await self.analyze_fingerprint(payload, hourly_count, now))
            merge_breakdown(breakdown, self.analyze_behavior(payload, threshold_mode))
        merge_breakdown(breakdown, await self.analyze_ip_reputation(context.ip_address, now))
        merge_breakdown(
            breakdown,
            await self.analyze_frequency(fingerprint_hash, context.ip_address, hourly_count, now),
        )

        if "timezone_mismatch" in validation.flags and any(k in breakdown for k in ESCALATION_TRIGGERS):
            merge_breakdown(breakdown, {"timezone_escalated": POINTS["timezone_escalated"]})

        score = min(sum(breakdown.values()), MAX_SCORE)
        return RiskResult(
            score=score,
            breakdown=breakdown,
            device_type=device_type,
            threshold_mode=threshold_mode,
            flags=list(validation.flags),
            weights=weights,
        )

    async def precheck(
        self,
        device_cookie: Optional[str],
        ip_address: str,
        fingerprint_hash: str,
        now: datetime,
    ) -> PrecheckResult:
        """
        Instant allow/block decision from cheap lookups.

        The daily limit is checked before the whitelist: a trusted device
        that exceeds the cap is still blocked.
        """
        try:
            if self.daily_limit > 0:
                if device_cookie:
                    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
                    count = await self.gateway.count_submissions(
                        device_cookie=device_cookie, since=day_start, until=now
                    )
                else:
                    count = MISSING_COOKIE_COUNT
                if count >= self.daily_limit:
                    logger.warning(
                        f"Daily limit exceeded - device: {_short(device_cookie)}, "
                        f"count: {count}, limit: {self.daily_limit}"
                    )
                    return PrecheckResult(instant_block=True, reason="daily_limit_exceeded")

            if device_cookie:
                entry = await self.gateway.get_whitelist_entry(device_cookie)
                if entry is not None and entry.is_active(now):
                    return PrecheckResult(instant_allow=True, reason="whitelisted")

            if await self.gateway.is_penalized(TargetType.FINGERPRINT, fingerprint_hash, now) or \
                    await self.gateway.is_penalized(TargetType.IP, ip_address, now):
                return PrecheckResult(instant_block=True, reason="penalized")
        except PersistenceError as e:
            logger.warning(f"Pre-check unavailable, falling through to full scoring: {e}")
            return PrecheckResult()

        return PrecheckResult()

    async def get_threshold_mode(self, now: datetime) -> ThresholdMode:
        if self.traffic_mode != "auto":
            return ThresholdMode(self.traffic_mode)

        try:
            volume = await self.gateway.count_submissions(since=now - timedelta(hours=24), until=now)
        except PersistenceError as e:
            logger.warning(f"Daily volume unavailable, using normal thresholds: {e}")
            return ThresholdMode.NORMAL

        if volume < LENIENT_BELOW:
            return ThresholdMode.LENIENT
        if volume <= STRICT_ABOVE:
            return ThresholdMode.NORMAL
        return ThresholdMode.STRICT

    async def analyze_fingerprint(
        self,
        payload: SignalPayload,
        hourly_count: int,
        now: datetime,
    ) -> dict[str, int]:
        """Hash reuse within the hour, split by whether stable traits agree."""
        if not payload.fingerprint_hash or hourly_count <= MAX_FP_PER_HOUR:
            return {}

        try:
            history = await self.gateway.fingerprint_history(
                payload.fingerprint_hash,
                limit=hourly_count,
                since=now - timedelta(hours=1),
                until=now,
            )
        except PersistenceError as e:
            logger.warning(f"Fingerprint history unavailable: {e}")
            return {}

        current = stable_traits(payload.snapshot())
        consistent = all(self._traits_agree(current, stable_traits(r.payload)) for r in history)
        if consistent:
            return {"fingerprint_reuse": POINTS["fingerprint_reuse"]}
        # Same hash, different device traits: likely a hash collision
        return {"fingerprint_reuse": POINTS["fingerprint_collision"]}

    @staticmethod
    def _traits_agree(current: dict[str, Any], previous: dict[str, Any]) -> bool:
        for name, value in current.items():
            other = previous.get(name)
            if value is not None and other is not None and value != other:
                return False
        return True

    def analyze_behavior(self, payload: SignalPayload, threshold_mode: ThresholdMode) -> dict[str, int]:
        scores: dict[str, int] = {}
        device_type = payload.effective_device_type
        total_time = payload.total_time or 0

        if payload.time_per_field is not None:
            threshold = FAST_FILL_MS_MOBILE if device_type == DeviceType.MOBILE else FAST_FILL_MS_DEFAULT
            if payload.time_per_field < threshold:
                scores["fast_fill"] = POINTS["fast_fill"]

        if device_type == DeviceType.DESKTOP:
            if not payload.mouse_events and total_time < NO_MOUSE_MAX_SECONDS:
                scores["no_mouse"] = POINTS["no_mouse"]
            if payload.typing_mechanical:
                scores["mechanical_typing"] = POINTS["mechanical_typing"]

        if device_type in (DeviceType.MOBILE, DeviceType.TABLET):
            if not payload.touch_events and total_time < NO_TOUCH_MAX_SECONDS:
                scores["no_touch"] = POINTS["no_touch"]
            if payload.touch_speed is not None and payload.touch_speed > MAX_TOUCH_SPEED:
                scores["impossible_touch"] = POINTS["impossible_touch"]

        if total_time > TOO_SLOW_SECONDS:
            scores["too_slow"] = POINTS["too_slow"]

        if payload.typing_speed is not None and payload.typing_speed > MAX_TYPING_WPM:
            scores["superhuman_typing"] = POINTS["superhuman_typing"]

        return scores

    async def analyze_ip_reputation(self, ip_address: str, now: datetime) -> dict[str, int]:
        scores: dict[str, int] = {}

        try:
            distinct = await self.gateway.count_distinct_fingerprints_for_ip(
                ip_address, since=now - timedelta(hours=24), until=now
            )
            if distinct > MAX_FINGERPRINTS_PER_IP:
                scores["ip_multi_fp"] = POINTS["ip_multi_fp"]
        except PersistenceError as e:
            logger.warning(f"Fingerprints-per-IP count unavailable: {e}")

        vpn = await self.vpn_detector.check(ip_address)
        if vpn.is_vpn and not self.vpn_detector.is_whitelisted(ip_address):
            scores["vpn_detected"] = POINTS["vpn_detected"]

        return scores

    async def analyze_frequency(
        self,
        fingerprint_hash: str,
        ip_address: str,
        hourly_count: int,
        now: datetime,
    ) -> dict[str, int]:
        scores: dict[str, int] = {}

        if fingerprint_hash:
            if hourly_count > MAX_FP_PER_HOUR:
                scores["frequency_fp_hour"] = POINTS["frequency_fp_hour"]

            if self.daily_limit > 0:
                daily_count = await self._fingerprint_count(fingerprint_hash, now - timedelta(hours=24), now)
                if daily_count > self.daily_limit:
                    scores["daily_limit_exceeded"] = POINTS["daily_limit_exceeded"]
                    if "frequency_fp_hour" in scores:
                        scores["frequency_fp_day"] = POINTS["frequency_fp_day"]

        try:
            ip_count = await self.gateway.count_submissions(
                ip_address=ip_address, since=now - timedelta(hours=1), until=now
            )
            if ip_count > MAX_IP_PER_HOUR:
                scores["frequency_ip"] = POINTS["frequency_ip"]
        except PersistenceError as e:
            logger.warning(f"IP frequency unavailable: {e}")

        return scores

    async def _fingerprint_count(self, fingerprint_hash: str, since: datetime, until: datetime) -> int:
        try:
            frequency = await self.gateway.get_fingerprint_frequency(fingerprint_hash, since, until)
        except PersistenceError as e:
            logger.warning(f"Fingerprint frequency unavailable for {_short(fingerprint_hash)}: {e}")
            return 0
        return frequency.count

    async def _load_weights(self) -> WeightSet:
        try:
            return await self.weight_store.get_current_weights()
        except PersistenceError as e:
            logger.warning(f"Weight set unavailable, reporting defaults: {e}")
            return DEFAULT_WEIGHTS
