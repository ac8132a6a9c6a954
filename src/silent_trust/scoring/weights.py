"""
Weight store and trainer for the four risk factors.

Learns per-factor influence percentages from the submission log:

- Ground truth: a record is spam when it was blocked (drop, soft or
  hard penalty) and its mail was not sent.
- A factor "contributed" to a record when a breakdown key matching one
  of its patterns carries positive points.
- effectiveness = precision * participation_rate, normalized to 100.

Only one weight set is persisted. Training replaces it; reset deletes it
so the defaults apply again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from silent_trust.db.gateway import PersistenceGateway
from silent_trust.models import (
    DEFAULT_WEIGHTS,
    FACTOR_NAMES,
    Action,
    SubmissionRecord,
    WeightSet,
)

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 500
DEFAULT_MIN_REQUIRED = 100

FACTOR_PATTERNS: dict[str, tuple[str, ...]] = {
    "fingerprint": ("fingerprint_", "device_", "cookie_"),
    "behavior": ("behavior_", "typing_", "time_per_field"),
    "ip": ("ip_", "vpn_", "country_"),
    "frequency": ("frequency_", "rate_", "daily_limit"),
}

SPAM_ACTIONS = frozenset({Action.DROP, Action.SOFT_PENALTY, Action.HARD_PENALTY})


class TrainingError(Exception):
    """Training could not produce a weight set."""


class InsufficientTrainingData(TrainingError):
    """Fewer submissions in the log than training requires."""

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(
            f"Need at least {required} submissions for training. Current: {available}"
        )


class InvalidWeightSet(ValueError):
    """Weights are not four non-negative integers summing to 100."""


@dataclass
class TrainingResult:
    """Outcome of a training run."""

    weights: WeightSet
    sample_size: int
    effectiveness: dict[str, float] = field(default_factory=dict)
    fallback: bool = False
    persisted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "weights": self.weights.as_dict(),
            "trained_at": self.weights.trained_at.isoformat() if self.weights.trained_at else None,
            "sample_size": self.sample_size,
            "effectiveness": {k: round(v, 4) for k, v in self.effectiveness.items()},
            "fallback": self.fallback,
            "persisted": self.persisted,
        }


def factor_contributed(breakdown: dict[str, Any], factor: str) -> bool:
    patterns = FACTOR_PATTERNS[factor]
    for key, value in breakdown.items():
        if not isinstance(value, (int, float)) or value <= 0:
            continue
        if any(pattern in key for pattern in patterns):
            return True
    return False


def is_spam(record: SubmissionRecord) -> bool:
    return Action(record.action) in SPAM_ACTIONS and not record.email_sent


def factor_effectiveness(records: list[SubmissionRecord], factor: str) -> float:
    """Precision of the factor weighted by how often it participated."""
    if not records:
        return 0.0

    true_positives = 0
    false_positives = 0
    for record in records:
        if not record.risk_breakdown:
            continue
        if not factor_contributed(record.risk_breakdown, factor):
            continue
        if is_spam(record):
            true_positives += 1
        else:
            false_positives += 1

    contributed = true_positives + false_positives
    if contributed == 0:
        return 0.0

    precision = true_positives / contributed
    participation = contributed / len(records)
    return precision * participation


def normalize_weights(effectiveness: dict[str, float]) -> Optional[dict[str, int]]:
    """
    Scale effectiveness scores to integer percentages summing to 100.

    Rounds half-up; the rounding remainder is applied to the fingerprint
    bucket. Returns None when the total effectiveness is zero.
    """
    total = sum(effectiveness.values())
    if total <= 0:
        return None

    weights = {
        name: int(
            (Decimal(str(effectiveness[name])) / Decimal(str(total)) * 100).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )
        for name in FACTOR_NAMES
    }

    remainder = 100 - sum(weights.values())
    weights["fingerprint"] += remainder
    if weights["fingerprint"] < 0:
        # Fingerprint cannot absorb the whole correction; take the rest from the largest bucket
        deficit = -weights["fingerprint"]
        weights["fingerprint"] = 0
        largest = max(FACTOR_NAMES, key=lambda n: weights[n])
        weights[largest] -= deficit

    return weights


def validate_weights(weights: dict[str, Any]) -> dict[str, int]:
    missing = [name for name in FACTOR_NAMES if name not in weights]
    if missing:
        raise InvalidWeightSet(f"Missing factors: {missing}")

    values = {}
    for name in FACTOR_NAMES:
        value = weights[name]
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidWeightSet(f"Weight for {name} must be an integer, got {value!r}")
        if value < 0:
            raise InvalidWeightSet(f"Weight for {name} must be non-negative")
        values[name] = value

    if sum(values.values()) != 100:
        raise InvalidWeightSet(f"Weights must sum to 100, got {sum(values.values())}")
    return values


class WeightStore:
    """Loads, validates, trains and persists the current weight set."""

    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway

    async def get_current_weights(self) -> WeightSet:
        """The learned set when one is stored, otherwise the defaults."""
        stored = await self.gateway.get_weight_set()
        return stored or DEFAULT_WEIGHTS

    async def save_weights(
        self,
        weights: dict[str, Any],
        trained_at: Optional[datetime] = None,
    ) -> WeightSet:
        values = validate_weights(weights)
        weight_set = WeightSet(trained_at=trained_at or datetime.utcnow(), **values)
        await self.gateway.save_weight_set(weight_set)
        logger.info(f"Saved weight set: {values}")
        return weight_set

    async def reset_to_defaults(self) -> None:
        deleted = await self.gateway.delete_weight_set()
        if deleted:
            logger.info("Learned weights deleted, defaults restored")

    async def get_training_info(self) -> dict[str, Any]:
        stored = await self.gateway.get_weight_set()
        if stored is None:
            return {
                "trained": False,
                "using_defaults": True,
                "weights": DEFAULT_WEIGHTS.as_dict(),
            }
        return {
            "trained": True,
            "using_defaults": False,
            "trained_at": stored.trained_at.isoformat() if stored.trained_at else None,
            "weights": stored.as_dict(),
        }

    async def can_train(self, min_required: int = DEFAULT_MIN_REQUIRED) -> bool:
        return await self.gateway.count_submissions() >= min_required

    async def calculate_optimal_weights(
        self,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        min_required: int = DEFAULT_MIN_REQUIRED,
        now: Optional[datetime] = None,
    ) -> TrainingResult:
        """
        Compute weights from the most recent ``sample_size`` records.

        Raises:
            InsufficientTrainingData: Fewer than ``min_required`` records exist.
            TrainingError: No sampled record carries a risk breakdown.
        """
        available = await self.gateway.count_submissions()
        if available < min_required:
            raise InsufficientTrainingData(available, min_required)

        records = await self.gateway.recent_submissions_with_breakdown(sample_size)
        if not records:
            raise TrainingError("No training data available")

        effectiveness = {name: factor_effectiveness(records, name) for name in FACTOR_NAMES}
        normalized = normalize_weights(effectiveness)

        if normalized is None:
            logger.warning(
                f"No factor showed any effectiveness over {len(records)} records, keeping defaults"
            )
            return TrainingResult(
                weights=DEFAULT_WEIGHTS,
                sample_size=len(records),
                effectiveness=effectiveness,
                fallback=True,
            )

        weights = WeightSet(trained_at=now or datetime.utcnow(), **normalized)
        return TrainingResult(weights=weights, sample_size=len(records), effectiveness=effectiveness)

    async def train(
        self,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        min_required: int = DEFAULT_MIN_REQUIRED,
        now: Optional[datetime] = None,
    ) -> TrainingResult:
        """Calculate optimal weights and persist them unless training fell back."""
        result = await self.calculate_optimal_weights(sample_size, min_required, now)
        if result.fallback:
            return result

        await self.gateway.save_weight_set(result.weights)
        result.persisted = True
        logger.info(
            f"Trained weights from {result.sample_size} records: {result.weights.as_dict()}"
        )
        return result
