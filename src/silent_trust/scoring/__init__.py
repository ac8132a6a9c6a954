"""
Scoring for Silent Trust.

Validator, risk engine and the trainable weight store.
"""

from silent_trust.scoring.risk_engine import PrecheckResult, RiskEngine, RiskResult
from silent_trust.scoring.validator import PayloadValidator, ValidationResult, honeypot_field_name
from silent_trust.scoring.weights import (
    InsufficientTrainingData,
    InvalidWeightSet,
    TrainingError,
    TrainingResult,
    WeightStore,
)

__all__ = [
    "InsufficientTrainingData",
    "InvalidWeightSet",
    "PayloadValidator",
    "PrecheckResult",
    "RiskEngine",
    "RiskResult",
    "TrainingError",
    "TrainingResult",
    "ValidationResult",
    "WeightStore",
    "honeypot_field_name",
]
