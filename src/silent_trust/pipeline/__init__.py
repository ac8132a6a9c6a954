"""
Deferred processing for Silent Trust.

- Two-tier async gate (quick check + queued full analysis)
- Guarded maintenance jobs
"""

from silent_trust.pipeline.async_gate import AsyncGate, QuickCheckResult
from silent_trust.pipeline.jobs import (
    InProcessJobGuard,
    JobGuard,
    MaintenanceJob,
    MaintenanceScheduler,
    RedisJobGuard,
)

__all__ = [
    "AsyncGate",
    "InProcessJobGuard",
    "JobGuard",
    "MaintenanceJob",
    "MaintenanceScheduler",
    "QuickCheckResult",
    "RedisJobGuard",
]
