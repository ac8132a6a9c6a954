"""
Wiring of the Silent Trust object graph.

Everything is built from ``Settings`` plus the externally owned
resources (persistence gateway, lookup provider, task scheduler, mail
transport, optional Redis client).
"""

import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from silent_trust.config import Settings
from silent_trust.db.gateway import PersistenceGateway
from silent_trust.decision.engine import DecisionEngine
from silent_trust.decision.mail import DelayedMailQueue, MailTransport
from silent_trust.interceptor import SubmissionInterceptor
from silent_trust.pipeline.async_gate import AsyncGate
from silent_trust.pipeline.jobs import InProcessJobGuard, MaintenanceScheduler, RedisJobGuard
from silent_trust.reporting import Reporter
from silent_trust.reputation.lookup import NullReputationLookup, ReputationLookup
from silent_trust.reputation.vpn import VpnDetector
from silent_trust.scoring.risk_engine import RiskEngine
from silent_trust.scoring.validator import PayloadValidator
from silent_trust.scoring.weights import WeightStore
from silent_trust.tasks import TaskScheduler

logger = logging.getLogger(__name__)


@dataclass
class SilentTrustServices:
    gateway: PersistenceGateway
    lookup: ReputationLookup
    scheduler: TaskScheduler
    weight_store: WeightStore
    validator: PayloadValidator
    vpn_detector: VpnDetector
    risk_engine: RiskEngine
    mail_queue: DelayedMailQueue
    decision_engine: DecisionEngine
    async_gate: AsyncGate
    reporter: Reporter
    maintenance: MaintenanceScheduler
    interceptor: SubmissionInterceptor


def build_services(
    settings: Settings,
    gateway: PersistenceGateway,
    scheduler: TaskScheduler,
    lookup: Optional[ReputationLookup] = None,
    transport: Optional[MailTransport] = None,
    redis_client: Optional[redis.Redis] = None,
) -> SilentTrustServices:
    lookup = lookup or NullReputationLookup()

    weight_store = WeightStore(gateway)
    validator = PayloadValidator(lookup, honeypot_enabled=settings.honeypot_enabled)
    vpn_detector = VpnDetector.from_settings(lookup, settings)
    risk_engine = RiskEngine(
        gateway,
        validator,
        vpn_detector,
        weight_store,
        traffic_mode=settings.traffic_mode,
        daily_limit=settings.daily_limit,
    )
    mail_queue = DelayedMailQueue(
        gateway,
        scheduler,
        transport=transport,
        delay_min_seconds=settings.mail_delay_min_seconds,
        delay_max_seconds=settings.mail_delay_max_seconds,
        fallback_after_seconds=settings.mail_fallback_after_seconds,
    )
    decision_engine = DecisionEngine(gateway, mail_queue, penalty_ttl_hours=settings.penalty_ttl_hours)
    async_gate = AsyncGate(
        gateway,
        risk_engine,
        scheduler,
        enabled=settings.async_mode_enabled,
        retention_minutes=settings.queue_retention_minutes,
        lease_minutes=settings.queue_lease_minutes,
    )
    reporter = Reporter(
        gateway,
        spike_threshold_percent=settings.drop_spike_threshold_percent,
        spike_min_submissions=settings.drop_spike_min_submissions,
        transport=transport,
        recipients=settings.report_recipients,
    )
    guard = RedisJobGuard(redis_client) if redis_client is not None else InProcessJobGuard()
    maintenance = MaintenanceScheduler(
        gateway, async_gate, mail_queue, weight_store, reporter, guard=guard
    )
    interceptor = SubmissionInterceptor(
        gateway,
        lookup,
        validator,
        risk_engine,
        decision_engine,
        async_gate,
        fail_open=settings.fail_open,
    )

    if transport is None:
        logger.warning("No mail transport configured; delayed mail will be recorded as failed")

    return SilentTrustServices(
        gateway=gateway,
        lookup=lookup,
        scheduler=scheduler,
        weight_store=weight_store,
        validator=validator,
        vpn_detector=vpn_detector,
        risk_engine=risk_engine,
        mail_queue=mail_queue,
        decision_engine=decision_engine,
        async_gate=async_gate,
        reporter=reporter,
        maintenance=maintenance,
        interceptor=interceptor,
    )
