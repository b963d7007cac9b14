"""Explicit wiring of the weighting and governance pipeline.

Every component is constructed once by GovernancePipeline.build and shared
by the callers that need it. A database binding selects the durable
backends; without one everything runs on the in-memory rings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from stratagem.analysis.calibration import ThresholdCalibrator
from stratagem.analysis.trends import TrendAnalyzer
from stratagem.config import PipelineConfig
from stratagem.db.d1 import D1Client
from stratagem.governance.acks import AckService, D1AckBackend
from stratagem.governance.alert_store import AlertStore, D1AlertBackend
from stratagem.governance.engine import GovernanceAlertEngine
from stratagem.governance.escalation import D1EscalationBackend, EscalationService
from stratagem.governance.query import AlertQueryService
from stratagem.governance.suppression import D1SuppressionBackend, SuppressionService
from stratagem.notifications.discord import DiscordWebhookClient
from stratagem.snapshots.backends import D1SnapshotBackend
from stratagem.snapshots.scheduler import AutoSnapshotResult, AutoSnapshotScheduler
from stratagem.snapshots.store import SnapshotStore
from stratagem.weighting.repository import D1PerformanceRepository
from stratagem.weighting.tracker import StrategyPerformanceTracker

logger = logging.getLogger(__name__)


@dataclass
class DecisionOutcome:
    updated: bool
    auto_snapshot: AutoSnapshotResult


@dataclass
class GovernancePipeline:
    config: PipelineConfig
    tracker: StrategyPerformanceTracker
    snapshots: SnapshotStore
    scheduler: AutoSnapshotScheduler
    analyzer: TrendAnalyzer
    calibrator: ThresholdCalibrator
    alert_store: AlertStore
    engine: GovernanceAlertEngine
    acks: AckService
    escalation: EscalationService
    query: AlertQueryService
    suppression: SuppressionService | None = None
    notifier: DiscordWebhookClient | None = None
    db: D1Client | None = None

    @classmethod
    async def build(cls, config: PipelineConfig | None = None, binding: Any = None) -> GovernancePipeline:
        """Construct all components; with a binding, apply the schema and hydrate the tracker."""
        config = config or PipelineConfig()
        db = D1Client(binding) if binding is not None else None
        if db is not None:
            await db.ensure_schema()

        tracker = StrategyPerformanceTracker(
            config.tracker,
            repository=D1PerformanceRepository(db) if db else None,
        )
        if db is not None:
            await tracker.hydrate()

        snapshots = SnapshotStore(
            tracker,
            backend=D1SnapshotBackend(db) if db else None,
            memory_capacity=config.snapshots.memory_capacity,
        )
        analyzer = TrendAnalyzer(snapshots, config.trends)
        suppression = None
        if config.suppression.enabled:
            suppression = SuppressionService(
                config.suppression,
                backend=D1SuppressionBackend(db) if db else None,
            )
            if db is not None:
                await suppression.load()
        alert_store = AlertStore(
            backend=D1AlertBackend(db) if db else None,
            cooldown_ms=config.governance.cooldown_ms,
            capacity=config.governance.alert_capacity,
            suppression=suppression,
        )
        acks = AckService(alert_store, backend=D1AckBackend(db) if db else None)

        webhook_url = config.escalation.discord_webhook_url
        notifier = DiscordWebhookClient(webhook_url) if webhook_url else None
        escalation = EscalationService(
            alert_store,
            acks,
            backend=D1EscalationBackend(db) if db else None,
            config=config.escalation,
            notifier=notifier,
        )
        acks.escalation = escalation

        pipeline = cls(
            config=config,
            tracker=tracker,
            snapshots=snapshots,
            scheduler=AutoSnapshotScheduler(snapshots, config.snapshots),
            analyzer=analyzer,
            calibrator=ThresholdCalibrator(analyzer, config.calibration),
            alert_store=alert_store,
            engine=GovernanceAlertEngine(analyzer, alert_store, config.governance),
            acks=acks,
            escalation=escalation,
            query=AlertQueryService(alert_store, acks, escalation, config.governance, suppression=suppression),
            suppression=suppression,
            notifier=notifier,
            db=db,
        )
        logger.info(f"Governance pipeline ready (storage={'db' if db else 'memory'})")
        return pipeline

    async def record_decision(
        self,
        strategy: str,
        effectiveness: float | None = None,
        timestamp: datetime | None = None,
    ) -> DecisionOutcome:
        """Ingest one decision, count it and capture a snapshot if one is due."""
        updated = await self.tracker.update_on_decision(strategy, effectiveness, timestamp)
        if updated:
            self.scheduler.note_decision()
        result = await self.scheduler.maybe_auto_snapshot(reason="decision")
        return DecisionOutcome(updated=updated, auto_snapshot=result)

    async def close(self) -> None:
        if self.notifier is not None:
            await self.notifier.close()
