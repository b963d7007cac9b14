"""Scheduled maintenance jobs.

handle_snapshot_purge trims snapshot and alert history. handle_governance_cycle
calibrates thresholds, evaluates and persists alerts, sweeps for stale
critical alerts and re-evaluates alert suppression. run_periodic drives either
job on a jittered interval; run_scheduled_jobs runs both at their configured
cadence.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from stratagem.notifications import heartbeat

if TYPE_CHECKING:
    from stratagem.pipeline import GovernancePipeline

logger = logging.getLogger(__name__)


def jittered_delay(interval_s: float, jitter: float, rng: random.Random | None = None) -> float:
    """interval * (1 +/- jitter * U), U uniform in [0, 1)."""
    rng = rng or random
    spread = interval_s * jitter * rng.random()
    return max(0.0, interval_s + spread if rng.random() < 0.5 else interval_s - spread)


async def handle_snapshot_purge(pipeline: GovernancePipeline) -> dict:
    """Purge snapshots past the retention window, then old alerts."""
    heartbeat_url = pipeline.config.jobs.heartbeat_url
    await heartbeat.ping_heartbeat_start(heartbeat_url, "snapshot_purge")

    job_success = False
    try:
        days = pipeline.config.snapshots.purge_days
        snapshots = await pipeline.snapshots.purge_old_snapshots(older_than_days=days) if days else None
        alerts = await pipeline.alert_store.purge_older_than(pipeline.config.jobs.alert_retention_days)
        job_success = True
        return {
            "snapshots_removed": snapshots.removed if snapshots else 0,
            "snapshot_mode": snapshots.mode if snapshots else None,
            "alerts_removed": alerts,
        }
    finally:
        await heartbeat.ping_heartbeat(heartbeat_url, "snapshot_purge", success=job_success)


async def handle_governance_cycle(pipeline: GovernancePipeline, context: dict | None = None) -> dict:
    """Calibrate, evaluate with persistence and run the escalation sweep."""
    heartbeat_url = pipeline.config.jobs.heartbeat_url
    await heartbeat.ping_heartbeat_start(heartbeat_url, "governance_cycle")

    job_success = False
    try:
        calibration = await pipeline.calibrator.compute_adaptive_thresholds()
        report = await pipeline.engine.evaluate_governance_with_persistence(
            adaptive_thresholds=calibration.thresholds,
            context=context or {"source": "scheduled"},
        )
        sweep = await pipeline.escalation.run_sweep()
        suppression = None
        if pipeline.suppression is not None:
            signals = await pipeline.suppression.collect_signals(
                pipeline.alert_store, pipeline.acks, pipeline.escalation
            )
            suppression = await pipeline.suppression.evaluate(signals)
        job_success = True

        persistence = report.persistence
        logger.info(
            f"Governance cycle: {report.total_alerts} alerts detected, "
            f"{persistence.added if persistence else 0} persisted, {len(sweep.escalated)} escalated"
        )
        return {
            "fallback_thresholds": calibration.thresholds.fallback,
            "alerts_detected": report.total_alerts,
            "alerts_persisted": persistence.added if persistence else 0,
            "alerts_suppressed": persistence.suppressed if persistence else 0,
            "escalation": sweep.to_dict(),
            "suppression": suppression.to_dict() if suppression else None,
        }
    finally:
        await heartbeat.ping_heartbeat(heartbeat_url, "governance_cycle", success=job_success)


async def run_periodic(
    job: Callable[[], Awaitable[object]],
    interval_s: float,
    jitter: float = 0.1,
    iterations: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Run `job` forever (or `iterations` times), sleeping a jittered interval between runs.

    A failing run is logged and the loop continues; cancellation stops it.
    """
    count = 0
    while iterations is None or count < iterations:
        name = getattr(job, "__name__", "job")
        try:
            await job()
        except Exception as e:
            logger.error(f"Scheduled job {name} failed: {e}")
        count += 1
        if iterations is not None and count >= iterations:
            break
        await sleep(jittered_delay(interval_s, jitter))


async def run_scheduled_jobs(
    pipeline: GovernancePipeline,
    iterations: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Run the purge and governance jobs concurrently at their configured intervals."""
    jobs = pipeline.config.jobs

    async def snapshot_purge():
        return await handle_snapshot_purge(pipeline)

    async def governance_cycle():
        return await handle_governance_cycle(pipeline)

    logger.info(
        f"Starting scheduled jobs: purge every {jobs.purge_interval_seconds}s, "
        f"governance every {jobs.governance_interval_seconds}s"
    )
    await asyncio.gather(
        run_periodic(snapshot_purge, jobs.purge_interval_seconds, jobs.jitter, iterations, sleep),
        run_periodic(governance_cycle, jobs.governance_interval_seconds, jobs.jitter, iterations, sleep),
    )
