"""Tests for scheduled maintenance jobs."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from stratagem.config import PipelineConfig
from stratagem.handlers.jobs import (
    handle_governance_cycle,
    handle_snapshot_purge,
    jittered_delay,
    run_periodic,
    run_scheduled_jobs,
)
from stratagem.pipeline import GovernancePipeline
from stratagem.snapshots.store import PurgeResult


@pytest.fixture
def mock_pipeline():
    """Pipeline double with a heartbeat URL configured."""
    pipeline = MagicMock()
    pipeline.config = PipelineConfig()
    pipeline.config.jobs.heartbeat_url = "https://hc-ping.com/abc"
    pipeline.snapshots.purge_old_snapshots = AsyncMock(return_value=PurgeResult(removed=8, mode="db"))
    pipeline.alert_store.purge_older_than = AsyncMock(return_value=3)
    return pipeline


@pytest.fixture
def heartbeat_calls():
    with (
        patch("stratagem.notifications.heartbeat.ping_heartbeat_start", new_callable=AsyncMock) as start,
        patch("stratagem.notifications.heartbeat.ping_heartbeat", new_callable=AsyncMock) as done,
    ):
        yield start, done


class TestJitteredDelay:
    """Tests for jittered_delay()."""

    def test_within_bounds(self):
        rng = random.Random(7)

        delays = [jittered_delay(100.0, 0.1, rng) for _ in range(200)]

        assert all(90.0 <= d <= 110.0 for d in delays)
        assert len(set(delays)) > 1

    def test_direction(self):
        rng = MagicMock()
        rng.random.side_effect = [0.5, 0.2, 0.5, 0.9]

        assert jittered_delay(100.0, 0.1, rng) == pytest.approx(105.0)
        assert jittered_delay(100.0, 0.1, rng) == pytest.approx(95.0)

    def test_zero_jitter(self):
        assert jittered_delay(60.0, 0.0) == 60.0


class TestHandleSnapshotPurge:
    """Tests for handle_snapshot_purge()."""

    @pytest.mark.asyncio
    async def test_purges_snapshots_and_alerts(self, mock_pipeline, heartbeat_calls):
        start, done = heartbeat_calls

        result = await handle_snapshot_purge(mock_pipeline)

        assert result == {"snapshots_removed": 8, "snapshot_mode": "db", "alerts_removed": 3}
        mock_pipeline.snapshots.purge_old_snapshots.assert_awaited_once_with(older_than_days=30.0)
        mock_pipeline.alert_store.purge_older_than.assert_awaited_once_with(30.0)
        start.assert_awaited_once_with("https://hc-ping.com/abc", "snapshot_purge")
        done.assert_awaited_once_with("https://hc-ping.com/abc", "snapshot_purge", success=True)

    @pytest.mark.asyncio
    async def test_snapshot_purge_disabled(self, mock_pipeline, heartbeat_calls):
        mock_pipeline.config.snapshots.purge_days = None

        result = await handle_snapshot_purge(mock_pipeline)

        mock_pipeline.snapshots.purge_old_snapshots.assert_not_awaited()
        assert result["snapshots_removed"] == 0
        assert result["snapshot_mode"] is None

    @pytest.mark.asyncio
    async def test_failure_reports_failed_heartbeat(self, mock_pipeline, heartbeat_calls):
        _, done = heartbeat_calls
        mock_pipeline.alert_store.purge_older_than.side_effect = RuntimeError("D1 unavailable")

        with pytest.raises(RuntimeError):
            await handle_snapshot_purge(mock_pipeline)

        done.assert_awaited_once_with("https://hc-ping.com/abc", "snapshot_purge", success=False)


class TestHandleGovernanceCycle:
    """Tests for handle_governance_cycle() over a memory pipeline."""

    @pytest.mark.asyncio
    async def test_cycle_persists_then_suppresses(self, rows_factory):
        pipeline = await GovernancePipeline.build()
        rising = [0.20 + 0.004 * i for i in range(20)]
        await pipeline.snapshots.backend.insert_batch(rows_factory(rising, strategy="STEADY"))

        first = await handle_governance_cycle(pipeline)
        second = await handle_governance_cycle(pipeline, context={"source": "manual"})

        assert first["fallback_thresholds"] is False
        assert first["alerts_detected"] >= 1
        assert first["alerts_persisted"] == first["alerts_detected"]
        assert second["alerts_persisted"] == 0
        assert second["alerts_suppressed"] == second["alerts_detected"]
        assert first["escalation"]["escalated"] == []
        assert first["suppression"]["evaluated"] == first["alerts_detected"]
        assert second["suppression"]["suppressed"] == []

        rows = await pipeline.query.list_alerts(include_context=True)
        assert {item["context"]["source"] for item in rows.items} == {"scheduled"}

    @pytest.mark.asyncio
    async def test_empty_history_uses_fallback(self):
        pipeline = await GovernancePipeline.build()

        result = await handle_governance_cycle(pipeline)

        assert result["fallback_thresholds"] is True
        assert result["alerts_detected"] == 0
        assert result["escalation"]["candidates"] == 0
        assert result["suppression"] == {"evaluated": 0, "suppressed": [], "transitions": []}

    @pytest.mark.asyncio
    async def test_suppression_disabled(self):
        config = PipelineConfig()
        config.suppression.enabled = False
        pipeline = await GovernancePipeline.build(config)

        result = await handle_governance_cycle(pipeline)

        assert pipeline.suppression is None
        assert result["suppression"] is None


class TestRunPeriodic:
    """Tests for run_periodic()."""

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_loop(self):
        job = AsyncMock(side_effect=[RuntimeError("boom"), None, None])
        job.__name__ = "governance_cycle"
        sleep = AsyncMock()

        await run_periodic(job, interval_s=60.0, jitter=0.1, iterations=3, sleep=sleep)

        assert job.await_count == 3
        assert sleep.await_count == 2
        assert all(54.0 <= c.args[0] <= 66.0 for c in sleep.await_args_list)


class TestRunScheduledJobs:
    """Tests for run_scheduled_jobs()."""

    @pytest.mark.asyncio
    async def test_each_job_runs_on_its_own_interval(self):
        pipeline = MagicMock()
        pipeline.config = PipelineConfig()
        pipeline.config.jobs.purge_interval_seconds = 100.0
        pipeline.config.jobs.governance_interval_seconds = 10.0
        pipeline.config.jobs.jitter = 0.0
        sleep = AsyncMock()

        with (
            patch("stratagem.handlers.jobs.handle_snapshot_purge", new_callable=AsyncMock) as purge,
            patch("stratagem.handlers.jobs.handle_governance_cycle", new_callable=AsyncMock) as cycle,
        ):
            await run_scheduled_jobs(pipeline, iterations=2, sleep=sleep)

        assert purge.await_count == 2
        assert cycle.await_count == 2
        purge.assert_awaited_with(pipeline)
        cycle.assert_awaited_with(pipeline)
        assert sorted(c.args[0] for c in sleep.await_args_list) == [10.0, 100.0]

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_the_other(self):
        pipeline = MagicMock()
        pipeline.config = PipelineConfig()
        sleep = AsyncMock()

        with (
            patch(
                "stratagem.handlers.jobs.handle_snapshot_purge",
                new_callable=AsyncMock,
                side_effect=RuntimeError("D1 unavailable"),
            ) as purge,
            patch("stratagem.handlers.jobs.handle_governance_cycle", new_callable=AsyncMock) as cycle,
        ):
            await run_scheduled_jobs(pipeline, iterations=3, sleep=sleep)

        assert purge.await_count == 3
        assert cycle.await_count == 3
