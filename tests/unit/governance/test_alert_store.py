"""Tests for cooldown-deduplicated alert persistence."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from stratagem.governance.alert_store import (
    AlertFilters,
    AlertRecord,
    AlertStore,
    D1AlertBackend,
    MemoryAlertBackend,
    content_hash,
)
from stratagem.types import MS_PER_DAY


class TestContentHash:
    """Tests for content_hash()."""

    def test_stable_and_sensitive(self):
        a = content_hash("TrendBreakout", "Breakout slope=0.004", {"lr_slope": 0.004})
        b = content_hash("TrendBreakout", "Breakout slope=0.004", {"lr_slope": 0.004})
        c = content_hash("TrendBreakout", "Breakout slope=0.005", {"lr_slope": 0.005})

        assert a == b
        assert a != c
        assert len(a) == 32


class TestCooldown:
    """Tests for per-(strategy, alert id) cooldown."""

    @pytest.mark.asyncio
    async def test_repeat_inside_cooldown_is_suppressed(self, clock, report_factory):
        store = AlertStore(cooldown_ms=30_000, clock=clock)
        report = report_factory({"STEADY": [("TrendBreakout", "warn")]})

        first = await store.persist(report)
        clock.advance(10_000)
        second = await store.persist(report)

        assert (first.added, first.suppressed) == (1, 0)
        assert (second.added, second.suppressed) == (0, 1)
        assert len(store.backend) == 1
        assert len(store.detections_between(0, clock.now)) == 2

    @pytest.mark.asyncio
    async def test_cooldown_boundary_is_inclusive(self, clock, report_factory):
        store = AlertStore(cooldown_ms=30_000, clock=clock)
        report = report_factory({"STEADY": [("TrendBreakout", "warn")]})
        await store.persist(report)

        clock.advance(30_000)
        at_boundary = await store.persist(report)
        clock.advance(1)
        after = await store.persist(report)

        assert at_boundary.added == 0
        assert after.added == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, clock, report_factory):
        store = AlertStore(clock=clock)
        await store.persist(report_factory({"STEADY": [("TrendBreakout", "warn")]}))

        result = await store.persist(
            report_factory({"STEADY": [("VolatilitySurge", "warn")], "EXPEDITE": [("TrendBreakout", "warn")]})
        )

        assert result.added == 2

    @pytest.mark.asyncio
    async def test_escalating_severity_is_suppressed_inside_cooldown(self, clock, report_factory):
        """Dedup ignores severity: a warn followed by a critical inside the cooldown keeps only the warn."""
        store = AlertStore(cooldown_ms=30_000, clock=clock)
        await store.persist(report_factory({"STEADY": [("TrendBreakout", "warn")]}))

        clock.advance(5_000)
        result = await store.persist(report_factory({"STEADY": [("TrendBreakout", "critical")]}))

        rows = await store.rows_between(AlertFilters(from_ms=0, to_ms=clock.now))
        assert result.suppressed == 1
        assert [r.severity for r in rows] == ["warn"]

    @pytest.mark.asyncio
    async def test_context_and_fields(self, clock, report_factory):
        store = AlertStore(clock=clock)

        result = await store.persist(
            report_factory({"STEADY": [("TrendBreakout", "critical")]}, generated_at=clock.now - 5),
            context={"source": "cron"},
        )

        record = result.records[0]
        assert record.id == 1
        assert record.alert_timestamp == clock.now
        assert record.generated_at == clock.now - 5
        assert record.dedup_group == "STEADY|TrendBreakout"
        assert record.context == {"source": "cron"}
        assert record.hash == content_hash("TrendBreakout", "TrendBreakout on STEADY", {"severity": "critical"})
        assert "context" not in record.to_dict()
        assert record.to_dict(include_context=True)["context"] == {"source": "cron"}


class TestFallback:
    """Tests for falling back to memory when the durable backend fails."""

    @pytest.mark.asyncio
    async def test_backend_failure_uses_memory(self, clock, report_factory):
        backend = MagicMock()
        backend.mode = "db"
        backend.latest_for_key = AsyncMock(side_effect=RuntimeError("D1 unavailable"))
        backend.insert = AsyncMock(side_effect=RuntimeError("D1 unavailable"))
        backend.rows_between = AsyncMock(side_effect=RuntimeError("D1 unavailable"))
        store = AlertStore(backend=backend, clock=clock)

        result = await store.persist(report_factory({"STEADY": [("TrendBreakout", "warn")]}))
        rows = await store.rows_between(AlertFilters(from_ms=0, to_ms=clock.now))

        assert result.added == 1
        assert len(rows) == 1
        assert len(store.fallback) == 1

    @pytest.mark.asyncio
    async def test_injected_empty_backend_is_kept(self, clock, report_factory):
        backend = MemoryAlertBackend(capacity=10)
        store = AlertStore(backend=backend, clock=clock)

        await store.persist(report_factory({"STEADY": [("TrendBreakout", "warn")]}))

        assert store.backend is backend
        assert store.fallback is backend
        assert len(backend) == 1

    @pytest.mark.asyncio
    async def test_cooldown_sees_rows_written_during_outage(self, clock, d1, report_factory):
        backend = D1AlertBackend(d1)
        store = AlertStore(backend=backend, clock=clock)
        report = report_factory({"STEADY": [("TrendBreakout", "warn")]})
        with patch.object(backend, "insert", AsyncMock(side_effect=RuntimeError("D1 unavailable"))):
            first = await store.persist(report)
        clock.advance(10_000)

        second = await store.persist(report)

        assert (first.added, len(store.fallback)) == (1, 1)
        assert (second.added, second.suppressed) == (0, 1)

    @pytest.mark.asyncio
    async def test_newer_durable_row_wins_over_outage_row(self, clock, d1, report_factory):
        backend = D1AlertBackend(d1)
        store = AlertStore(backend=backend, clock=clock)
        report = report_factory({"STEADY": [("TrendBreakout", "warn")]})
        with patch.object(backend, "insert", AsyncMock(side_effect=RuntimeError("D1 unavailable"))):
            await store.persist(report)
        clock.advance(40_000)
        await store.persist(report)
        clock.advance(10_000)

        third = await store.persist(report)

        assert third.suppressed == 1
        latest = await store._latest_for_key("STEADY", "TrendBreakout")
        assert latest.alert_timestamp == clock.now - 10_000


class TestPurge:
    """Tests for alert retention."""

    @pytest.mark.asyncio
    async def test_purge_older_than(self, clock, report_factory):
        store = AlertStore(clock=clock)
        await store.persist(report_factory({"STEADY": [("TrendBreakout", "warn")]}))
        clock.advance(20 * MS_PER_DAY)
        await store.persist(report_factory({"STEADY": [("TrendBreakout", "warn")]}))
        clock.advance(15 * MS_PER_DAY)

        removed = await store.purge_older_than(30)

        assert removed == 1
        assert len(store.backend) == 1


class TestD1AlertBackend:
    """Tests for the D1 alert backend against SQLite."""

    @pytest.mark.asyncio
    async def test_persist_and_query(self, clock, d1, report_factory):
        store = AlertStore(backend=D1AlertBackend(d1), clock=clock)
        report = report_factory({"STEADY": [("TrendBreakout", "critical"), ("ReversalRisk", "warn")]})

        first = await store.persist(report, context={"source": "test"})
        clock.advance(1_000)
        second = await store.persist(report)

        assert first.added == 2
        assert second.suppressed == 2
        fetched = await store.get(first.records[0].id)
        assert fetched.alert_id == "TrendBreakout"
        assert fetched.rationale == {"severity": "critical"}
        assert fetched.context == {"source": "test"}

        critical = await store.rows_between(AlertFilters(from_ms=0, to_ms=clock.now, severities=["critical"]))
        assert [r.alert_id for r in critical] == ["TrendBreakout"]

    @pytest.mark.asyncio
    async def test_empty_filter_matches_nothing(self, clock, d1, report_factory):
        store = AlertStore(backend=D1AlertBackend(d1), clock=clock)
        await store.persist(report_factory({"STEADY": [("TrendBreakout", "warn")]}))

        rows = await store.rows_between(AlertFilters(from_ms=0, to_ms=clock.now, strategies=[]))

        assert rows == []

    @pytest.mark.asyncio
    async def test_purge(self, clock, d1, report_factory):
        store = AlertStore(backend=D1AlertBackend(d1), clock=clock)
        await store.persist(report_factory({"STEADY": [("TrendBreakout", "warn")]}))
        clock.advance(31 * MS_PER_DAY)

        assert await store.purge_older_than(30) == 1
        assert await store.purge_older_than(30) == 0


class TestAlertRecord:
    """Tests for AlertRecord serialization."""

    def test_from_row(self):
        record = AlertRecord.from_row(
            {
                "id": 9,
                "strategy": "STEADY",
                "alert_id": "VolatilitySurge",
                "severity": "warn",
                "message": "Volatility momentum=0.9",
                "alert_timestamp": 1_000,
                "generated_at": 900,
                "rationale": '{"volatility_momentum": 0.9}',
                "hash": "abc",
                "context": None,
            }
        )

        assert record.id == 9
        assert record.rationale == {"volatility_momentum": 0.9}
        assert record.context is None
        assert record.to_dict()["dedup_group"] == "STEADY|VolatilitySurge"
