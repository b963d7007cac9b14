"""Tests for alert listing, keyset pagination and analytics."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from stratagem.config import SuppressionConfig
from stratagem.governance.acks import AckService
from stratagem.governance.alert_store import AlertStore, D1AlertBackend
from stratagem.governance.escalation import EscalationService
from stratagem.governance.query import (
    AlertQueryService,
    InvalidCursorError,
    InvalidRangeError,
    decode_cursor,
    encode_cursor,
    parse_bound,
    parse_limit,
)
from stratagem.governance.suppression import SuppressionService, SuppressionSignals
from stratagem.types import MS_PER_DAY, from_ms


async def seed(store: AlertStore, clock, report_factory, batches: list[int], severity: str = "warn") -> None:
    """Persist batches of alerts, one distinct strategy per alert, 1s apart."""
    n = 0
    for size in batches:
        await store.persist(report_factory({f"S{n + i}": [("TrendBreakout", severity)] for i in range(size)}))
        n += size
        clock.advance(1_000)


async def collect(service: AlertQueryService, order: str, limit: int) -> list[int]:
    ids: list[int] = []
    cursor = None
    while True:
        page = await service.list_alerts(cursor=cursor, limit=limit, order=order)
        ids.extend(item["id"] for item in page.items)
        if not page.has_more:
            assert page.next_cursor is None
            return ids
        cursor = page.next_cursor


class TestCursor:
    """Tests for cursor encoding and bound parsing."""

    def test_round_trip(self):
        assert decode_cursor(encode_cursor(1_700_000_000_000, 42, "desc"), "desc") == (1_700_000_000_000, 42)

    def test_cursor_is_url_safe_without_padding(self):
        cursor = encode_cursor(1_700_000_000_000, 7, "asc")

        assert "=" not in cursor
        assert "+" not in cursor and "/" not in cursor

    @pytest.mark.parametrize("cursor", ["not-a-cursor", "e30", "eyJ0cyI6ICJ4IiwgImlkIjogMSwgImRpciI6ICJkZXNjIn0"])
    def test_malformed(self, cursor):
        with pytest.raises(InvalidCursorError):
            decode_cursor(cursor, "desc")

    def test_order_mismatch(self):
        with pytest.raises(InvalidCursorError, match="order"):
            decode_cursor(encode_cursor(1, 1, "asc"), "desc")

    def test_parse_bound(self):
        expected = int(datetime(2024, 1, 15, tzinfo=timezone.utc).timestamp() * 1000)

        assert parse_bound(None) is None
        assert parse_bound(expected) == expected
        assert parse_bound(str(expected)) == expected
        assert parse_bound("2024-01-15T00:00:00Z") == expected
        assert parse_bound("2024-01-15T00:00:00") == expected
        assert parse_bound(datetime(2024, 1, 15, tzinfo=timezone.utc)) == expected

    @pytest.mark.parametrize(
        "value",
        [
            "yesterday",
            True,
            [1],
            float("inf"),
            float("nan"),
            -1,
            "99999999999999999999",
            datetime(9999, 12, 31, 23, 59),
        ],
    )
    def test_parse_bound_rejects(self, value):
        with pytest.raises(InvalidRangeError):
            parse_bound(value)

    def test_parse_limit(self):
        assert parse_limit(None) == 100
        assert parse_limit("25") == 25
        assert parse_limit(2.7) == 2
        assert parse_limit(-3) == 1

    @pytest.mark.parametrize("limit", ["ten", float("inf"), float("nan"), [5], False])
    def test_parse_limit_rejects(self, limit):
        with pytest.raises(InvalidRangeError, match="limit"):
            parse_limit(limit)


class TestListAlerts:
    """Tests for list_alerts()."""

    @pytest.fixture
    def store(self, clock):
        return AlertStore(clock=clock)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 2, 3, 10])
    async def test_desc_pages_cover_everything_once(self, store, clock, report_factory, limit):
        """Rows sharing a timestamp are split across pages without duplicates or gaps."""
        await seed(store, clock, report_factory, [3, 3, 1])

        ids = await collect(AlertQueryService(store), "desc", limit)

        assert ids == [7, 6, 5, 4, 3, 2, 1]

    @pytest.mark.asyncio
    async def test_asc_pages(self, store, clock, report_factory):
        await seed(store, clock, report_factory, [2, 2, 2])

        ids = await collect(AlertQueryService(store), "asc", 4)

        assert ids == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_cursor_from_other_order_rejected(self, store, clock, report_factory):
        await seed(store, clock, report_factory, [3])
        service = AlertQueryService(store)
        page = await service.list_alerts(limit=1, order="asc")

        with pytest.raises(InvalidCursorError):
            await service.list_alerts(cursor=page.next_cursor, limit=1, order="desc")

    @pytest.mark.asyncio
    async def test_filters(self, store, clock, report_factory):
        await store.persist(
            report_factory(
                {
                    "STEADY": [("TrendBreakout", "critical"), ("VolatilitySurge", "warn")],
                    "EXPEDITE": [("TrendBreakout", "warn")],
                }
            )
        )
        service = AlertQueryService(store)

        by_strategy = await service.list_alerts(strategies=[" STEADY ", ""])
        by_severity = await service.list_alerts(severities=["critical"])
        by_alert = await service.list_alerts(alert_ids=["TrendBreakout"], strategies=["EXPEDITE"])

        assert {i["alert_id"] for i in by_strategy.items} == {"TrendBreakout", "VolatilitySurge"}
        assert [i["strategy"] for i in by_severity.items] == ["STEADY"]
        assert len(by_alert.items) == 1

    @pytest.mark.asyncio
    async def test_blank_strategy_list_returns_empty_page(self, store, clock, report_factory):
        await seed(store, clock, report_factory, [2])

        page = await AlertQueryService(store).list_alerts(strategies=["  "])

        assert page.items == []
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, store):
        service = AlertQueryService(store)

        assert (await service.list_alerts(limit=0)).meta["limit"] == 1
        assert (await service.list_alerts(limit=10_000)).meta["limit"] == 500
        assert (await service.list_alerts()).meta["limit"] == 100

    @pytest.mark.asyncio
    async def test_default_range_is_last_day(self, store, clock, report_factory):
        await seed(store, clock, report_factory, [1])
        clock.advance(MS_PER_DAY)
        await seed(store, clock, report_factory, [1])

        page = await AlertQueryService(store).list_alerts()

        assert len(page.items) == 1
        assert page.meta["clamped"] is False

    @pytest.mark.asyncio
    async def test_span_is_clamped(self, store, clock):
        page = await AlertQueryService(store).list_alerts(from_=clock.now - 30 * MS_PER_DAY, to=clock.now)

        assert page.meta["clamped"] is True
        assert page.meta["from"] == from_ms(clock.now - 14 * MS_PER_DAY).isoformat()

    @pytest.mark.asyncio
    async def test_inverted_range(self, store, clock):
        with pytest.raises(InvalidRangeError):
            await AlertQueryService(store).list_alerts(from_=clock.now, to=clock.now - 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "bounds",
        [{"to": "99999999999999999999"}, {"from_": float("-inf")}, {"to": float("inf")}, {"to": 10**17}],
    )
    async def test_unusable_bounds_rejected(self, store, bounds):
        with pytest.raises(InvalidRangeError):
            await AlertQueryService(store).list_alerts(**bounds)

    @pytest.mark.asyncio
    async def test_non_numeric_limit_rejected(self, store):
        with pytest.raises(InvalidRangeError, match="limit"):
            await AlertQueryService(store).list_alerts(limit="all")

    @pytest.mark.asyncio
    async def test_projection_flags(self, store, clock, report_factory):
        await store.persist(report_factory({"STEADY": [("TrendBreakout", "critical")]}), context={"source": "cron"})
        service = AlertQueryService(store)

        lean = (await service.list_alerts(include_rationale=False)).items[0]
        full = (await service.list_alerts(include_context=True)).items[0]

        assert "rationale" not in lean
        assert full["context"] == {"source": "cron"}

    @pytest.mark.asyncio
    async def test_ack_and_escalation_projection(self, store, clock, report_factory):
        await seed(store, clock, report_factory, [2], severity="critical")
        acks = AckService(store, clock=clock)
        escalation = EscalationService(store, acks, clock=clock)
        await acks.ack_alert(1, actor="ops", note="looking")
        service = AlertQueryService(store, acks, escalation)

        page = await service.list_alerts(include_ack=True, include_escalation=True, order="asc")

        first, second = page.items
        assert first["ack"]["acknowledged_by"] == "ops"
        assert first["ack"]["note"] == "looking"
        assert second["ack"] is None
        assert second["escalation"] == {"escalated": False}

    @pytest.mark.asyncio
    async def test_suppression_projection(self, clock, report_factory):
        suppression = SuppressionService(SuppressionConfig(robust=False), clock=clock)
        store = AlertStore(clock=clock, suppression=suppression)
        await store.persist(
            report_factory({"STEADY": [("TrendBreakout", "warn")], "EXPEDITE": [("TrendBreakout", "warn")]})
        )
        noisy = SuppressionSignals(
            ack_rate=0.0, suspected_false_rate=0.8, volume=20, dedup_ratio=0.5, escalation_effectiveness=0.0
        )
        await suppression.evaluate({"STEADY|TrendBreakout": noisy})
        await suppression.evaluate({"STEADY|TrendBreakout": noisy})
        service = AlertQueryService(store, suppression=suppression)

        page = await service.list_alerts(include_suppression=True)
        plain = await service.list_alerts()

        by_strategy = {item["strategy"]: item["suppression"] for item in page.items}
        assert by_strategy["STEADY"]["suppressed"] is True
        assert by_strategy["STEADY"]["mode"] == "MUTE"
        assert by_strategy["EXPEDITE"] == {
            "suppressed": False,
            "state": "ACTIVE",
            "noise_score": 0.0,
            "mode": "NONE",
            "since": None,
        }
        assert all("suppression" not in item for item in plain.items)


class TestListAlertsD1:
    """Pagination against the D1 backend."""

    @pytest.mark.asyncio
    async def test_desc_pages_cover_everything_once(self, clock, d1, report_factory):
        store = AlertStore(backend=D1AlertBackend(d1), clock=clock)
        await seed(store, clock, report_factory, [3, 2, 2])

        desc = await collect(AlertQueryService(store), "desc", 2)
        asc = await collect(AlertQueryService(store), "asc", 3)

        assert desc == [7, 6, 5, 4, 3, 2, 1]
        assert asc == [1, 2, 3, 4, 5, 6, 7]


class TestAnalytics:
    """Tests for analytics()."""

    @pytest.mark.asyncio
    async def test_empty_window(self, clock):
        result = await AlertQueryService(AlertStore(clock=clock)).analytics()

        assert result["total"] == 0
        assert result["dedup_effectiveness"]["ratio"] == 1.0
        assert result["last_critical_ago_ms"] is None
        assert result["volatility"] == 0.0
        assert result["anomaly_signals"] == {"critical_spike": False, "density_spike": False}

    @pytest.mark.asyncio
    async def test_dedup_effectiveness_and_critical_spike(self, clock, report_factory):
        store = AlertStore(clock=clock)
        report = report_factory({f"S{i}": [("TrendBreakout", "critical")] for i in range(6)})
        await store.persist(report)
        clock.advance(10_000)
        await store.persist(report)

        result = await AlertQueryService(store).analytics()

        assert result["total"] == 6
        assert result["counts"] == {"info": 0, "warn": 0, "critical": 6}
        assert result["mix"]["critical"] == 1.0
        assert result["dedup_effectiveness"] == {
            "detected": 12,
            "persisted": 6,
            "suppressed": 6,
            "ratio": 0.5,
            "distinct_hashes": 6,
        }
        assert result["last_critical_ago_ms"] == 10_000
        assert result["anomaly_signals"]["critical_spike"] is True
        assert result["anomaly_signals"]["density_spike"] is False

    @pytest.mark.asyncio
    async def test_strategy_breakdown(self, clock, report_factory):
        store = AlertStore(clock=clock)
        await store.persist(
            report_factory(
                {
                    "STEADY": [("TrendBreakout", "critical"), ("VolatilitySurge", "warn")],
                    "EXPEDITE": [("StabilityPlateau", "info")],
                }
            )
        )

        result = await AlertQueryService(store).analytics(strategies=["STEADY"])

        assert list(result["strategy_breakdown"]) == ["STEADY"]
        steady = result["strategy_breakdown"]["STEADY"]
        assert steady["total"] == 2
        assert steady["critical"] == 1
        assert steady["density_per_hour"] == 2.0
        assert steady["last_critical_at"] == from_ms(clock.now).isoformat()

    @pytest.mark.asyncio
    async def test_density_spike_and_volatility(self, clock, report_factory):
        store = AlertStore(clock=clock)
        alert_ids = [f"Rule{i}" for i in range(12)]
        await store.persist(
            report_factory({"STEADY": [(a, "warn") for a in alert_ids], "EXPEDITE": [("TrendBreakout", "info")]})
        )

        result = await AlertQueryService(store).analytics()

        assert result["anomaly_signals"]["density_spike"] is True
        assert result["volatility"] == pytest.approx(5.5)

    @pytest.mark.asyncio
    async def test_window_is_clamped(self, clock):
        result = await AlertQueryService(AlertStore(clock=clock)).analytics(window_ms=60 * MS_PER_DAY)

        assert result["window"]["clamped"] is True
        assert result["window"]["duration_ms"] == 14 * MS_PER_DAY
