"""Pytest configuration and fixtures for stratagem tests."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from stratagem.analysis.trends import TrendMetrics
from stratagem.db.d1 import D1Client
from stratagem.db.sqlite import SQLiteBinding
from stratagem.governance.engine import GovernanceReport, GovernanceThresholds, RuleAlert, StrategyGovernance
from stratagem.snapshots.backends import SnapshotRow
from stratagem.types import to_ms

START_MS = to_ms(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


class ManualClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class MonotonicClock:
    """Seconds clock for the auto-snapshot debounce guard."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def monotonic() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def sqlite_binding():
    """In-memory SQLite database behind the D1 binding surface."""
    binding = SQLiteBinding()
    yield binding
    binding.close()


@pytest_asyncio.fixture
async def d1(sqlite_binding) -> D1Client:
    """D1Client over in-memory SQLite with the schema applied."""
    client = D1Client(sqlite_binding)
    await client.ensure_schema()
    return client


@pytest.fixture
def mock_d1_db():
    """Mock D1 database binding."""
    db = MagicMock()
    db.prepare = MagicMock(return_value=MagicMock())
    db.prepare.return_value.bind = MagicMock(return_value=MagicMock())
    db.prepare.return_value.bind.return_value.all = AsyncMock(return_value={"results": []})
    db.prepare.return_value.bind.return_value.run = AsyncMock(return_value={"meta": {"changes": 0}})
    db.prepare.return_value.all = AsyncMock(return_value={"results": []})
    db.prepare.return_value.run = AsyncMock(return_value={"meta": {"changes": 0}})
    db.batch = AsyncMock(return_value=[])
    return db


def make_rows(
    weights: list[float],
    strategy: str = "STEADY",
    start_ms: int = START_MS,
    step_ms: int = 60_000,
    spreads: list[float] | None = None,
) -> list[SnapshotRow]:
    """Snapshot rows oldest first, one per weight."""
    return [
        SnapshotRow(
            captured_at=start_ms + i * step_ms,
            version="unified-v1",
            strategy=strategy,
            weight=w,
            spread=spreads[i] if spreads is not None else 0.0,
        )
        for i, w in enumerate(weights)
    ]


@pytest.fixture
def rows_factory():
    """Build snapshot rows from a list of weights."""
    return make_rows


def make_report(alerts: dict[str, list[tuple[str, str]]], generated_at: int = 0) -> GovernanceReport:
    """Governance report with the given (alert_id, severity) pairs per strategy."""
    return GovernanceReport(
        window=120,
        generated_at=generated_at,
        strategies={
            strategy: StrategyGovernance(
                alerts=[
                    RuleAlert(
                        alert_id=alert_id,
                        severity=severity,
                        message=f"{alert_id} on {strategy}",
                        rationale={"severity": severity},
                        timestamp=generated_at,
                    )
                    for alert_id, severity in pairs
                ],
                metrics=TrendMetrics.empty(),
            )
            for strategy, pairs in alerts.items()
        },
        thresholds=GovernanceThresholds(),
    )


@pytest.fixture
def report_factory():
    """Build governance reports from {strategy: [(alert_id, severity), ...]}."""
    return make_report
