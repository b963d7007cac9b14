"""Persistence of per-(strategy, window) performance aggregates."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from stratagem.types import from_ms, to_ms, utc_now

if TYPE_CHECKING:
    from datetime import datetime

    from stratagem.db.d1 import D1Client

logger = logging.getLogger(__name__)


@dataclass
class PerformanceRecord:
    """Aggregate for one strategy over one window. Updated, never deleted."""

    strategy: str
    window: str
    decisions_count: int = 0
    avg_effectiveness: float | None = None
    p90_effectiveness: float | None = None
    decay_weighted_score: float = 0.0
    weights_applied: dict[str, float] | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "window": self.window,
            "decisions_count": self.decisions_count,
            "avg_effectiveness": self.avg_effectiveness,
            "p90_effectiveness": self.p90_effectiveness,
            "decay_weighted_score": self.decay_weighted_score,
            "weights_applied": self.weights_applied,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict) -> PerformanceRecord:
        weights = row.get("weights_applied")
        return cls(
            strategy=row["strategy"],
            window=row["perf_window"],
            decisions_count=row.get("decisions_count") or 0,
            avg_effectiveness=row.get("avg_effectiveness"),
            p90_effectiveness=row.get("p90_effectiveness"),
            decay_weighted_score=row.get("decay_weighted_score") or 0.0,
            weights_applied=json.loads(weights) if weights else None,
            updated_at=from_ms(row["updated_at"]),
        )


class PerformanceRepository(Protocol):
    async def save(self, record: PerformanceRecord) -> None: ...

    async def load_all(self) -> list[PerformanceRecord]: ...


class MemoryPerformanceRepository:
    """Keeps records in a dict keyed by (strategy, window)."""

    def __init__(self):
        self._rows: dict[tuple[str, str], PerformanceRecord] = {}

    async def save(self, record: PerformanceRecord) -> None:
        self._rows[(record.strategy, record.window)] = record

    async def load_all(self) -> list[PerformanceRecord]:
        return list(self._rows.values())


class D1PerformanceRepository:
    """Upserts records into strategy_performance."""

    def __init__(self, d1: D1Client):
        self.d1 = d1

    async def save(self, record: PerformanceRecord) -> None:
        await self.d1.run(
            """
            INSERT INTO strategy_performance
                (strategy, perf_window, decisions_count, avg_effectiveness,
                 p90_effectiveness, decay_weighted_score, weights_applied, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(strategy, perf_window) DO UPDATE SET
                decisions_count = excluded.decisions_count,
                avg_effectiveness = excluded.avg_effectiveness,
                p90_effectiveness = excluded.p90_effectiveness,
                decay_weighted_score = excluded.decay_weighted_score,
                weights_applied = excluded.weights_applied,
                updated_at = excluded.updated_at
            """,
            [
                record.strategy,
                record.window,
                record.decisions_count,
                record.avg_effectiveness,
                record.p90_effectiveness,
                record.decay_weighted_score,
                json.dumps(record.weights_applied) if record.weights_applied else None,
                to_ms(record.updated_at),
            ],
        )

    async def load_all(self) -> list[PerformanceRecord]:
        result = await self.d1.execute("SELECT * FROM strategy_performance")
        return [PerformanceRecord.from_row(row) for row in result.get("results", [])]
