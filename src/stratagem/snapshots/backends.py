"""Storage backends for weight snapshot rows.

Both backends write a batch of rows as one unit: the memory ring under a
lock with no await points, the D1 backend as a single batch transaction.
"""

from __future__ import annotations

import json
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from stratagem.db.d1 import D1Client
from stratagem.types import from_ms


@dataclass
class SnapshotRow:
    """Append-only copy of one strategy's artifact entry at capture time."""

    captured_at: int  # epoch ms
    version: str
    strategy: str
    weight: float
    base_post: float | None = None
    decay_score: float | None = None
    avg_eff: float | None = None
    p90_eff: float | None = None
    spread: float | None = None
    early_gated: bool = False
    checksum: float | None = None
    seed: int | None = None
    modifiers: dict = field(default_factory=dict)
    meta: dict = field(default_factory=dict)
    id: int | None = None

    @property
    def captured(self) -> datetime:
        return from_ms(self.captured_at)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "captured_at": self.captured.isoformat(),
            "version": self.version,
            "strategy": self.strategy,
            "weight": self.weight,
            "base_post": self.base_post,
            "decay_score": self.decay_score,
            "avg_eff": self.avg_eff,
            "p90_eff": self.p90_eff,
            "spread": self.spread,
            "early_gated": self.early_gated,
            "checksum": self.checksum,
            "seed": self.seed,
            "modifiers": self.modifiers,
            "meta": self.meta,
        }

    @classmethod
    def from_row(cls, row: dict) -> SnapshotRow:
        return cls(
            id=row.get("id"),
            captured_at=int(row["captured_at"]),
            version=row["version"],
            strategy=row["strategy"],
            weight=row["weight"],
            base_post=row.get("base_post"),
            decay_score=row.get("decay_score"),
            avg_eff=row.get("avg_eff"),
            p90_eff=row.get("p90_eff"),
            spread=row.get("spread"),
            early_gated=bool(row.get("early_gated")),
            checksum=row.get("checksum"),
            seed=row.get("seed"),
            modifiers=json.loads(row["modifiers"]) if row.get("modifiers") else {},
            meta=json.loads(row["meta"]) if row.get("meta") else {},
        )


class SnapshotBackend(Protocol):
    mode: str

    async def insert_batch(self, rows: list[SnapshotRow]) -> int: ...

    async def list_rows(self, strategy: str | None = None, limit: int = 100) -> list[SnapshotRow]: ...

    async def list_strategies(self) -> list[str]: ...

    async def delete_older_than(self, cutoff_ms: int) -> int: ...

    async def last_captured_at(self) -> int | None: ...


class MemorySnapshotBackend:
    """Bounded ring buffer; the oldest rows fall off when full."""

    mode = "memory"

    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self._rows: deque[SnapshotRow] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._rows)

    async def insert_batch(self, rows: list[SnapshotRow]) -> int:
        with self._lock:
            for row in rows:
                row.id = self._next_id
                self._next_id += 1
                self._rows.append(row)
        return len(rows)

    async def list_rows(self, strategy: str | None = None, limit: int = 100) -> list[SnapshotRow]:
        out: list[SnapshotRow] = []
        if limit <= 0:
            return out
        with self._lock:
            for row in reversed(self._rows):
                if strategy and row.strategy != strategy:
                    continue
                out.append(row)
                if len(out) >= limit:
                    break
        return out

    async def list_strategies(self) -> list[str]:
        with self._lock:
            return sorted({row.strategy for row in self._rows})

    async def delete_older_than(self, cutoff_ms: int) -> int:
        with self._lock:
            kept = [row for row in self._rows if row.captured_at >= cutoff_ms]
            removed = len(self._rows) - len(kept)
            self._rows = deque(kept, maxlen=self.capacity)
        return removed

    async def last_captured_at(self) -> int | None:
        with self._lock:
            return self._rows[-1].captured_at if self._rows else None


class D1SnapshotBackend:
    """Snapshot rows in strategy_weight_snapshots."""

    mode = "db"

    INSERT = """
        INSERT INTO strategy_weight_snapshots
            (captured_at, version, strategy, weight, base_post, decay_score, avg_eff,
             p90_eff, spread, early_gated, checksum, seed, modifiers, meta)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    def __init__(self, d1: D1Client):
        self.d1 = d1

    @staticmethod
    def _params(row: SnapshotRow) -> list:
        return [
            row.captured_at,
            row.version,
            row.strategy,
            row.weight,
            row.base_post,
            row.decay_score,
            row.avg_eff,
            row.p90_eff,
            row.spread,
            row.early_gated,
            row.checksum,
            row.seed,
            json.dumps(row.modifiers),
            json.dumps(row.meta),
        ]

    async def insert_batch(self, rows: list[SnapshotRow]) -> int:
        if not rows:
            return 0
        await self.d1.batch([(self.INSERT, self._params(row)) for row in rows])
        return len(rows)

    async def list_rows(self, strategy: str | None = None, limit: int = 100) -> list[SnapshotRow]:
        if limit <= 0:
            return []
        if strategy:
            result = await self.d1.execute(
                """
                SELECT * FROM strategy_weight_snapshots
                WHERE strategy = ?
                ORDER BY captured_at DESC, id DESC
                LIMIT ?
                """,
                [strategy, limit],
            )
        else:
            result = await self.d1.execute(
                "SELECT * FROM strategy_weight_snapshots ORDER BY captured_at DESC, id DESC LIMIT ?",
                [limit],
            )
        return [SnapshotRow.from_row(row) for row in result.get("results", [])]

    async def list_strategies(self) -> list[str]:
        result = await self.d1.execute(
            "SELECT DISTINCT strategy FROM strategy_weight_snapshots ORDER BY strategy"
        )
        return [row["strategy"] for row in result.get("results", [])]

    async def delete_older_than(self, cutoff_ms: int) -> int:
        result = await self.d1.run(
            "DELETE FROM strategy_weight_snapshots WHERE captured_at < ?",
            [cutoff_ms],
        )
        return D1Client.changes(result)

    async def last_captured_at(self) -> int | None:
        row = await self.d1.first("SELECT MAX(captured_at) AS last_captured FROM strategy_weight_snapshots")
        return row["last_captured"] if row and row.get("last_captured") is not None else None

