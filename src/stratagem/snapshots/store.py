"""Persistence of weight artifacts as per-strategy snapshot rows."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from stratagem.snapshots.backends import MemorySnapshotBackend, SnapshotRow
from stratagem.types import MS_PER_DAY, to_ms, utc_now

if TYPE_CHECKING:
    from stratagem.snapshots.backends import SnapshotBackend
    from stratagem.weighting.tracker import StrategyPerformanceTracker, WeightArtifact

logger = logging.getLogger(__name__)


@dataclass
class SnapshotWriteResult:
    persisted: str  # "db" or "memory"
    count: int
    captured_at: int | None = None


@dataclass
class PurgeResult:
    removed: int
    mode: str


def rows_from_artifact(
    artifact: WeightArtifact,
    captured_at: int,
    seed: int | None = None,
    extra_meta: dict | None = None,
) -> list[SnapshotRow]:
    """Flatten an artifact into one snapshot row per strategy."""
    sums = {
        "sum_before_floor": artifact.sum_before_floor,
        "sum_after_floor": artifact.sum_after_floor,
        "checksum": artifact.checksum,
    }
    rows = []
    for s in artifact.strategies:
        meta = {"early_count": len(artifact.early_gated_strategies), "sums": sums}
        if extra_meta:
            meta.update(extra_meta)
        rows.append(
            SnapshotRow(
                captured_at=captured_at,
                version=artifact.version,
                strategy=s.name,
                weight=s.final_weight,
                base_post=s.base_post_modifiers,
                decay_score=s.decay_score,
                avg_eff=s.avg_eff,
                p90_eff=s.p90_eff,
                spread=s.spread,
                early_gated=s.early_gated,
                checksum=artifact.checksum,
                seed=seed if seed is not None else artifact.seed,
                modifiers={
                    **s.modifiers,
                    "floor_applied": s.floor_applied,
                    "clamp_applied": s.clamp_applied,
                    "dominance_cap_applied": s.dominance_cap_applied,
                },
                meta=meta,
            )
        )
    return rows


class SnapshotStore:
    """Writes, lists and purges weight snapshots.

    The backend is chosen once at construction. When a durable backend
    fails, the operation is logged and served by an in-memory ring instead
    of surfacing the failure.
    """

    def __init__(
        self,
        tracker: StrategyPerformanceTracker,
        backend: SnapshotBackend | None = None,
        memory_capacity: int = 500,
        clock: Callable[[], int] | None = None,
    ):
        self.tracker = tracker
        self.backend = backend if backend is not None else MemorySnapshotBackend(memory_capacity)
        self.fallback = (
            self.backend
            if isinstance(self.backend, MemorySnapshotBackend)
            else MemorySnapshotBackend(memory_capacity)
        )
        self._clock = clock or (lambda: to_ms(utc_now()))
        self._last_captured: int | None = None

    def now_ms(self) -> int:
        return self._clock()

    async def _capture_time(self) -> int:
        """Current time, never earlier than the previous capture."""
        if self._last_captured is None:
            try:
                self._last_captured = await self.backend.last_captured_at()
            except Exception as e:
                logger.warning(f"Could not read last snapshot time: {e}")
        now = self.now_ms()
        captured = now if self._last_captured is None else max(now, self._last_captured)
        self._last_captured = captured
        return captured

    async def snapshot_current(
        self,
        artifact: WeightArtifact | None = None,
        seed: int | None = None,
        extra_meta: dict | None = None,
    ) -> SnapshotWriteResult:
        """Persist one row per strategy for the given (or freshly computed) artifact."""
        if artifact is None:
            artifact = self.tracker.get_weight_details()
        captured_at = await self._capture_time()
        rows = rows_from_artifact(artifact, captured_at, seed=seed, extra_meta=extra_meta)

        try:
            count = await self.backend.insert_batch(rows)
            mode = self.backend.mode
        except Exception as e:
            logger.warning(f"Snapshot write to {self.backend.mode} failed, using memory: {e}")
            count = await self.fallback.insert_batch(rows)
            mode = self.fallback.mode

        logger.info(f"Captured {count} strategy weight snapshots ({mode})")
        return SnapshotWriteResult(persisted=mode, count=count, captured_at=captured_at)

    @property
    def _holds_outage_rows(self) -> bool:
        return self.fallback is not self.backend and len(self.fallback) > 0

    async def list_snapshots(self, strategy: str | None = None, limit: int = 100) -> list[SnapshotRow]:
        """Newest-first snapshot rows, at most `limit`, optionally for one strategy.

        Rows written to memory while the durable backend was failing are
        merged in until they are purged.
        """
        try:
            rows = await self.backend.list_rows(strategy=strategy, limit=limit)
        except Exception as e:
            logger.warning(f"Snapshot listing from {self.backend.mode} failed, using memory: {e}")
            return await self.fallback.list_rows(strategy=strategy, limit=limit)

        if self._holds_outage_rows:
            rows = rows + await self.fallback.list_rows(strategy=strategy, limit=limit)
            rows.sort(key=lambda r: r.captured_at, reverse=True)
            rows = rows[:limit]
        return rows

    async def list_strategies(self) -> list[str]:
        try:
            strategies = await self.backend.list_strategies()
        except Exception as e:
            logger.warning(f"Strategy listing from {self.backend.mode} failed, using memory: {e}")
            return await self.fallback.list_strategies()

        if self._holds_outage_rows:
            strategies = sorted(set(strategies) | set(await self.fallback.list_strategies()))
        return strategies

    async def purge_old_snapshots(self, older_than_days: float = 30) -> PurgeResult:
        """Delete rows captured strictly before now - older_than_days.

        Rows exactly at the cutoff survive, so a repeat call with the same
        cutoff removes nothing.
        """
        cutoff = self.now_ms() - int(older_than_days * MS_PER_DAY)
        mode = self.backend.mode
        try:
            removed = await self.backend.delete_older_than(cutoff)
        except Exception as e:
            logger.warning(f"Snapshot purge on {self.backend.mode} failed, purging memory only: {e}")
            removed = 0
            mode = self.fallback.mode
        if self.fallback is not self.backend:
            removed += await self.fallback.delete_older_than(cutoff)

        logger.info(f"Purged {removed} snapshots older than {older_than_days} days ({mode})")
        return PurgeResult(removed=removed, mode=mode)
