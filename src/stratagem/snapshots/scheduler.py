"""Decision-volume driven auto snapshots.

maybe_auto_snapshot() fires when the scheduler is enabled, no snapshot is
in flight, enough decisions have accumulated and the debounce time has
passed. Callers that lose the race get a non-triggering result right away
instead of waiting on the lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from stratagem.config import SnapshotConfig

if TYPE_CHECKING:
    from stratagem.snapshots.store import PurgeResult, SnapshotStore, SnapshotWriteResult

logger = logging.getLogger(__name__)


@dataclass
class AutoSnapshotResult:
    triggered: bool
    reason: str  # disabled | locked | interval_wait | time_guard, or the trigger reason
    mode: str | None = None
    snapshot: SnapshotWriteResult | None = None
    purge: PurgeResult | None = None


class AutoSnapshotScheduler:
    """Counts decisions and captures a snapshot every `decision_interval`."""

    def __init__(
        self,
        store: SnapshotStore,
        config: SnapshotConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config or SnapshotConfig()
        self._clock = clock
        self._lock = asyncio.Lock()
        self.last_snapshot_at: float | None = None
        self.decisions_since_last_snapshot = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def configure_auto_snapshot(
        self,
        enabled: bool | None = None,
        decision_interval: int | None = None,
        min_seconds_between_snapshots: float | None = None,
        purge_days: float | None = None,
    ) -> None:
        """Update scheduler settings at runtime.

        Enabling a disabled scheduler resets the decision counter and the
        debounce timer. A purge_days of 0 turns the post-snapshot purge off.
        """
        was_enabled = self.config.enabled
        if enabled is not None:
            self.config.enabled = enabled
        if decision_interval is not None:
            self.config.decision_interval = decision_interval
        if min_seconds_between_snapshots is not None:
            self.config.min_seconds_between_snapshots = min_seconds_between_snapshots
        if purge_days is not None:
            self.config.purge_days = purge_days or None

        if self.config.enabled and not was_enabled:
            self.last_snapshot_at = None
            self.decisions_since_last_snapshot = 0

    def note_decision(self) -> None:
        self.decisions_since_last_snapshot += 1

    async def maybe_auto_snapshot(self, reason: str | None = None) -> AutoSnapshotResult:
        cfg = self.config
        if not cfg.enabled:
            return AutoSnapshotResult(triggered=False, reason="disabled")
        if self._lock.locked():
            return AutoSnapshotResult(triggered=False, reason="locked")
        if self.decisions_since_last_snapshot < cfg.decision_interval:
            return AutoSnapshotResult(triggered=False, reason="interval_wait")
        if (
            self.last_snapshot_at is not None
            and self._clock() - self.last_snapshot_at < cfg.min_seconds_between_snapshots
        ):
            return AutoSnapshotResult(triggered=False, reason="time_guard")

        # No await between the locked() check and acquiring, so one caller wins
        async with self._lock:
            trigger = reason or "interval"
            taken = self.decisions_since_last_snapshot
            artifact = self.store.tracker.get_weight_details()
            written = await self.store.snapshot_current(
                artifact=artifact,
                extra_meta={
                    "auto": {
                        "reason": trigger,
                        "decisions_since": taken,
                        "interval": cfg.decision_interval,
                    }
                },
            )
            self.last_snapshot_at = self._clock()
            self.decisions_since_last_snapshot = max(0, self.decisions_since_last_snapshot - taken)

            purged = None
            if cfg.purge_days:
                purged = await self.store.purge_old_snapshots(older_than_days=cfg.purge_days)

        logger.info(f"Auto snapshot triggered ({trigger}) after {taken} decisions, mode={written.persisted}")
        return AutoSnapshotResult(
            triggered=True,
            reason=trigger,
            mode=written.persisted,
            snapshot=written,
            purge=purged,
        )
