"""Weight snapshot persistence and decision-driven auto snapshots.

Usage:
    from stratagem.snapshots import SnapshotStore, AutoSnapshotScheduler

    store = SnapshotStore(tracker)
    scheduler = AutoSnapshotScheduler(store, SnapshotConfig(enabled=True))

    scheduler.note_decision()
    result = await scheduler.maybe_auto_snapshot()
"""

from stratagem.snapshots.backends import D1SnapshotBackend, MemorySnapshotBackend, SnapshotRow
from stratagem.snapshots.scheduler import AutoSnapshotResult, AutoSnapshotScheduler
from stratagem.snapshots.store import PurgeResult, SnapshotStore, SnapshotWriteResult

__all__ = [
    "SnapshotRow",
    "MemorySnapshotBackend",
    "D1SnapshotBackend",
    "SnapshotStore",
    "SnapshotWriteResult",
    "PurgeResult",
    "AutoSnapshotScheduler",
    "AutoSnapshotResult",
]
