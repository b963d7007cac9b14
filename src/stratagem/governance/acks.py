"""Acknowledgement of persisted governance alerts and MTTA metrics."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from stratagem.db.d1 import D1Client
from stratagem.governance.alert_store import AlertFilters
from stratagem.types import MS_PER_DAY, Severity, from_ms, to_ms, utc_now
from stratagem.weighting.tracker import nearest_rank

if TYPE_CHECKING:
    from stratagem.governance.alert_store import AlertStore
    from stratagem.governance.escalation import EscalationService

logger = logging.getLogger(__name__)

MAX_METRICS_WINDOW_MS = 30 * MS_PER_DAY
MAX_STRATEGIES = 20


class AlertNotFoundError(Exception):
    """No persisted alert has the given id."""


@dataclass
class AckRecord:
    alert_pk: int
    alert_timestamp: int
    severity: str
    acknowledged_at: int
    acknowledged_by: str | None = None
    note: str | None = None

    def to_dict(self) -> dict:
        return {
            "alert_pk": self.alert_pk,
            "alert_timestamp": from_ms(self.alert_timestamp).isoformat(),
            "severity": self.severity,
            "acknowledged_at": from_ms(self.acknowledged_at).isoformat(),
            "acknowledged_by": self.acknowledged_by,
            "note": self.note,
        }


@dataclass
class AckResult:
    alert_pk: int
    acknowledged_at: int
    already_acked: bool = False
    acknowledged_by: str | None = None
    note: str | None = None


@dataclass
class UnackResult:
    alert_pk: int
    changed: bool


class AckBackend(Protocol):
    async def insert_if_absent(self, record: AckRecord) -> tuple[AckRecord, bool]: ...

    async def delete(self, alert_pk: int) -> bool: ...

    async def get_many(self, alert_pks: list[int]) -> dict[int, AckRecord]: ...


class MemoryAckBackend:
    def __init__(self):
        self._acks: dict[int, AckRecord] = {}
        self._lock = threading.Lock()

    async def insert_if_absent(self, record: AckRecord) -> tuple[AckRecord, bool]:
        with self._lock:
            existing = self._acks.get(record.alert_pk)
            if existing is not None:
                return existing, False
            self._acks[record.alert_pk] = record
            return record, True

    async def delete(self, alert_pk: int) -> bool:
        with self._lock:
            return self._acks.pop(alert_pk, None) is not None

    async def get_many(self, alert_pks: list[int]) -> dict[int, AckRecord]:
        with self._lock:
            return {pk: self._acks[pk] for pk in alert_pks if pk in self._acks}


class D1AckBackend:
    """Acks in governance_alert_acks (one row per alert)."""

    def __init__(self, d1: D1Client):
        self.d1 = d1

    @staticmethod
    def _from_row(row: dict) -> AckRecord:
        return AckRecord(
            alert_pk=row["alert_pk"],
            alert_timestamp=int(row["alert_timestamp"]),
            severity=row["severity"],
            acknowledged_at=int(row["acknowledged_at"]),
            acknowledged_by=row.get("acknowledged_by"),
            note=row.get("note"),
        )

    async def insert_if_absent(self, record: AckRecord) -> tuple[AckRecord, bool]:
        result = await self.d1.run(
            """
            INSERT INTO governance_alert_acks
                (alert_pk, alert_timestamp, severity, acknowledged_at, acknowledged_by, note)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(alert_pk) DO NOTHING
            """,
            [
                record.alert_pk,
                record.alert_timestamp,
                record.severity,
                record.acknowledged_at,
                record.acknowledged_by,
                record.note,
            ],
        )
        if D1Client.changes(result):
            return record, True
        row = await self.d1.first("SELECT * FROM governance_alert_acks WHERE alert_pk = ?", [record.alert_pk])
        return self._from_row(row), False

    async def delete(self, alert_pk: int) -> bool:
        result = await self.d1.run("DELETE FROM governance_alert_acks WHERE alert_pk = ?", [alert_pk])
        return D1Client.changes(result) > 0

    async def get_many(self, alert_pks: list[int]) -> dict[int, AckRecord]:
        if not alert_pks:
            return {}
        placeholders = ", ".join("?" for _ in alert_pks)
        result = await self.d1.execute(
            f"SELECT * FROM governance_alert_acks WHERE alert_pk IN ({placeholders})",
            list(alert_pks),
        )
        return {row["alert_pk"]: self._from_row(row) for row in result.get("results", [])}


class AckService:
    """Acknowledge, unacknowledge and report on alert handling latency."""

    def __init__(
        self,
        alert_store: AlertStore,
        backend: AckBackend | None = None,
        clock: Callable[[], int] | None = None,
        critical_stale_ms: int = 60 * 60 * 1000,
    ):
        self.alert_store = alert_store
        self.backend = backend or MemoryAckBackend()
        self.escalation: EscalationService | None = None
        self.critical_stale_ms = critical_stale_ms
        self._clock = clock or (lambda: to_ms(utc_now()))

    async def ack_alert(self, alert_pk: int, actor: str = "system", note: str | None = None) -> AckResult:
        """Acknowledge an alert. A repeat ack returns the original with already_acked=True.

        Raises:
            AlertNotFoundError: If no persisted alert has this id
        """
        alert = await self.alert_store.get(alert_pk)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_pk} not found")

        record, created = await self.backend.insert_if_absent(
            AckRecord(
                alert_pk=alert_pk,
                alert_timestamp=alert.alert_timestamp,
                severity=alert.severity,
                acknowledged_at=self._clock(),
                acknowledged_by=actor,
                note=note,
            )
        )
        if created:
            logger.info(f"Alert {alert_pk} ({alert.dedup_group}) acknowledged by {actor}")
            if self.escalation is not None:
                await self.escalation.record_acknowledgement(alert_pk, record.acknowledged_at)

        return AckResult(
            alert_pk=alert_pk,
            acknowledged_at=record.acknowledged_at,
            already_acked=not created,
            acknowledged_by=record.acknowledged_by,
            note=record.note,
        )

    async def unack_alert(self, alert_pk: int) -> UnackResult:
        changed = await self.backend.delete(alert_pk)
        return UnackResult(alert_pk=alert_pk, changed=changed)

    async def get_ack_state(self, alert_pks: list[int]) -> dict[int, AckRecord]:
        if not alert_pks:
            return {}
        return await self.backend.get_many(list(alert_pks))

    async def ack_metrics(
        self,
        window_ms: int = 60 * 60 * 1000,
        strategies: list[str] | None = None,
        critical_stale_ms: int | None = None,
        include_severity_breakdown: bool = False,
    ) -> dict:
        """Ack rate, MTTA and open critical alerts over a trailing window."""
        now = self._clock()
        window_ms = min(window_ms, MAX_METRICS_WINDOW_MS)
        stale_ms = critical_stale_ms if critical_stale_ms is not None else self.critical_stale_ms
        filters = AlertFilters(
            from_ms=now - window_ms,
            to_ms=now,
            strategies=strategies[:MAX_STRATEGIES] if strategies else None,
        )
        alerts = await self.alert_store.rows_between(filters)
        acks = await self.get_ack_state([a.id for a in alerts])

        counts = {"total": 0, "acked": 0, "unacked": 0, "by_severity": {s.value: 0 for s in Severity}}
        samples: list[float] = []
        per_severity: dict[str, dict] = {}
        stale_critical = []
        open_critical = 0

        for alert in alerts:
            counts["total"] += 1
            counts["by_severity"][alert.severity] = counts["by_severity"].get(alert.severity, 0) + 1
            bucket = per_severity.setdefault(alert.severity, {"total": 0, "acked": 0, "samples": []})
            bucket["total"] += 1

            ack = acks.get(alert.id)
            if ack is not None:
                mtta = max(0, ack.acknowledged_at - alert.alert_timestamp)
                counts["acked"] += 1
                samples.append(mtta)
                bucket["acked"] += 1
                bucket["samples"].append(mtta)
                continue

            counts["unacked"] += 1
            if alert.severity == Severity.CRITICAL.value:
                open_critical += 1
                age = now - alert.alert_timestamp
                if age > stale_ms:
                    stale_critical.append(
                        {
                            "id": alert.id,
                            "strategy": alert.strategy,
                            "timestamp": from_ms(alert.alert_timestamp).isoformat(),
                            "age_ms": age,
                        }
                    )

        metrics = {
            "window": {
                "from": from_ms(now - window_ms).isoformat(),
                "to": from_ms(now).isoformat(),
                "duration_ms": window_ms,
            },
            "counts": counts,
            "mtta": {
                "avg_ms": float(np.mean(samples)) if samples else 0.0,
                "p95_ms": nearest_rank(sorted(samples), 0.95) or 0,
                "samples": len(samples),
            },
            "ack_rate": counts["acked"] / counts["total"] if counts["total"] else 0.0,
            "stale_critical": stale_critical,
            "open_critical_count": open_critical,
        }
        if include_severity_breakdown:
            metrics["severity_breakdown"] = [
                {
                    "severity": severity,
                    "total": bucket["total"],
                    "acked": bucket["acked"],
                    "ack_rate": bucket["acked"] / bucket["total"] if bucket["total"] else 0.0,
                    "mtta_avg_ms": float(np.mean(bucket["samples"])) if bucket["samples"] else 0.0,
                    "mtta_p95_ms": nearest_rank(sorted(bucket["samples"]), 0.95) or 0,
                }
                for severity, bucket in per_severity.items()
            ]
        return metrics
