"""Persistence of governance alerts with per-(strategy, alert id) cooldown.

A detected alert is written only if no alert with the same strategy and
alert id was persisted within the cooldown window. Every detection is also
recorded in a bounded in-memory log so analytics can compare raw detections
against persisted rows.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from stratagem.db.d1 import D1Client
from stratagem.types import MS_PER_DAY, from_ms, to_ms, utc_now

if TYPE_CHECKING:
    from stratagem.governance.engine import GovernanceReport
    from stratagem.governance.suppression import SuppressionService

logger = logging.getLogger(__name__)


def content_hash(alert_id: str, message: str, rationale: dict) -> str:
    payload = json.dumps({"id": alert_id, "message": message, "rationale": rationale}, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()[:32]


@dataclass
class AlertRecord:
    """A persisted governance alert."""

    strategy: str
    alert_id: str
    severity: str
    message: str
    alert_timestamp: int  # epoch ms
    generated_at: int  # epoch ms of the governance evaluation
    rationale: dict = field(default_factory=dict)
    hash: str = ""
    context: dict | None = None
    id: int | None = None

    @property
    def dedup_group(self) -> str:
        return f"{self.strategy}|{self.alert_id}"

    def to_dict(self, include_rationale: bool = True, include_context: bool = False) -> dict:
        data = {
            "id": self.id,
            "alert_timestamp": from_ms(self.alert_timestamp).isoformat(),
            "generated_at": from_ms(self.generated_at).isoformat(),
            "strategy": self.strategy,
            "alert_id": self.alert_id,
            "severity": self.severity,
            "message": self.message,
            "hash": self.hash,
            "dedup_group": self.dedup_group,
        }
        if include_rationale:
            data["rationale"] = self.rationale
        if include_context:
            data["context"] = self.context
        return data

    @classmethod
    def from_row(cls, row: dict) -> AlertRecord:
        return cls(
            id=row["id"],
            strategy=row["strategy"],
            alert_id=row["alert_id"],
            severity=row["severity"],
            message=row["message"],
            alert_timestamp=int(row["alert_timestamp"]),
            generated_at=int(row["generated_at"]),
            rationale=json.loads(row["rationale"]) if row.get("rationale") else {},
            hash=row.get("hash") or "",
            context=json.loads(row["context"]) if row.get("context") else None,
        )


@dataclass
class AlertFilters:
    """Inclusive time window plus optional value filters."""

    from_ms: int
    to_ms: int
    strategies: list[str] | None = None
    severities: list[str] | None = None
    alert_ids: list[str] | None = None

    def matches(self, record: AlertRecord) -> bool:
        if not (self.from_ms <= record.alert_timestamp <= self.to_ms):
            return False
        if self.strategies is not None and record.strategy not in self.strategies:
            return False
        if self.severities is not None and record.severity not in self.severities:
            return False
        if self.alert_ids is not None and record.alert_id not in self.alert_ids:
            return False
        return True


@dataclass
class DetectionEvent:
    timestamp: int
    strategy: str
    alert_id: str
    severity: str
    persisted: bool
    muted: bool = False


@dataclass
class PersistResult:
    added: int
    suppressed: int
    muted: int = 0
    records: list[AlertRecord] = field(default_factory=list)


class AlertBackend(Protocol):
    mode: str

    async def insert(self, record: AlertRecord) -> AlertRecord: ...

    async def latest_for_key(self, strategy: str, alert_id: str) -> AlertRecord | None: ...

    async def query_page(
        self,
        filters: AlertFilters,
        order: str = "desc",
        limit: int = 100,
        after: tuple[int, int] | None = None,
    ) -> list[AlertRecord]: ...

    async def rows_between(self, filters: AlertFilters) -> list[AlertRecord]: ...

    async def get(self, pk: int) -> AlertRecord | None: ...

    async def delete_older_than(self, cutoff_ms: int) -> int: ...


def _after_cursor(record: AlertRecord, after: tuple[int, int], order: str) -> bool:
    key = (record.alert_timestamp, record.id or 0)
    return key < after if order == "desc" else key > after


class MemoryAlertBackend:
    """Bounded ring of alert records with synthetic ids."""

    mode = "memory"

    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self._rows: deque[AlertRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._rows)

    async def insert(self, record: AlertRecord) -> AlertRecord:
        with self._lock:
            record.id = self._next_id
            self._next_id += 1
            self._rows.append(record)
        return record

    async def latest_for_key(self, strategy: str, alert_id: str) -> AlertRecord | None:
        with self._lock:
            for row in reversed(self._rows):
                if row.strategy == strategy and row.alert_id == alert_id:
                    return row
        return None

    async def query_page(
        self,
        filters: AlertFilters,
        order: str = "desc",
        limit: int = 100,
        after: tuple[int, int] | None = None,
    ) -> list[AlertRecord]:
        with self._lock:
            rows = [r for r in self._rows if filters.matches(r)]
        if after is not None:
            rows = [r for r in rows if _after_cursor(r, after, order)]
        rows.sort(key=lambda r: (r.alert_timestamp, r.id or 0), reverse=order == "desc")
        return rows[:limit]

    async def rows_between(self, filters: AlertFilters) -> list[AlertRecord]:
        with self._lock:
            rows = [r for r in self._rows if filters.matches(r)]
        rows.sort(key=lambda r: (r.alert_timestamp, r.id or 0))
        return rows

    async def get(self, pk: int) -> AlertRecord | None:
        with self._lock:
            for row in self._rows:
                if row.id == pk:
                    return row
        return None

    async def delete_older_than(self, cutoff_ms: int) -> int:
        with self._lock:
            kept = [r for r in self._rows if r.alert_timestamp >= cutoff_ms]
            removed = len(self._rows) - len(kept)
            self._rows = deque(kept, maxlen=self.capacity)
        return removed


def _in_clause(column: str, values: list) -> tuple[str, list]:
    placeholders = ", ".join("?" for _ in values)
    return f"{column} IN ({placeholders})", list(values)


class D1AlertBackend:
    """Alert rows in governance_alerts."""

    mode = "db"

    def __init__(self, d1: D1Client):
        self.d1 = d1

    def _where(self, filters: AlertFilters) -> tuple[list[str], list]:
        clauses = ["alert_timestamp >= ?", "alert_timestamp <= ?"]
        params: list = [filters.from_ms, filters.to_ms]
        for column, values in (
            ("strategy", filters.strategies),
            ("severity", filters.severities),
            ("alert_id", filters.alert_ids),
        ):
            if values is not None:
                if not values:
                    clauses.append("1 = 0")
                    continue
                clause, extra = _in_clause(column, values)
                clauses.append(clause)
                params.extend(extra)
        return clauses, params

    async def insert(self, record: AlertRecord) -> AlertRecord:
        result = await self.d1.run(
            """
            INSERT INTO governance_alerts
                (alert_timestamp, generated_at, strategy, alert_id, severity, message,
                 hash, rationale, context, dedup_group)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                record.alert_timestamp,
                record.generated_at,
                record.strategy,
                record.alert_id,
                record.severity,
                record.message,
                record.hash,
                json.dumps(record.rationale, default=str),
                json.dumps(record.context, default=str) if record.context is not None else None,
                record.dedup_group,
            ],
        )
        record.id = (result.get("meta") or {}).get("last_row_id")
        return record

    async def latest_for_key(self, strategy: str, alert_id: str) -> AlertRecord | None:
        row = await self.d1.first(
            """
            SELECT * FROM governance_alerts
            WHERE strategy = ? AND alert_id = ?
            ORDER BY alert_timestamp DESC, id DESC
            LIMIT 1
            """,
            [strategy, alert_id],
        )
        return AlertRecord.from_row(row) if row else None

    async def query_page(
        self,
        filters: AlertFilters,
        order: str = "desc",
        limit: int = 100,
        after: tuple[int, int] | None = None,
    ) -> list[AlertRecord]:
        clauses, params = self._where(filters)
        if after is not None:
            op = "<" if order == "desc" else ">"
            clauses.append(f"(alert_timestamp {op} ? OR (alert_timestamp = ? AND id {op} ?))")
            params.extend([after[0], after[0], after[1]])
        direction = "DESC" if order == "desc" else "ASC"
        query = (
            f"SELECT * FROM governance_alerts WHERE {' AND '.join(clauses)} "
            f"ORDER BY alert_timestamp {direction}, id {direction} LIMIT ?"
        )
        result = await self.d1.execute(query, params + [limit])
        return [AlertRecord.from_row(row) for row in result.get("results", [])]

    async def rows_between(self, filters: AlertFilters) -> list[AlertRecord]:
        clauses, params = self._where(filters)
        query = f"SELECT * FROM governance_alerts WHERE {' AND '.join(clauses)} ORDER BY alert_timestamp ASC, id ASC"
        result = await self.d1.execute(query, params)
        return [AlertRecord.from_row(row) for row in result.get("results", [])]

    async def get(self, pk: int) -> AlertRecord | None:
        row = await self.d1.first("SELECT * FROM governance_alerts WHERE id = ?", [pk])
        return AlertRecord.from_row(row) if row else None

    async def delete_older_than(self, cutoff_ms: int) -> int:
        result = await self.d1.run("DELETE FROM governance_alerts WHERE alert_timestamp < ?", [cutoff_ms])
        return D1Client.changes(result)


class AlertStore:
    """Cooldown-deduplicated alert persistence.

    Dedup keys only on (strategy, alert_id): a repeat inside the cooldown is
    suppressed even if its severity differs from the persisted alert.
    """

    def __init__(
        self,
        backend: AlertBackend | None = None,
        cooldown_ms: int = 30_000,
        capacity: int = 500,
        clock: Callable[[], int] | None = None,
        detection_capacity: int = 5000,
        suppression: SuppressionService | None = None,
    ):
        self.backend = backend if backend is not None else MemoryAlertBackend(capacity)
        self.fallback = (
            self.backend if isinstance(self.backend, MemoryAlertBackend) else MemoryAlertBackend(capacity)
        )
        self.suppression = suppression
        self.cooldown_ms = cooldown_ms
        self._clock = clock or (lambda: to_ms(utc_now()))
        self._lock = asyncio.Lock()
        self._detections: deque[DetectionEvent] = deque(maxlen=detection_capacity)

    def now_ms(self) -> int:
        return self._clock()

    async def _call(self, op: str, *args, **kwargs):
        """Run a backend operation, serving it from memory if the durable backend fails."""
        try:
            return await getattr(self.backend, op)(*args, **kwargs)
        except Exception as e:
            if self.fallback is self.backend:
                raise
            logger.warning(f"Alert backend {self.backend.mode} failed on {op}, using memory: {e}")
            return await getattr(self.fallback, op)(*args, **kwargs)

    async def _latest_for_key(self, strategy: str, alert_id: str) -> AlertRecord | None:
        """Newest record for the key across the backend and any rows kept in memory during an outage."""
        latest = await self._call("latest_for_key", strategy, alert_id)
        if self.fallback is self.backend or len(self.fallback) == 0:
            return latest
        held = await self.fallback.latest_for_key(strategy, alert_id)
        if latest is None or (held is not None and held.alert_timestamp > latest.alert_timestamp):
            return held
        return latest

    async def persist(self, report: GovernanceReport, context: dict | None = None) -> PersistResult:
        """Persist a report's alerts, skipping keys still inside the cooldown.

        Alerts of a group the suppression service has muted are counted and
        recorded as detections but never written.
        """
        result = PersistResult(added=0, suppressed=0)
        async with self._lock:
            now = self.now_ms()
            for strategy, entry in report.strategies.items():
                for alert in entry.alerts:
                    if self.suppression is not None:
                        group = f"{strategy}|{alert.alert_id}"
                        self.suppression.note_alert(group, strategy, alert.severity)
                        if self.suppression.is_muted(group, alert.severity):
                            result.muted += 1
                            self._detections.append(
                                DetectionEvent(
                                    now, strategy, alert.alert_id, alert.severity, persisted=False, muted=True
                                )
                            )
                            continue

                    latest = await self._latest_for_key(strategy, alert.alert_id)
                    if latest is not None and now - latest.alert_timestamp <= self.cooldown_ms:
                        result.suppressed += 1
                        self._detections.append(
                            DetectionEvent(now, strategy, alert.alert_id, alert.severity, persisted=False)
                        )
                        continue

                    record = AlertRecord(
                        strategy=strategy,
                        alert_id=alert.alert_id,
                        severity=alert.severity,
                        message=alert.message,
                        alert_timestamp=now,
                        generated_at=report.generated_at,
                        rationale=alert.rationale,
                        hash=content_hash(alert.alert_id, alert.message, alert.rationale),
                        context=context,
                    )
                    result.records.append(await self._call("insert", record))
                    result.added += 1
                    self._detections.append(
                        DetectionEvent(now, strategy, alert.alert_id, alert.severity, persisted=True)
                    )

        if result.added or result.suppressed or result.muted:
            logger.info(
                f"Persisted {result.added} governance alerts, suppressed {result.suppressed} in cooldown, "
                f"muted {result.muted}"
            )
        return result

    def detections_between(
        self, from_ms: int, to_ms: int, strategies: list[str] | None = None
    ) -> list[DetectionEvent]:
        return [
            d
            for d in self._detections
            if from_ms <= d.timestamp <= to_ms and (strategies is None or d.strategy in strategies)
        ]

    async def query_page(
        self,
        filters: AlertFilters,
        order: str = "desc",
        limit: int = 100,
        after: tuple[int, int] | None = None,
    ) -> list[AlertRecord]:
        return await self._call("query_page", filters, order=order, limit=limit, after=after)

    async def rows_between(self, filters: AlertFilters) -> list[AlertRecord]:
        return await self._call("rows_between", filters)

    async def get(self, pk: int) -> AlertRecord | None:
        return await self._call("get", pk)

    async def purge_older_than(self, days: float) -> int:
        """Delete alerts older than `days`; returns rows removed."""
        cutoff = self.now_ms() - int(days * MS_PER_DAY)
        removed = await self._call("delete_older_than", cutoff)
        if self.fallback is not self.backend:
            removed += await self.fallback.delete_older_than(cutoff)
        logger.info(f"Purged {removed} governance alerts older than {days} days")
        return removed
