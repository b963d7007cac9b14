"""Escalation of critical alerts left unacknowledged past their SLA.

Each alert escalates at most once. The escalation records a cooldown; while
the alert stays unacknowledged, a reminder notification is sent each time
the cooldown lapses.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from stratagem.config import EscalationConfig
from stratagem.db.d1 import D1Client
from stratagem.governance.alert_store import AlertFilters
from stratagem.notifications.discord import DiscordError
from stratagem.types import MS_PER_DAY, from_ms, to_ms, utc_now

if TYPE_CHECKING:
    from stratagem.governance.acks import AckService
    from stratagem.governance.alert_store import AlertRecord, AlertStore
    from stratagem.notifications.discord import DiscordWebhookClient

logger = logging.getLogger(__name__)

REASON_STALE_UNACK = "STALE_UNACK"
COOLDOWN_FACTOR = 0.5
SWEEP_LOOKBACK_MS = 14 * MS_PER_DAY


@dataclass
class EscalationRecord:
    alert_pk: int
    alert_timestamp: int
    severity: str
    escalated_at: int
    reason_code: str
    threshold_ms: int
    age_ms_at_escalation: int
    cooldown_until: int
    ack_after_escalation_ms: int | None = None

    def to_dict(self) -> dict:
        return {
            "escalated": True,
            "escalated_at": from_ms(self.escalated_at).isoformat(),
            "reason_code": self.reason_code,
            "threshold_ms": self.threshold_ms,
            "age_ms_at_escalation": self.age_ms_at_escalation,
            "cooldown_until": from_ms(self.cooldown_until).isoformat(),
            "ack_after_escalation_ms": self.ack_after_escalation_ms,
        }

    @classmethod
    def from_row(cls, row: dict) -> EscalationRecord:
        ack_after = row.get("ack_after_escalation_ms")
        return cls(
            alert_pk=row["alert_pk"],
            alert_timestamp=int(row["alert_timestamp"]),
            severity=row["severity"],
            escalated_at=int(row["escalated_at"]),
            reason_code=row["reason_code"],
            threshold_ms=int(row["threshold_ms"]),
            age_ms_at_escalation=int(row["age_ms_at_escalation"]),
            cooldown_until=int(row["cooldown_until"]),
            ack_after_escalation_ms=int(ack_after) if ack_after is not None else None,
        )


@dataclass
class SweepResult:
    candidates: int = 0
    escalated: list[EscalationRecord] = field(default_factory=list)
    reminders: int = 0
    notified: int = 0
    notify_errors: int = 0

    def to_dict(self) -> dict:
        return {
            "candidates": self.candidates,
            "escalated": [e.alert_pk for e in self.escalated],
            "reminders": self.reminders,
            "notified": self.notified,
            "notify_errors": self.notify_errors,
        }


class EscalationBackend(Protocol):
    async def insert_if_absent(self, record: EscalationRecord) -> bool: ...

    async def get_many(self, alert_pks: list[int]) -> dict[int, EscalationRecord]: ...

    async def set_cooldown(self, alert_pk: int, cooldown_until: int) -> None: ...

    async def set_ack_latency(self, alert_pk: int, ack_after_ms: int) -> bool: ...


class MemoryEscalationBackend:
    def __init__(self):
        self._rows: dict[int, EscalationRecord] = {}
        self._lock = threading.Lock()

    async def insert_if_absent(self, record: EscalationRecord) -> bool:
        with self._lock:
            if record.alert_pk in self._rows:
                return False
            self._rows[record.alert_pk] = record
            return True

    async def get_many(self, alert_pks: list[int]) -> dict[int, EscalationRecord]:
        with self._lock:
            return {pk: self._rows[pk] for pk in alert_pks if pk in self._rows}

    async def set_cooldown(self, alert_pk: int, cooldown_until: int) -> None:
        with self._lock:
            if alert_pk in self._rows:
                self._rows[alert_pk].cooldown_until = cooldown_until

    async def set_ack_latency(self, alert_pk: int, ack_after_ms: int) -> bool:
        with self._lock:
            row = self._rows.get(alert_pk)
            if row is None or row.ack_after_escalation_ms is not None:
                return False
            row.ack_after_escalation_ms = ack_after_ms
            return True


class D1EscalationBackend:
    def __init__(self, d1: D1Client):
        self.d1 = d1

    async def insert_if_absent(self, record: EscalationRecord) -> bool:
        result = await self.d1.run(
            """
            INSERT INTO governance_alert_escalations
                (alert_pk, alert_timestamp, severity, escalated_at, reason_code,
                 threshold_ms, age_ms_at_escalation, cooldown_until)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(alert_pk) DO NOTHING
            """,
            [
                record.alert_pk,
                record.alert_timestamp,
                record.severity,
                record.escalated_at,
                record.reason_code,
                record.threshold_ms,
                record.age_ms_at_escalation,
                record.cooldown_until,
            ],
        )
        return D1Client.changes(result) > 0

    async def get_many(self, alert_pks: list[int]) -> dict[int, EscalationRecord]:
        if not alert_pks:
            return {}
        placeholders = ", ".join("?" for _ in alert_pks)
        result = await self.d1.execute(
            f"SELECT * FROM governance_alert_escalations WHERE alert_pk IN ({placeholders})",
            list(alert_pks),
        )
        return {row["alert_pk"]: EscalationRecord.from_row(row) for row in result.get("results", [])}

    async def set_cooldown(self, alert_pk: int, cooldown_until: int) -> None:
        await self.d1.run(
            "UPDATE governance_alert_escalations SET cooldown_until = ? WHERE alert_pk = ?",
            [cooldown_until, alert_pk],
        )

    async def set_ack_latency(self, alert_pk: int, ack_after_ms: int) -> bool:
        result = await self.d1.run(
            """
            UPDATE governance_alert_escalations SET ack_after_escalation_ms = ?
            WHERE alert_pk = ? AND ack_after_escalation_ms IS NULL
            """,
            [ack_after_ms, alert_pk],
        )
        return D1Client.changes(result) > 0


class EscalationService:
    """Sweeps for stale unacknowledged alerts and escalates them."""

    def __init__(
        self,
        alert_store: AlertStore,
        ack_service: AckService,
        backend: EscalationBackend | None = None,
        config: EscalationConfig | None = None,
        notifier: DiscordWebhookClient | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.alert_store = alert_store
        self.ack_service = ack_service
        self.backend = backend or MemoryEscalationBackend()
        self.config = config or EscalationConfig()
        self.notifier = notifier
        self._clock = clock or (lambda: to_ms(utc_now()))

    def threshold_for(self, severity: str) -> int:
        return self.config.base_sla_ms

    def cooldown_for(self, threshold_ms: int) -> int:
        cooldown = int(threshold_ms * COOLDOWN_FACTOR)
        return min(self.config.cooldown_max_ms, max(self.config.cooldown_min_ms, cooldown))

    async def _notify(self, alert: AlertRecord, record: EscalationRecord, result: SweepResult) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send_escalation_alert(alert, record)
            result.notified += 1
        except DiscordError as e:
            result.notify_errors += 1
            logger.warning(f"Escalation notification failed for alert {alert.id}: {e}")

    async def run_sweep(self, now: int | None = None) -> SweepResult:
        """Escalate every eligible alert older than its SLA that nobody acknowledged."""
        now = now if now is not None else self._clock()
        result = SweepResult()
        severities = list(self.config.severities)
        if not severities:
            return result

        min_sla = min(self.threshold_for(s) for s in severities)
        candidates = await self.alert_store.rows_between(
            AlertFilters(from_ms=now - SWEEP_LOOKBACK_MS, to_ms=now - min_sla, severities=severities)
        )
        if not candidates:
            return result

        ids = [c.id for c in candidates]
        acks = await self.ack_service.get_ack_state(ids)
        existing = await self.backend.get_many(ids)

        for alert in candidates:
            if alert.id in acks:
                continue
            result.candidates += 1

            prior = existing.get(alert.id)
            if prior is not None:
                if now >= prior.cooldown_until:
                    prior.cooldown_until = now + self.cooldown_for(prior.threshold_ms)
                    await self.backend.set_cooldown(alert.id, prior.cooldown_until)
                    result.reminders += 1
                    await self._notify(alert, prior, result)
                continue

            threshold = self.threshold_for(alert.severity)
            age = now - alert.alert_timestamp
            if age < threshold:
                continue

            record = EscalationRecord(
                alert_pk=alert.id,
                alert_timestamp=alert.alert_timestamp,
                severity=alert.severity,
                escalated_at=now,
                reason_code=REASON_STALE_UNACK,
                threshold_ms=threshold,
                age_ms_at_escalation=age,
                cooldown_until=now + self.cooldown_for(threshold),
            )
            if not await self.backend.insert_if_absent(record):
                continue

            result.escalated.append(record)
            logger.warning(
                f"Escalated alert {alert.id} ({alert.dedup_group}): unacked for {age}ms (SLA {threshold}ms)"
            )
            await self._notify(alert, record, result)

        return result

    async def get_escalation_state(self, alert_pks: list[int]) -> dict[int, EscalationRecord]:
        if not alert_pks:
            return {}
        return await self.backend.get_many(list(alert_pks))

    async def record_acknowledgement(self, alert_pk: int, acknowledged_at: int) -> None:
        """Store how long after escalation an escalated alert was acknowledged."""
        existing = await self.backend.get_many([alert_pk])
        record = existing.get(alert_pk)
        if record is None:
            return
        await self.backend.set_ack_latency(alert_pk, max(0, acknowledged_at - record.escalated_at))
