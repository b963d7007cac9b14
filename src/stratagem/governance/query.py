"""Read-side access to persisted governance alerts: paginated listing and analytics."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import numpy as np

from stratagem.config import GovernanceConfig
from stratagem.governance.alert_store import AlertFilters
from stratagem.types import MS_PER_DAY, Severity, from_ms, to_ms

if TYPE_CHECKING:
    from stratagem.governance.acks import AckService
    from stratagem.governance.alert_store import AlertStore
    from stratagem.governance.escalation import EscalationService
    from stratagem.governance.suppression import SuppressionService

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 500
MAX_STRATEGIES = 20
DEFAULT_RANGE_MS = MS_PER_DAY
MS_PER_HOUR = 60 * 60 * 1000
CRITICAL_SPIKE_PCT = 0.6
CRITICAL_SPIKE_MIN = 5
DENSITY_SPIKE_PER_HOUR = 10.0
MAX_BOUND_MS = to_ms(datetime(9999, 12, 31, tzinfo=timezone.utc))


class InvalidCursorError(ValueError):
    """Pagination cursor could not be decoded or does not match the query."""


class InvalidRangeError(ValueError):
    """Time bounds or limit could not be used, or the bounds are inverted."""


@dataclass
class AlertPage:
    items: list[dict]
    next_cursor: str | None
    has_more: bool
    meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "items": self.items,
            "next_cursor": self.next_cursor,
            "has_more": self.has_more,
            "meta": self.meta,
        }


def encode_cursor(timestamp: int, pk: int, order: str) -> str:
    payload = json.dumps({"ts": timestamp, "id": pk, "dir": order}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")


def decode_cursor(cursor: str, order: str) -> tuple[int, int]:
    """Decode a cursor into its (timestamp, id) position.

    Raises:
        InvalidCursorError: If the cursor is malformed or was issued for the other order
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
        ts, pk, direction = data["ts"], data["id"], data["dir"]
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}") from e

    if not isinstance(ts, int) or not isinstance(pk, int) or isinstance(ts, bool) or isinstance(pk, bool):
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}")
    if direction != order:
        raise InvalidCursorError(f"Cursor was issued for order {direction!r}, not {order!r}")
    return ts, pk


def _checked_bound(ms: int, value) -> int:
    if not 0 <= ms <= MAX_BOUND_MS:
        raise InvalidRangeError(f"Time bound out of range: {value!r}")
    return ms


def parse_bound(value: datetime | int | float | str | None) -> int | None:
    """Accept a datetime, epoch ms or ISO-8601 string; return epoch ms.

    Raises:
        InvalidRangeError: Unparseable, non-finite, or outside 1970..9999
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidRangeError(f"Invalid time bound: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return _checked_bound(to_ms(value), value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidRangeError(f"Invalid time bound: {value!r}")
        return _checked_bound(int(value), value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return _checked_bound(int(text), value)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidRangeError(f"Invalid time bound: {value!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return _checked_bound(to_ms(parsed), value)
    raise InvalidRangeError(f"Invalid time bound: {value!r}")


def parse_limit(limit: int | float | str | None) -> int:
    """Page size clamped to [1, MAX_LIMIT]; None means DEFAULT_LIMIT.

    Raises:
        InvalidRangeError: If the limit is not a finite number
    """
    if limit is None:
        return DEFAULT_LIMIT
    if isinstance(limit, bool):
        raise InvalidRangeError(f"Invalid limit: {limit!r}")
    try:
        value = int(limit)
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidRangeError(f"Invalid limit: {limit!r}") from e
    return min(MAX_LIMIT, max(1, value))


def _clean(values: list[str] | None, cap: int | None = None) -> list[str] | None:
    if values is None:
        return None
    cleaned = [v.strip() for v in values if v and v.strip()]
    return cleaned[:cap] if cap else cleaned


class AlertQueryService:
    """Paginated alert listing and windowed analytics over the alert store."""

    def __init__(
        self,
        alert_store: AlertStore,
        ack_service: AckService | None = None,
        escalation_service: EscalationService | None = None,
        config: GovernanceConfig | None = None,
        suppression: SuppressionService | None = None,
    ):
        self.alert_store = alert_store
        self.ack_service = ack_service
        self.escalation_service = escalation_service
        self.config = config or GovernanceConfig()
        self.suppression = suppression

    @property
    def max_window_ms(self) -> int:
        return int(self.config.max_window_days * MS_PER_DAY)

    def resolve_range(self, from_=None, to=None) -> tuple[int, int, bool]:
        """Resolve (from_ms, to_ms, clamped) with a 24h default and the max span clamp."""
        now = self.alert_store.now_ms()
        end = parse_bound(to)
        start = parse_bound(from_)
        if end is None:
            end = now
        if start is None:
            start = end - DEFAULT_RANGE_MS
        if start > end:
            raise InvalidRangeError(f"from ({from_ms(start).isoformat()}) is after to ({from_ms(end).isoformat()})")

        clamped = False
        if end - start > self.max_window_ms:
            start = end - self.max_window_ms
            clamped = True
        return start, end, clamped

    async def list_alerts(
        self,
        strategies: list[str] | None = None,
        severities: list[str] | None = None,
        alert_ids: list[str] | None = None,
        from_=None,
        to=None,
        cursor: str | None = None,
        limit: int | None = None,
        order: str = "desc",
        include_ack: bool = False,
        include_escalation: bool = False,
        include_rationale: bool = True,
        include_context: bool = False,
        include_suppression: bool = False,
    ) -> AlertPage:
        """List persisted alerts ordered by (timestamp, id) with keyset pagination.

        Raises:
            InvalidCursorError: Malformed cursor, or one issued for the opposite order
            InvalidRangeError: Unparseable bounds or from after to
        """
        order = "asc" if str(order).lower() == "asc" else "desc"
        limit = parse_limit(limit)
        start, end, clamped = self.resolve_range(from_, to)
        after = decode_cursor(cursor, order) if cursor else None

        filters = AlertFilters(
            from_ms=start,
            to_ms=end,
            strategies=_clean(strategies, MAX_STRATEGIES),
            severities=_clean(severities),
            alert_ids=_clean(alert_ids),
        )
        meta = {
            "from": from_ms(start).isoformat(),
            "to": from_ms(end).isoformat(),
            "order": order,
            "limit": limit,
            "clamped": clamped,
        }
        if filters.strategies is not None and not filters.strategies:
            return AlertPage(items=[], next_cursor=None, has_more=False, meta=meta)

        rows = await self.alert_store.query_page(filters, order=order, limit=limit + 1, after=after)
        has_more = len(rows) > limit
        rows = rows[:limit]
        next_cursor = encode_cursor(rows[-1].alert_timestamp, rows[-1].id, order) if has_more else None

        items = [r.to_dict(include_rationale=include_rationale, include_context=include_context) for r in rows]
        ids = [r.id for r in rows]

        if include_ack and self.ack_service is not None:
            acks = await self.ack_service.get_ack_state(ids)
            for item in items:
                ack = acks.get(item["id"])
                item["ack"] = ack.to_dict() if ack else None

        if include_escalation and self.escalation_service is not None:
            escalations = await self.escalation_service.get_escalation_state(ids)
            for item in items:
                esc = escalations.get(item["id"])
                item["escalation"] = esc.to_dict() if esc else {"escalated": False}

        if include_suppression and self.suppression is not None:
            for item in items:
                item["suppression"] = self.suppression.get_state(item["dedup_group"])

        return AlertPage(items=items, next_cursor=next_cursor, has_more=has_more, meta=meta)

    async def analytics(self, window_ms: int = MS_PER_HOUR, strategies: list[str] | None = None) -> dict:
        """Severity counts, per-strategy density and dedup effectiveness over a trailing window."""
        now = self.alert_store.now_ms()
        clamped = window_ms > self.max_window_ms
        window_ms = max(1, min(int(window_ms), self.max_window_ms))
        start = now - window_ms
        strategies = _clean(strategies, MAX_STRATEGIES) or None

        rows = await self.alert_store.rows_between(AlertFilters(from_ms=start, to_ms=now, strategies=strategies))
        detections = self.alert_store.detections_between(start, now, strategies)

        counts = {s.value: 0 for s in Severity}
        breakdown: dict[str, dict] = {}
        hashes = set()
        last_critical: int | None = None
        hours = window_ms / MS_PER_HOUR

        for row in rows:
            counts[row.severity] = counts.get(row.severity, 0) + 1
            hashes.add(row.hash)
            entry = breakdown.setdefault(row.strategy, {"total": 0, "critical": 0, "last_critical_at": None})
            entry["total"] += 1
            if row.severity == Severity.CRITICAL.value:
                entry["critical"] += 1
                entry["last_critical_at"] = max(entry["last_critical_at"] or 0, row.alert_timestamp)
                last_critical = max(last_critical or 0, row.alert_timestamp)

        for entry in breakdown.values():
            entry["density_per_hour"] = entry["total"] / hours if hours else 0.0
            if entry["last_critical_at"] is not None:
                entry["last_critical_at"] = from_ms(entry["last_critical_at"]).isoformat()

        total = len(rows)
        detected = len(detections)
        persisted = sum(1 for d in detections if d.persisted)
        mix = {k: (v / total if total else 0.0) for k, v in counts.items()}
        densities = [e["density_per_hour"] for e in breakdown.values()]
        overall_density = total / hours if hours else 0.0

        return {
            "window": {
                "from": from_ms(start).isoformat(),
                "to": from_ms(now).isoformat(),
                "duration_ms": window_ms,
                "clamped": clamped,
            },
            "total": total,
            "counts": counts,
            "mix": mix,
            "strategy_breakdown": breakdown,
            "dedup_effectiveness": {
                "detected": detected,
                "persisted": persisted,
                "suppressed": detected - persisted,
                "ratio": persisted / detected if detected else 1.0,
                "distinct_hashes": len(hashes),
            },
            "last_critical_ago_ms": now - last_critical if last_critical is not None else None,
            "volatility": float(np.std(densities)) if len(densities) > 1 else 0.0,
            "anomaly_signals": {
                "critical_spike": mix[Severity.CRITICAL.value] > CRITICAL_SPIKE_PCT
                and counts[Severity.CRITICAL.value] >= CRITICAL_SPIKE_MIN,
                "density_spike": overall_density > DENSITY_SPIKE_PER_HOUR,
            },
        }
