from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

MS_PER_DAY = 24 * 60 * 60 * 1000


class Severity(str, Enum):
    """Severity levels for governance alerts."""

    INFO = "info"  # Informational, no action needed
    WARN = "warn"  # Attention needed
    CRITICAL = "critical"  # Immediate review recommended


class AlertType(str, Enum):
    """Governance rule identifiers (the alertId of a persisted alert)."""

    TREND_BREAKOUT = "TrendBreakout"
    VOLATILITY_SURGE = "VolatilitySurge"
    ANOMALY_CLUSTER = "AnomalyCluster"
    STABILITY_PLATEAU = "StabilityPlateau"
    REVERSAL_RISK = "ReversalRisk"


class PerformanceWindow(str, Enum):
    """Aggregation windows maintained per strategy."""

    LAST_50 = "LAST_50"
    SEVEN_DAYS = "7D"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_ms(dt: datetime) -> int:
    """Epoch milliseconds; naive datetimes are treated as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
