"""Trend, volatility and anomaly signals from weight snapshot history.

For each strategy the most recent `window` snapshots are read oldest to
newest and reduced to:
- simple slope (last - first) / (n - 1) and an OLS slope over the index
- delta weight / delta spread: last value minus the mean of the prior 3
- volatility momentum: mean spread of the second half minus the first half
- smoothing reduction: 1 - std(moving average) / std(weights)
- anomalies: z-score of each point against its trailing baseline
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import numpy as np

from stratagem.config import TrendConfig

if TYPE_CHECKING:
    from stratagem.snapshots.backends import SnapshotRow
    from stratagem.snapshots.store import SnapshotStore

logger = logging.getLogger(__name__)

PRECISION = 6


@dataclass
class AnomalyPoint:
    index: int
    weight: float
    z_score: float
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "weight": self.weight,
            "z_score": self.z_score,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TrendMetrics:
    """Signals for one strategy over one evaluation window."""

    simple_slope: float | None
    lr_slope: float | None
    delta_weight: float | None
    delta_spread: float | None
    volatility_momentum: float | None
    smoothing_reduction_ratio: float | None
    anomalies: list[AnomalyPoint] = field(default_factory=list)
    sample_count: int = 0

    @classmethod
    def empty(cls) -> TrendMetrics:
        return cls(None, None, None, None, None, None, [], 0)

    def to_dict(self) -> dict:
        return {
            "simple_slope": self.simple_slope,
            "lr_slope": self.lr_slope,
            "delta_weight": self.delta_weight,
            "delta_spread": self.delta_spread,
            "volatility_momentum": self.volatility_momentum,
            "smoothing_reduction_ratio": self.smoothing_reduction_ratio,
            "anomalies": [a.to_dict() for a in self.anomalies],
            "sample_count": self.sample_count,
        }


@dataclass
class TrendReport:
    window: int
    count: int
    strategies: dict[str, TrendMetrics]

    def to_dict(self) -> dict:
        return {
            "window": self.window,
            "count": self.count,
            "strategies": {name: m.to_dict() for name, m in self.strategies.items()},
        }


def moving_average(values: np.ndarray, window: int) -> np.ndarray:
    """Trailing mean; the first window-1 points average what is available."""
    if window <= 1 or len(values) == 0:
        return values.astype(float).copy()
    csum = np.cumsum(values, dtype=float)
    out = np.empty(len(values), dtype=float)
    head = min(window, len(values))
    out[:head] = csum[:head] / np.arange(1, head + 1)
    if len(values) > window:
        out[window:] = (csum[window:] - csum[:-window]) / window
    return out


def recent_delta(values: np.ndarray) -> float:
    """Last value minus the mean of up to 3 values before it."""
    n = len(values)
    if n < 2:
        return 0.0
    base = values[n - 4 : n - 1] if n > 3 else values[: n - 1]
    return float(values[-1] - base.mean())


def linear_slope(values: np.ndarray) -> float | None:
    if len(values) < 2:
        return None
    xs = np.arange(len(values), dtype=float)
    slope, _ = np.polyfit(xs, values, 1)
    return float(slope)


def detect_anomalies(
    weights: np.ndarray,
    timestamps: list[datetime],
    threshold: float,
    baseline_window: int,
    flat_deviation: float = 0.05,
) -> list[AnomalyPoint]:
    """Flag points far from the trailing baseline that excludes the point itself.

    Baselines with fewer than 2 samples are skipped. A zero-variance baseline
    falls back to an absolute deviation check (reported with z_score 0).
    """
    anomalies = []
    for i in range(len(weights)):
        baseline = weights[max(0, i - baseline_window) : i]
        if len(baseline) < 2:
            continue
        mean = baseline.mean()
        sd = baseline.std()
        point = float(weights[i])
        if sd > 0:
            z = (point - mean) / sd
            if abs(z) > threshold:
                anomalies.append(AnomalyPoint(i, point, round(float(z), 2), timestamps[i]))
        elif abs(point - mean) > flat_deviation:
            anomalies.append(AnomalyPoint(i, point, 0.0, timestamps[i]))
    return anomalies


def compute_metrics(
    rows: list[SnapshotRow],
    ma_window: int = 5,
    anomaly_threshold: float = 2.5,
    anomaly_baseline_window: int | None = None,
    flat_deviation: float = 0.05,
) -> TrendMetrics:
    """Trend signals for one strategy's rows, given oldest first."""
    n = len(rows)
    if n == 0:
        return TrendMetrics.empty()
    baseline_window = anomaly_baseline_window if anomaly_baseline_window is not None else ma_window

    weights = np.array([r.weight for r in rows], dtype=float)
    spreads = np.array([r.spread if r.spread is not None else 0.0 for r in rows], dtype=float)

    simple_slope = (weights[-1] - weights[0]) / (n - 1) if n > 1 else 0.0
    lr_slope = linear_slope(weights)

    mid = n // 2 or 1
    first_half, second_half = spreads[:mid], spreads[mid:]
    momentum = (second_half.mean() if len(second_half) else 0.0) - first_half.mean()

    raw_std = weights.std()
    smoothing = 1 - moving_average(weights, ma_window).std() / raw_std if raw_std > 0 else 0.0

    anomalies = detect_anomalies(
        weights,
        [r.captured for r in rows],
        threshold=anomaly_threshold,
        baseline_window=baseline_window,
        flat_deviation=flat_deviation,
    )

    return TrendMetrics(
        simple_slope=round(float(simple_slope), PRECISION),
        lr_slope=round(lr_slope, PRECISION) if lr_slope is not None else None,
        delta_weight=round(recent_delta(weights), PRECISION),
        delta_spread=round(recent_delta(spreads), PRECISION),
        volatility_momentum=round(float(momentum), PRECISION),
        smoothing_reduction_ratio=round(float(smoothing), PRECISION),
        anomalies=anomalies,
        sample_count=n,
    )


class TrendAnalyzer:
    """Computes per-strategy trend reports from the snapshot store."""

    def __init__(self, store: SnapshotStore, config: TrendConfig | None = None):
        self.store = store
        self.config = config or TrendConfig()

    async def compute_trends(
        self,
        window: int | None = None,
        ma_window: int | None = None,
        anomaly_threshold: float | None = None,
        anomaly_baseline_window: int | None = None,
        strategy: str | None = None,
    ) -> TrendReport:
        """Trend metrics over up to `window` recent snapshots per strategy.

        Args:
            window: Snapshots per strategy (default 60)
            ma_window: Moving-average width for the smoothing ratio (default 5)
            anomaly_threshold: |z| above which a point is anomalous (default 2.5)
            anomaly_baseline_window: Trailing baseline size (default ma_window)
            strategy: Restrict the report to one strategy

        Returns:
            TrendReport keyed by strategy name
        """
        cfg = self.config
        window = window if window is not None else cfg.window
        ma_window = ma_window if ma_window is not None else cfg.ma_window
        anomaly_threshold = anomaly_threshold if anomaly_threshold is not None else cfg.anomaly_threshold
        if anomaly_baseline_window is None:
            anomaly_baseline_window = cfg.anomaly_baseline_window or ma_window

        names = [strategy] if strategy else await self.store.list_strategies()
        history: dict[str, list[SnapshotRow]] = {}
        for name in names:
            rows = await self.store.list_snapshots(strategy=name, limit=window)
            if rows:
                history[name] = list(reversed(rows))

        report = build_trend_report(
            history,
            window=window,
            ma_window=ma_window,
            anomaly_threshold=anomaly_threshold,
            anomaly_baseline_window=anomaly_baseline_window,
            flat_deviation=cfg.flat_baseline_deviation,
        )
        logger.debug(f"Computed trends for {len(report.strategies)} strategies over {report.count} snapshots")
        return report


def build_trend_report(
    history: dict[str, list[SnapshotRow]],
    window: int,
    ma_window: int = 5,
    anomaly_threshold: float = 2.5,
    anomaly_baseline_window: int | None = None,
    flat_deviation: float = 0.05,
) -> TrendReport:
    """Pure trend computation over per-strategy rows ordered oldest first."""
    strategies = {
        name: compute_metrics(
            rows,
            ma_window=ma_window,
            anomaly_threshold=anomaly_threshold,
            anomaly_baseline_window=anomaly_baseline_window,
            flat_deviation=flat_deviation,
        )
        for name, rows in history.items()
    }
    return TrendReport(
        window=window,
        count=sum(len(rows) for rows in history.values()),
        strategies=strategies,
    )
