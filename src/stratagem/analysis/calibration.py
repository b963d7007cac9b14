"""Adaptive alert thresholds from quantiles of recent trend signals.

Pools per-strategy signals (|lr slope|, positive volatility momentum,
|delta weight|, smoothing ratio, recent anomaly count) from every strategy
with enough history, trims outliers symmetrically and maps quantiles to
thresholds. Falls back to fixed defaults when nothing qualifies.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field

import numpy as np
from scipy import stats

from stratagem.analysis.trends import TrendAnalyzer, TrendReport
from stratagem.config import CalibrationConfig

logger = logging.getLogger(__name__)

# Lower bounds and clamps applied to the raw quantiles
SLOPE_WARN_FLOOR = 0.0008
SLOPE_CRITICAL_RATIO = 1.3
VOL_MOMENTUM_FLOOR = 0.3
REVERSAL_DELTA_RANGE = (0.002, 0.05)
PLATEAU_SLOPE_FACTOR = 0.6
PLATEAU_SLOPE_MAX = 0.001
PLATEAU_SLOPE_DEFAULT = 0.0002
SMOOTHING_RANGE = (0.10, 0.90)
CLUSTER_K_RANGE = (2, 5)


@dataclass
class AdaptiveThresholds:
    slope_warn: float = 0.0015
    slope_critical: float = 0.003
    vol_momentum: float = 0.8
    reversal_delta_min: float = 0.005
    plateau_tiny_slope: float = 0.0002
    smoothing_high: float = 0.25
    anomaly_cluster_k: int = 2
    fallback: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AdaptiveThresholdReport:
    window: int
    sample_strategies: int
    thresholds: AdaptiveThresholds
    diagnostics: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "window": self.window,
            "sample_strategies": self.sample_strategies,
            "thresholds": self.thresholds.to_dict(),
            "diagnostics": self.diagnostics,
        }


def trim(values: list[float], proportion: float) -> np.ndarray:
    """Sorted values with floor(n * proportion) removed from each end."""
    if not values:
        return np.array([], dtype=float)
    trimmed = stats.trimboth(np.asarray(values, dtype=float), min(max(proportion, 0.0), 0.49))
    return np.sort(trimmed)


def quantile(values: np.ndarray, q: float) -> float:
    """Linear-interpolated quantile; 0 for an empty sample."""
    if len(values) == 0:
        return 0.0
    return float(np.quantile(values, q))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def thresholds_from_trends(
    trends: TrendReport,
    trim_pct: float = 0.02,
    min_samples: int = 8,
    anomaly_recent_window: int = 10,
) -> AdaptiveThresholdReport:
    """Pure calibration over an existing trend report."""
    samples: dict[str, list[float]] = {"lr": [], "vol": [], "dw": [], "sm": [], "an": []}
    qualifying = 0
    for metrics in trends.strategies.values():
        if metrics.sample_count < min_samples:
            continue
        qualifying += 1
        if metrics.lr_slope is not None:
            samples["lr"].append(abs(metrics.lr_slope))
        if metrics.volatility_momentum is not None:
            samples["vol"].append(max(0.0, metrics.volatility_momentum))
        if metrics.delta_weight is not None:
            samples["dw"].append(abs(metrics.delta_weight))
        if metrics.smoothing_reduction_ratio is not None:
            samples["sm"].append(metrics.smoothing_reduction_ratio)
        recent_start = metrics.sample_count - anomaly_recent_window
        samples["an"].append(float(sum(1 for a in metrics.anomalies if a.index >= recent_start)))

    if qualifying == 0 or not samples["lr"]:
        return AdaptiveThresholdReport(
            window=trends.window,
            sample_strategies=qualifying,
            thresholds=AdaptiveThresholds(fallback=True),
            diagnostics={"mode": "fallback"},
        )

    lr, vol, dw, sm, an = (trim(samples[k], trim_pct) for k in ("lr", "vol", "dw", "sm", "an"))

    slope_warn = max(SLOPE_WARN_FLOOR, quantile(lr, 0.80))
    slope_critical = max(quantile(lr, 0.90), slope_warn * SLOPE_CRITICAL_RATIO)
    vol_momentum = max(VOL_MOMENTUM_FLOOR, quantile(vol, 0.80))
    reversal_delta_min = min(REVERSAL_DELTA_RANGE[1], max(REVERSAL_DELTA_RANGE[0], quantile(dw, 0.70)))
    plateau_tiny_slope = min(PLATEAU_SLOPE_MAX, quantile(lr, 0.40) * PLATEAU_SLOPE_FACTOR or PLATEAU_SLOPE_DEFAULT)
    smoothing_high = min(SMOOTHING_RANGE[1], max(SMOOTHING_RANGE[0], quantile(sm, 0.80)))
    cluster_k = min(CLUSTER_K_RANGE[1], max(CLUSTER_K_RANGE[0], round_half_up(quantile(an, 0.80))))

    thresholds = AdaptiveThresholds(
        slope_warn=round(slope_warn, 6),
        slope_critical=round(slope_critical, 6),
        vol_momentum=round(vol_momentum, 6),
        reversal_delta_min=round(reversal_delta_min, 6),
        plateau_tiny_slope=round(plateau_tiny_slope, 6),
        smoothing_high=round(smoothing_high, 6),
        anomaly_cluster_k=cluster_k,
        fallback=False,
    )
    diagnostics = {
        "mode": "adaptive",
        "counts": {"lr": len(lr), "vol": len(vol), "dw": len(dw), "sm": len(sm), "an": len(an)},
        "raw_samples": samples,
        "quantiles": {
            "lr": {"q40": quantile(lr, 0.4), "q80": quantile(lr, 0.8), "q90": quantile(lr, 0.9)},
            "vol": {"q80": quantile(vol, 0.8)},
            "dw": {"q70": quantile(dw, 0.7)},
            "sm": {"q80": quantile(sm, 0.8)},
            "an": {"q80": quantile(an, 0.8)},
        },
    }
    return AdaptiveThresholdReport(
        window=trends.window,
        sample_strategies=qualifying,
        thresholds=thresholds,
        diagnostics=diagnostics,
    )


class ThresholdCalibrator:
    """Calibrates governance thresholds from the trend analyzer's history."""

    def __init__(self, analyzer: TrendAnalyzer, config: CalibrationConfig | None = None):
        self.analyzer = analyzer
        self.config = config or CalibrationConfig()

    async def compute_adaptive_thresholds(
        self,
        calibration_window: int | None = None,
        trim_pct: float | None = None,
        min_samples: int | None = None,
        strategy: str | None = None,
    ) -> AdaptiveThresholdReport:
        cfg = self.config
        window = calibration_window if calibration_window is not None else cfg.calibration_window
        trends = await self.analyzer.compute_trends(window=window, strategy=strategy)
        report = thresholds_from_trends(
            trends,
            trim_pct=trim_pct if trim_pct is not None else cfg.trim_pct,
            min_samples=min_samples if min_samples is not None else cfg.min_samples,
            anomaly_recent_window=cfg.anomaly_recent_window,
        )
        if report.thresholds.fallback:
            logger.info(f"Threshold calibration fell back to defaults ({report.sample_strategies} qualifying strategies)")
        return report
