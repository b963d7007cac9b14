"""Tests for adaptive threshold calibration."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from stratagem.analysis.calibration import (
    AdaptiveThresholds,
    ThresholdCalibrator,
    round_half_up,
    thresholds_from_trends,
    trim,
)
from stratagem.analysis.trends import AnomalyPoint, TrendMetrics, TrendReport
from stratagem.config import CalibrationConfig

STAMP = datetime(2024, 1, 15, tzinfo=timezone.utc)


def metrics(
    lr: float = 0.001,
    vol: float = 0.1,
    dw: float = 0.001,
    sm: float = 0.2,
    samples: int = 20,
    anomaly_indexes: list[int] | None = None,
) -> TrendMetrics:
    return TrendMetrics(
        simple_slope=lr,
        lr_slope=lr,
        delta_weight=dw,
        delta_spread=0.0,
        volatility_momentum=vol,
        smoothing_reduction_ratio=sm,
        anomalies=[AnomalyPoint(i, 0.5, 3.0, STAMP) for i in (anomaly_indexes or [])],
        sample_count=samples,
    )


def report(entries: list[TrendMetrics], window: int = 300) -> TrendReport:
    return TrendReport(
        window=window,
        count=sum(m.sample_count for m in entries),
        strategies={f"S{i}": m for i, m in enumerate(entries)},
    )


class TestHelpers:
    """Tests for trimming and rounding helpers."""

    def test_trim_drops_outliers_from_both_ends(self):
        values = [1000.0] + [float(i) for i in range(1, 11)]

        trimmed = trim(values, 0.1)

        assert trimmed.tolist() == [float(i) for i in range(2, 11)]

    def test_trim_small_sample_keeps_everything(self):
        assert trim([3.0, 1.0, 2.0], 0.02).tolist() == [1.0, 2.0, 3.0]

    def test_trim_empty(self):
        assert len(trim([], 0.02)) == 0

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(1.49) == 1
        assert round_half_up(0.5) == 1


class TestFallback:
    """Tests for the fallback path."""

    def test_too_few_samples_falls_back(self):
        """Strategies below min_samples do not qualify."""
        result = thresholds_from_trends(report([metrics(samples=5), metrics(samples=7)]), min_samples=8)

        assert result.thresholds.fallback is True
        assert result.sample_strategies == 0
        assert result.diagnostics == {"mode": "fallback"}
        defaults = AdaptiveThresholds(fallback=True)
        assert result.thresholds == defaults
        assert (defaults.slope_warn, defaults.slope_critical) == (0.0015, 0.003)
        assert (defaults.vol_momentum, defaults.reversal_delta_min) == (0.8, 0.005)
        assert (defaults.plateau_tiny_slope, defaults.smoothing_high) == (0.0002, 0.25)
        assert defaults.anomaly_cluster_k == 2

    def test_empty_report_falls_back(self):
        result = thresholds_from_trends(report([]))

        assert result.thresholds.fallback is True


class TestAdaptive:
    """Tests for quantile-derived thresholds."""

    @pytest.fixture
    def spread_report(self):
        return report(
            [metrics(lr=0.001 * i, vol=0.1 * i, dw=0.001 * i, sm=0.05 * i) for i in range(1, 11)]
        )

    def test_quantile_mapping(self, spread_report):
        result = thresholds_from_trends(spread_report, trim_pct=0.02, min_samples=8)
        t = result.thresholds

        assert t.fallback is False
        assert result.sample_strategies == 10
        assert t.slope_warn == pytest.approx(0.0082)
        assert t.slope_critical == pytest.approx(0.0082 * 1.3)
        assert t.vol_momentum == pytest.approx(0.82)
        assert t.reversal_delta_min == pytest.approx(0.0073)
        assert t.plateau_tiny_slope == pytest.approx(0.001)
        assert t.smoothing_high == pytest.approx(0.41)
        assert t.anomaly_cluster_k == 2

    def test_diagnostics(self, spread_report):
        result = thresholds_from_trends(spread_report)

        assert result.diagnostics["mode"] == "adaptive"
        assert result.diagnostics["counts"]["lr"] == 10
        assert len(result.diagnostics["raw_samples"]["vol"]) == 10
        assert result.diagnostics["quantiles"]["lr"]["q80"] == pytest.approx(0.0082)

    def test_floors_apply_to_quiet_history(self):
        """Near-zero signals are lifted to the minimum usable thresholds."""
        result = thresholds_from_trends(report([metrics(lr=0.0, vol=0.0, dw=0.0, sm=0.0) for _ in range(4)]))
        t = result.thresholds

        assert t.slope_warn == pytest.approx(0.0008)
        assert t.slope_critical == pytest.approx(0.0008 * 1.3)
        assert t.vol_momentum == pytest.approx(0.3)
        assert t.reversal_delta_min == pytest.approx(0.002)
        assert t.plateau_tiny_slope == pytest.approx(0.0002)
        assert t.smoothing_high == pytest.approx(0.10)

    def test_cluster_k_from_recent_anomalies(self):
        entries = [metrics(anomaly_indexes=[2, 12, 15, 18]) for _ in range(5)]

        result = thresholds_from_trends(report(entries), anomaly_recent_window=10)

        assert result.thresholds.anomaly_cluster_k == 3

    def test_cluster_k_is_clamped(self):
        entries = [metrics(anomaly_indexes=list(range(10, 20))) for _ in range(5)]

        result = thresholds_from_trends(report(entries))

        assert result.thresholds.anomaly_cluster_k == 5

    def test_negative_momentum_counts_as_zero(self):
        entries = [metrics(vol=-2.0) for _ in range(5)]

        result = thresholds_from_trends(report(entries))

        assert result.diagnostics["raw_samples"]["vol"] == [0.0] * 5

    @pytest.mark.parametrize("seed", range(25))
    def test_critical_never_below_warn(self, seed):
        rng = np.random.default_rng(seed)
        n = int(rng.integers(1, 30))
        entries = [
            metrics(
                lr=float(rng.normal(0, 0.01)),
                vol=float(rng.normal(0, 1)),
                dw=float(rng.normal(0, 0.02)),
                sm=float(rng.uniform(0, 1)),
            )
            for _ in range(n)
        ]

        t = thresholds_from_trends(report(entries), trim_pct=float(rng.uniform(0, 0.3))).thresholds

        assert t.slope_critical >= t.slope_warn


class TestThresholdCalibrator:
    """Tests for compute_adaptive_thresholds()."""

    @pytest.mark.asyncio
    async def test_uses_configured_window(self):
        analyzer = MagicMock()
        analyzer.compute_trends = AsyncMock(return_value=report([metrics() for _ in range(3)]))
        calibrator = ThresholdCalibrator(analyzer, CalibrationConfig(calibration_window=250))

        result = await calibrator.compute_adaptive_thresholds()

        analyzer.compute_trends.assert_awaited_once_with(window=250, strategy=None)
        assert result.thresholds.fallback is False

    @pytest.mark.asyncio
    async def test_overrides(self):
        analyzer = MagicMock()
        analyzer.compute_trends = AsyncMock(return_value=report([metrics(samples=10)]))
        calibrator = ThresholdCalibrator(analyzer)

        result = await calibrator.compute_adaptive_thresholds(calibration_window=50, min_samples=11, strategy="S0")

        analyzer.compute_trends.assert_awaited_once_with(window=50, strategy="S0")
        assert result.thresholds.fallback is True
