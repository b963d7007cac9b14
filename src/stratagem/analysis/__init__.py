"""Trend extraction and adaptive threshold calibration over snapshot history."""

from stratagem.analysis.calibration import AdaptiveThresholdReport, AdaptiveThresholds, ThresholdCalibrator
from stratagem.analysis.trends import AnomalyPoint, TrendAnalyzer, TrendMetrics, TrendReport

__all__ = [
    "TrendAnalyzer",
    "TrendMetrics",
    "TrendReport",
    "AnomalyPoint",
    "ThresholdCalibrator",
    "AdaptiveThresholds",
    "AdaptiveThresholdReport",
]
