"""Governance alert rules over trend signals.

Rules run independently per strategy on each evaluation:

| Alert            | Trigger                                                    |
|------------------|------------------------------------------------------------|
| TrendBreakout    | |lr slope| >= warn (critical at >= critical)                |
| VolatilitySurge  | momentum >= threshold (critical at multiplier x threshold) |
| AnomalyCluster   | recent anomalies >= K (critical at >= critical K)          |
| StabilityPlateau | tiny slope, high smoothing, calm momentum (info)           |
| ReversalRisk     | delta weight opposes the slope by at least the minimum     |
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING

from stratagem.config import GovernanceConfig
from stratagem.types import AlertType, Severity, from_ms, to_ms, utc_now

if TYPE_CHECKING:
    from stratagem.analysis.calibration import AdaptiveThresholds
    from stratagem.analysis.trends import TrendAnalyzer, TrendMetrics, TrendReport
    from stratagem.governance.alert_store import AlertStore, PersistResult

logger = logging.getLogger(__name__)

# AdaptiveThresholds field -> GovernanceThresholds field
ADAPTIVE_OVERRIDES = {
    "slope_warn": "slope_warn",
    "slope_critical": "slope_critical",
    "vol_momentum": "vol_momentum",
    "reversal_delta_min": "reversal_delta_min",
    "plateau_tiny_slope": "tiny_slope",
    "smoothing_high": "smoothing_high",
    "anomaly_cluster_k": "anomaly_cluster_k",
    "anomaly_cluster_critical_k": "anomaly_cluster_critical_k",
}


@dataclass
class GovernanceThresholds:
    """Rule thresholds; built-in defaults unless overridden."""

    slope_warn: float = 0.0015
    slope_critical: float = 0.003
    min_samples: int = 12
    vol_momentum: float = 0.8
    volatility_critical_multiplier: float = 2.0
    anomaly_cluster_k: int = 2
    anomaly_cluster_critical_k: int = 4
    anomaly_recent_window: int = 10
    tiny_slope: float = 0.0002
    smoothing_high: float = 0.25
    plateau_vol_momentum_ceil: float = 0.1
    reversal_delta_min: float = 0.003

    @classmethod
    def from_config(cls, config: GovernanceConfig) -> GovernanceThresholds:
        return cls(
            min_samples=config.min_samples,
            volatility_critical_multiplier=config.volatility_critical_multiplier,
            anomaly_cluster_critical_k=config.anomaly_cluster_critical_k,
            anomaly_recent_window=config.anomaly_recent_window,
            plateau_vol_momentum_ceil=config.plateau_vol_momentum_ceil,
        )

    def with_adaptive(self, adaptive: AdaptiveThresholds | dict | None) -> GovernanceThresholds:
        """Copy with every provided adaptive value replacing the matching default."""
        if adaptive is None:
            return self
        values = adaptive if isinstance(adaptive, dict) else adaptive.to_dict()
        updated = {f.name: getattr(self, f.name) for f in fields(self)}
        for source, target in ADAPTIVE_OVERRIDES.items():
            if values.get(source) is not None:
                updated[target] = values[source]
        return GovernanceThresholds(**updated)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class RuleAlert:
    """One rule firing for one strategy."""

    alert_id: str
    severity: str
    message: str
    rationale: dict
    timestamp: int  # epoch ms

    def to_dict(self) -> dict:
        return {
            "id": self.alert_id,
            "severity": self.severity,
            "message": self.message,
            "rationale": self.rationale,
            "timestamp": from_ms(self.timestamp).isoformat(),
        }


@dataclass
class StrategyGovernance:
    alerts: list[RuleAlert]
    metrics: TrendMetrics

    def to_dict(self) -> dict:
        return {"alerts": [a.to_dict() for a in self.alerts], "metrics": self.metrics.to_dict()}


@dataclass
class GovernanceReport:
    window: int
    generated_at: int  # epoch ms
    strategies: dict[str, StrategyGovernance]
    thresholds: GovernanceThresholds
    persistence: PersistResult | None = None
    summary: dict = field(default_factory=dict)

    def __post_init__(self):
        if not self.summary:
            by_severity = {s.value: 0 for s in Severity}
            for entry in self.strategies.values():
                for alert in entry.alerts:
                    by_severity[alert.severity] += 1
            self.summary = {"total_alerts": sum(by_severity.values()), "by_severity": by_severity}

    @property
    def total_alerts(self) -> int:
        return self.summary["total_alerts"]

    def alerts_for(self, strategy: str) -> list[RuleAlert]:
        entry = self.strategies.get(strategy)
        return entry.alerts if entry else []

    def to_dict(self) -> dict:
        data = {
            "window": self.window,
            "generated_at": from_ms(self.generated_at).isoformat(),
            "strategies": {name: entry.to_dict() for name, entry in self.strategies.items()},
            "summary": self.summary,
            "thresholds": self.thresholds.to_dict(),
        }
        if self.persistence is not None:
            data["persistence"] = {
                "added": self.persistence.added,
                "suppressed": self.persistence.suppressed,
                "muted": self.persistence.muted,
            }
        return data


def _sign(value: float | None) -> int:
    if value is None or value == 0:
        return 0
    return 1 if value > 0 else -1


def evaluate_rules(metrics: TrendMetrics, t: GovernanceThresholds, now_ms: int) -> list[RuleAlert]:
    """Apply every rule to one strategy's metrics."""
    alerts: list[RuleAlert] = []
    lr = metrics.lr_slope
    momentum = metrics.volatility_momentum
    smoothing = metrics.smoothing_reduction_ratio
    delta = metrics.delta_weight

    if metrics.sample_count >= t.min_samples and lr is not None and abs(lr) >= t.slope_warn:
        severity = Severity.CRITICAL if abs(lr) >= t.slope_critical else Severity.WARN
        alerts.append(
            RuleAlert(
                alert_id=AlertType.TREND_BREAKOUT.value,
                severity=severity.value,
                message=f"Breakout slope={lr}",
                rationale={
                    "lr_slope": lr,
                    "simple_slope": metrics.simple_slope,
                    "sample_count": metrics.sample_count,
                    "thresholds": {"warn": t.slope_warn, "critical": t.slope_critical},
                },
                timestamp=now_ms,
            )
        )

    if momentum is not None and momentum >= t.vol_momentum:
        critical_at = t.vol_momentum * t.volatility_critical_multiplier
        severity = Severity.CRITICAL if momentum >= critical_at else Severity.WARN
        alerts.append(
            RuleAlert(
                alert_id=AlertType.VOLATILITY_SURGE.value,
                severity=severity.value,
                message=f"Volatility momentum={momentum}",
                rationale={
                    "volatility_momentum": momentum,
                    "margin": momentum / t.vol_momentum if t.vol_momentum else None,
                    "thresholds": {"warn": t.vol_momentum, "critical": critical_at},
                },
                timestamp=now_ms,
            )
        )

    if metrics.anomalies:
        recent_start = metrics.sample_count - t.anomaly_recent_window
        recent = [a for a in metrics.anomalies if a.index >= recent_start]
        if len(recent) >= t.anomaly_cluster_k:
            critical_k = max(t.anomaly_cluster_critical_k, t.anomaly_cluster_k)
            severity = Severity.CRITICAL if len(recent) >= critical_k else Severity.WARN
            alerts.append(
                RuleAlert(
                    alert_id=AlertType.ANOMALY_CLUSTER.value,
                    severity=severity.value,
                    message=f"Anomaly cluster size={len(recent)}",
                    rationale={
                        "recent_size": len(recent),
                        "window": t.anomaly_recent_window,
                        "thresholds": {"k": t.anomaly_cluster_k, "critical": critical_k},
                    },
                    timestamp=now_ms,
                )
            )

    if (
        metrics.sample_count >= t.min_samples
        and lr is not None
        and abs(lr) < t.tiny_slope
        and (smoothing or 0.0) > t.smoothing_high
        and (momentum or 0.0) <= t.plateau_vol_momentum_ceil
    ):
        alerts.append(
            RuleAlert(
                alert_id=AlertType.STABILITY_PLATEAU.value,
                severity=Severity.INFO.value,
                message="Plateau (lr slope ~ 0)",
                rationale={
                    "lr_slope": lr,
                    "smoothing_reduction_ratio": smoothing,
                    "volatility_momentum": momentum,
                    "thresholds": {"tiny_slope": t.tiny_slope, "smoothing_high": t.smoothing_high},
                },
                timestamp=now_ms,
            )
        )

    lr_sign, delta_sign = _sign(lr), _sign(delta)
    if lr_sign and delta_sign and lr_sign != delta_sign and abs(delta) >= t.reversal_delta_min:
        alerts.append(
            RuleAlert(
                alert_id=AlertType.REVERSAL_RISK.value,
                severity=Severity.WARN.value,
                message=f"Reversal risk: slope={lr} delta_weight={delta}",
                rationale={
                    "lr_slope": lr,
                    "delta_weight": delta,
                    "thresholds": {"reversal_delta_min": t.reversal_delta_min},
                },
                timestamp=now_ms,
            )
        )

    return alerts


def build_governance_report(
    trends: TrendReport,
    thresholds: GovernanceThresholds,
    generated_at: int,
) -> GovernanceReport:
    """Pure detection over a trend report."""
    strategies = {
        name: StrategyGovernance(alerts=evaluate_rules(metrics, thresholds, generated_at), metrics=metrics)
        for name, metrics in trends.strategies.items()
    }
    return GovernanceReport(
        window=trends.window,
        generated_at=generated_at,
        strategies=strategies,
        thresholds=thresholds,
    )


class GovernanceAlertEngine:
    """Evaluates governance rules and optionally persists the alerts."""

    def __init__(
        self,
        analyzer: TrendAnalyzer,
        alert_store: AlertStore,
        config: GovernanceConfig | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.analyzer = analyzer
        self.alert_store = alert_store
        self.config = config or GovernanceConfig()
        self._clock = clock or (lambda: to_ms(utc_now()))

    async def evaluate_governance(
        self,
        window: int | None = None,
        strategy: str | None = None,
        thresholds: GovernanceThresholds | None = None,
        adaptive_thresholds: AdaptiveThresholds | dict | None = None,
        anomaly_threshold: float | None = None,
        anomaly_baseline_window: int | None = None,
    ) -> GovernanceReport:
        """Detect alerts for every strategy with snapshot history. Writes nothing.

        Args:
            window: Snapshots per strategy to analyze (default 120)
            strategy: Restrict evaluation to one strategy
            thresholds: Base rule thresholds (default from config)
            adaptive_thresholds: Calibrated values overriding the base field by field
            anomaly_threshold: |z| for anomaly detection (default 2.5)
            anomaly_baseline_window: Anomaly baseline size (default 5)
        """
        window = window if window is not None else self.config.window
        base = thresholds or GovernanceThresholds.from_config(self.config)
        effective = base.with_adaptive(adaptive_thresholds)

        trends = await self.analyzer.compute_trends(
            window=window,
            anomaly_threshold=anomaly_threshold,
            anomaly_baseline_window=anomaly_baseline_window,
            strategy=strategy,
        )
        report = build_governance_report(trends, effective, generated_at=self._clock())
        logger.debug(f"Governance evaluation: {report.total_alerts} alerts across {len(report.strategies)} strategies")
        return report

    async def evaluate_governance_with_persistence(
        self,
        window: int | None = None,
        strategy: str | None = None,
        thresholds: GovernanceThresholds | None = None,
        adaptive_thresholds: AdaptiveThresholds | dict | None = None,
        anomaly_threshold: float | None = None,
        anomaly_baseline_window: int | None = None,
        context: dict | None = None,
    ) -> GovernanceReport:
        """Evaluate, then persist alerts that are outside their cooldown."""
        report = await self.evaluate_governance(
            window=window,
            strategy=strategy,
            thresholds=thresholds,
            adaptive_thresholds=adaptive_thresholds,
            anomaly_threshold=anomaly_threshold,
            anomaly_baseline_window=anomaly_baseline_window,
        )
        report.persistence = await self.alert_store.persist(report, context=context)
        return report
