"""Configurable parameters for the adaptive weighting and governance pipeline.

Defaults reproduce the tuned values the pipeline was calibrated with.
Every value can be overridden via environment variables with prefix
STRATAGEM_ (see PipelineConfig.from_env).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_STRATEGIES = ("RISK_MITIGATION", "EXPEDITE", "RE_ENGAGE", "STEADY")


@dataclass
class TrackerConfig:
    """Parameters for decision ingestion and weight computation."""

    strategies: tuple[str, ...] = DEFAULT_STRATEGIES
    decay_lambda: float = 0.93  # Exponential decay per decision
    min_floor: float = 0.15  # Lowest weight any strategy may receive
    buffer_size: int = 50  # Rolling effectiveness buffer per strategy
    early_gate_samples: int = 5  # Below this, heuristics are skipped
    neutral_base: float = 0.25  # Base score for gated strategies
    checksum_tolerance: float = 1e-6


@dataclass
class SnapshotConfig:
    """Auto-snapshot scheduling and retention."""

    enabled: bool = False
    decision_interval: int = 25  # Decisions between auto snapshots
    min_seconds_between_snapshots: float = 120.0  # Debounce guard
    purge_days: float | None = 30.0  # Purge after auto snapshot (None disables)
    memory_capacity: int = 500  # Ring buffer size for the memory backend


@dataclass
class TrendConfig:
    """Defaults for trend extraction over snapshot history."""

    window: int = 60
    ma_window: int = 5
    anomaly_threshold: float = 2.5  # |z| above this is an anomaly
    anomaly_baseline_window: int | None = None  # Trailing baseline size (None uses ma_window)
    flat_baseline_deviation: float = 0.05  # Used when baseline std is 0


@dataclass
class CalibrationConfig:
    """Quantile calibration of governance thresholds."""

    calibration_window: int = 300
    trim_pct: float = 0.02  # Symmetric outlier trim per side
    min_samples: int = 8  # Snapshots a strategy needs to contribute
    anomaly_recent_window: int = 10


@dataclass
class GovernanceConfig:
    """Alert rule defaults, cooldown dedup and query limits."""

    window: int = 120
    cooldown_ms: int = 30_000
    min_samples: int = 12
    anomaly_recent_window: int = 10
    anomaly_cluster_critical_k: int = 4
    plateau_vol_momentum_ceil: float = 0.1
    volatility_critical_multiplier: float = 2.0  # Surge is critical at this multiple
    max_window_days: float = 14.0  # Query/analytics span clamp
    alert_capacity: int = 500  # Ring buffer size for the memory backend


@dataclass
class EscalationConfig:
    """Escalation of stale, unacknowledged alerts."""

    severities: tuple[str, ...] = ("critical",)
    base_sla_ms: int = 5 * 60 * 1000
    cooldown_min_ms: int = 2 * 60 * 1000
    cooldown_max_ms: int = 30 * 60 * 1000
    discord_webhook_url: str | None = None


@dataclass
class NoiseWeights:
    """Weights of the suppression noise score terms (normalized to sum 1)."""

    ack: float = 0.3  # Applied to 1 - ack rate
    suspected_false: float = 0.25
    volume: float = 0.15
    dedup: float = 0.15  # Applied to 1 - dedup ratio
    escalation: float = 0.15  # Applied to 1 - escalation effectiveness


@dataclass
class SuppressionConfig:
    """Adaptive noise suppression of alert groups."""

    enabled: bool = True
    high: float = 0.65  # Noise score that starts (and confirms) suppression
    low: float = 0.45  # Noise score below which a group recovers
    min_volume: int = 5  # Detections per signal window needed to suppress
    stable_recovery_windows: int = 3  # Quiet evaluations before MONITORING -> ACTIVE
    recovery_ack_rate_jump: float = 0.3  # Ack rate gain after exit that marks a false suppression
    escalation_block_threshold: float = 0.6  # Effective escalations block suppression
    allow_suppress_critical: bool = False
    weights: NoiseWeights = field(default_factory=NoiseWeights)
    robust: bool = True  # Per-group median/MAD thresholds once history allows
    history_size: int = 30
    min_samples_for_robust: int = 8
    k_high: float = 1.2
    k_low: float = 0.4
    epsilon_mad: float = 0.01
    min_consecutive_above_high: int = 2  # Gate when the robust high sits below `high`
    signal_window_ms: int = 60 * 60 * 1000
    stale_ack_ms: int = 15 * 60 * 1000  # Unacked this long counts as a suspected false alert


@dataclass
class JobConfig:
    """Scheduled job cadence."""

    purge_interval_seconds: float = 6 * 3600.0
    governance_interval_seconds: float = 300.0
    jitter: float = 0.1  # Fraction of the interval used as +/- jitter
    alert_retention_days: float = 30.0
    heartbeat_url: str | None = None


@dataclass
class PipelineConfig:
    """Aggregated configuration for the whole pipeline.

    All values can be overridden via environment variables with prefix STRATAGEM_.
    Example: STRATAGEM_COOLDOWN_MS=60000 to set governance.cooldown_ms to one minute.
    """

    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)
    trends: TrendConfig = field(default_factory=TrendConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    governance: GovernanceConfig = field(default_factory=GovernanceConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    suppression: SuppressionConfig = field(default_factory=SuppressionConfig)
    jobs: JobConfig = field(default_factory=JobConfig)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables with defaults."""
        config = cls()

        # Tracker
        if val := os.environ.get("STRATAGEM_STRATEGIES"):
            config.tracker.strategies = tuple(s.strip() for s in val.split(",") if s.strip())
        if val := os.environ.get("STRATAGEM_DECAY_LAMBDA"):
            config.tracker.decay_lambda = float(val)
        if val := os.environ.get("STRATAGEM_MIN_FLOOR"):
            config.tracker.min_floor = float(val)

        # Auto snapshots
        if val := os.environ.get("STRATAGEM_AUTO_SNAPSHOT"):
            config.snapshots.enabled = val.strip().lower() in ("1", "true", "yes", "on")
        if val := os.environ.get("STRATAGEM_DECISION_INTERVAL"):
            config.snapshots.decision_interval = int(val)
        if val := os.environ.get("STRATAGEM_MIN_SECONDS_BETWEEN_SNAPSHOTS"):
            config.snapshots.min_seconds_between_snapshots = float(val)
        if val := os.environ.get("STRATAGEM_PURGE_DAYS"):
            config.snapshots.purge_days = float(val) if float(val) > 0 else None

        # Trends
        if val := os.environ.get("STRATAGEM_ANOMALY_THRESHOLD"):
            config.trends.anomaly_threshold = float(val)
        if val := os.environ.get("STRATAGEM_ANOMALY_BASELINE_WINDOW"):
            config.trends.anomaly_baseline_window = int(val)

        # Calibration
        if val := os.environ.get("STRATAGEM_CALIBRATION_WINDOW"):
            config.calibration.calibration_window = int(val)
        if val := os.environ.get("STRATAGEM_TRIM_PCT"):
            config.calibration.trim_pct = float(val)
        if val := os.environ.get("STRATAGEM_MIN_SAMPLES"):
            config.calibration.min_samples = int(val)

        # Governance
        if val := os.environ.get("STRATAGEM_COOLDOWN_MS"):
            config.governance.cooldown_ms = int(val)
        if val := os.environ.get("STRATAGEM_MAX_WINDOW_DAYS"):
            config.governance.max_window_days = float(val)

        # Escalation
        if val := os.environ.get("STRATAGEM_DISCORD_WEBHOOK_URL"):
            config.escalation.discord_webhook_url = val
        if val := os.environ.get("STRATAGEM_CRITICAL_SLA_MS"):
            config.escalation.base_sla_ms = int(val)

        # Suppression
        if val := os.environ.get("STRATAGEM_SUPPRESSION"):
            config.suppression.enabled = val.strip().lower() in ("1", "true", "yes", "on")
        if val := os.environ.get("STRATAGEM_SUPPRESSION_HIGH"):
            config.suppression.high = float(val)
        if val := os.environ.get("STRATAGEM_SUPPRESSION_LOW"):
            config.suppression.low = float(val)
        if val := os.environ.get("STRATAGEM_SUPPRESSION_MIN_VOLUME"):
            config.suppression.min_volume = int(val)

        # Jobs
        if val := os.environ.get("STRATAGEM_PURGE_INTERVAL_SECONDS"):
            config.jobs.purge_interval_seconds = float(val)
        if val := os.environ.get("STRATAGEM_GOVERNANCE_INTERVAL_SECONDS"):
            config.jobs.governance_interval_seconds = float(val)
        if val := os.environ.get("STRATAGEM_JOB_JITTER"):
            config.jobs.jitter = float(val)
        if val := os.environ.get("STRATAGEM_HEARTBEAT_URL"):
            config.jobs.heartbeat_url = val

        return config
