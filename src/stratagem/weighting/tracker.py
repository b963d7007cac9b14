"""Adaptive strategy weighting from historical decision outcomes.

Each decision outcome updates a decayed score and a rolling effectiveness
buffer for its strategy. compute_unified_weights() turns those aggregates
into a normalized weight distribution in fixed stages:

1. Early gating: fewer than 5 buffered samples gives a neutral base (0.25)
2. Base score: max(decay score, avg effectiveness / 10)
3. Spread (p90 - avg): < 2 boosts by 5%, >= 4 applies a volatility penalty
4. Volatility clamp: a volatile strategy never outranks the best stable one
5. Dominance cap: a lone volatile strategy with data is capped at 0.4
6. Floor at MIN_FLOOR, normalize, then re-apply the floor on the normalized
   weights so every strategy keeps at least MIN_FLOOR of the probability mass

Every stage appends a rationale entry so the artifact explains itself.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from stratagem.config import TrackerConfig
from stratagem.types import PerformanceWindow, utc_now
from stratagem.weighting.repository import MemoryPerformanceRepository, PerformanceRecord

if TYPE_CHECKING:
    from datetime import datetime

    from stratagem.weighting.repository import PerformanceRepository

logger = logging.getLogger(__name__)

ARTIFACT_VERSION = "unified-v1"

# Spread classification
STABLE_SPREAD = 2.0
VOLATILE_SPREAD = 4.0
STABILITY_BOOST = 1.05
PENALTY_SLOPE = 0.08
PENALTY_MIN_FACTOR = 0.6
CLAMP_RATIO = 0.95
DOMINANCE_CAP = 0.4


class NormalizationDriftError(Exception):
    """Normalized weights no longer sum to 1."""


@dataclass
class StrategyWeight:
    """One strategy's entry in the weight artifact."""

    name: str
    samples: int
    decay_score: float | None
    avg_eff: float | None
    p90_eff: float | None
    spread: float | None
    early_gated: bool
    base_pre_modifiers: float
    base_post_modifiers: float
    clamp_applied: float | None = None
    dominance_cap_applied: float | None = None
    floor_applied: bool = False
    final_weight: float = 0.0
    rationale: list[str] = field(default_factory=list)
    modifiers: dict = field(default_factory=dict)

    @property
    def is_stable(self) -> bool:
        return self.spread is not None and self.spread < STABLE_SPREAD

    @property
    def is_volatile(self) -> bool:
        return self.spread is not None and self.spread >= VOLATILE_SPREAD

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "samples": self.samples,
            "decay_score": self.decay_score,
            "avg_eff": self.avg_eff,
            "p90_eff": self.p90_eff,
            "spread": self.spread,
            "early_gated": self.early_gated,
            "base_pre_modifiers": self.base_pre_modifiers,
            "base_post_modifiers": self.base_post_modifiers,
            "clamp_applied": self.clamp_applied,
            "dominance_cap_applied": self.dominance_cap_applied,
            "floor_applied": self.floor_applied,
            "final_weight": self.final_weight,
            "rationale": list(self.rationale),
            "modifiers": dict(self.modifiers),
        }


@dataclass
class WeightArtifact:
    """Full output of one weight computation."""

    strategies: list[StrategyWeight]
    sum_before_floor: float
    sum_after_floor: float
    checksum: float
    early_gated_strategies: list[str]
    params: dict
    seed: int | None = None
    version: str = ARTIFACT_VERSION

    @property
    def weights(self) -> dict[str, float]:
        return {s.name: s.final_weight for s in self.strategies}

    def get(self, name: str) -> StrategyWeight | None:
        for s in self.strategies:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "strategies": [s.to_dict() for s in self.strategies],
            "normalization": {
                "sum_before_floor": self.sum_before_floor,
                "sum_after_floor": self.sum_after_floor,
                "checksum": self.checksum,
            },
            "meta": {
                "early_gated_strategies": list(self.early_gated_strategies),
                "params": dict(self.params),
                "seed": self.seed,
            },
        }


@dataclass
class SelectionResult:
    """Outcome of a weighted strategy draw."""

    strategy: str
    weights: dict[str, float]
    artifact: WeightArtifact


def nearest_rank(sorted_values: list[float], pct: float) -> float | None:
    """Nearest-rank percentile: sorted[ceil(p * n) - 1]."""
    if not sorted_values:
        return None
    n = len(sorted_values)
    idx = min(n - 1, math.ceil(pct * n) - 1)
    return sorted_values[max(idx, 0)]


def apply_floor(weights: np.ndarray, floor: float) -> tuple[np.ndarray, np.ndarray]:
    """Raise normalized weights below floor to floor, rescaling the rest.

    Repeats until no unpinned weight is below floor. Keeps the sum at 1
    and preserves ordering. Requires floor * len(weights) <= 1.

    Returns:
        (adjusted weights, boolean mask of pinned entries)
    """
    adjusted = weights.astype(float).copy()
    pinned = np.zeros(len(adjusted), dtype=bool)
    while True:
        low = (~pinned) & (adjusted < floor - 1e-12)
        if not low.any():
            break
        pinned |= low
        free_mass = 1.0 - floor * pinned.sum()
        free_total = weights[~pinned].sum()
        adjusted[pinned] = floor
        if free_total > 0:
            adjusted[~pinned] = weights[~pinned] / free_total * free_mass
    return adjusted, pinned


class StrategyPerformanceTracker:
    """Tracks per-strategy decision outcomes and derives selection weights.

    State lives on the instance: one record per (strategy, window) plus a
    bounded effectiveness buffer per strategy. Records are written through to
    the repository; a failed write is logged and the in-memory state stays
    authoritative.
    """

    WINDOWS = (PerformanceWindow.LAST_50, PerformanceWindow.SEVEN_DAYS)

    def __init__(
        self,
        config: TrackerConfig | None = None,
        repository: PerformanceRepository | None = None,
    ):
        self.config = config or TrackerConfig()
        if self.config.min_floor * len(self.config.strategies) > 1.0:
            raise ValueError(
                f"min_floor {self.config.min_floor} cannot hold for "
                f"{len(self.config.strategies)} strategies"
            )
        self.repository = repository or MemoryPerformanceRepository()
        self._records: dict[tuple[str, str], PerformanceRecord] = {}
        self._buffers: dict[str, deque[float]] = {
            s: deque(maxlen=self.config.buffer_size) for s in self.config.strategies
        }
        self._rng = np.random.default_rng()

    @property
    def strategies(self) -> list[str]:
        return list(self.config.strategies)

    def get_record(self, strategy: str, window: str = PerformanceWindow.LAST_50.value) -> PerformanceRecord | None:
        return self._records.get((strategy, window))

    def buffer_for(self, strategy: str) -> list[float]:
        return list(self._buffers.get(strategy, ()))

    async def hydrate(self) -> int:
        """Restore aggregate records from the repository.

        Effectiveness buffers are not persisted, so restored strategies stay
        early-gated until they collect fresh samples.
        """
        records = await self.repository.load_all()
        for record in records:
            if record.strategy in self._buffers:
                self._records[(record.strategy, record.window)] = record
        logger.info(f"Hydrated {len(records)} performance records")
        return len(records)

    async def update_on_decision(
        self,
        strategy: str,
        effectiveness: float | None = None,
        timestamp: datetime | None = None,
    ) -> bool:
        """Apply one decision outcome to both windows of a strategy.

        Args:
            strategy: Strategy id; unknown ids are ignored
            effectiveness: Outcome score 0-10, or None for a decay-only update
            timestamp: Decision time (defaults to now)

        Returns:
            True if the strategy was known and updated
        """
        if strategy not in self._buffers:
            logger.debug(f"Ignoring decision for unknown strategy {strategy}")
            return False

        now = timestamp or utc_now()
        lam = self.config.decay_lambda
        buffer = self._buffers[strategy]

        for window in self.WINDOWS:
            key = (strategy, window.value)
            record = self._records.get(key) or PerformanceRecord(strategy=strategy, window=window.value)

            score = record.decay_weighted_score * lam
            if effectiveness is not None:
                score += effectiveness * (1 - lam)
            record.decay_weighted_score = score
            record.decisions_count += 1
            record.updated_at = now

            if window is PerformanceWindow.LAST_50 and effectiveness is not None:
                buffer.append(float(effectiveness))
                ordered = sorted(buffer)
                record.avg_effectiveness = float(np.mean(ordered))
                record.p90_effectiveness = nearest_rank(ordered, 0.9)

            self._records[key] = record
            await self._save(record)

        return True

    async def _save(self, record: PerformanceRecord) -> None:
        try:
            await self.repository.save(record)
        except Exception as e:
            key = (record.strategy, record.window)
            logger.warning(f"Failed to persist performance record {key}, keeping in memory: {e}")

    def compute_unified_weights(self, seed: int | None = None) -> WeightArtifact:
        """Compute the normalized weight artifact from current aggregates.

        Raises:
            NormalizationDriftError: If the final weights do not sum to 1
        """
        cfg = self.config
        entries: list[StrategyWeight] = []
        early: list[str] = []

        for name in cfg.strategies:
            record = self._records.get((name, PerformanceWindow.LAST_50.value))
            samples = len(self._buffers[name])

            if record is None or samples < cfg.early_gate_samples:
                early.append(name)
                entries.append(
                    StrategyWeight(
                        name=name,
                        samples=samples,
                        decay_score=None,
                        avg_eff=None,
                        p90_eff=None,
                        spread=None,
                        early_gated=True,
                        base_pre_modifiers=cfg.neutral_base,
                        base_post_modifiers=cfg.neutral_base,
                        rationale=[f"earlyGated samples={samples}<{cfg.early_gate_samples} base={cfg.neutral_base}"],
                    )
                )
                continue

            decay = record.decay_weighted_score
            avg = record.avg_effectiveness
            p90 = record.p90_effectiveness
            spread = p90 - avg if (p90 is not None and avg is not None) else None
            base = max(decay, (avg or 0.0) / 10)
            entry = StrategyWeight(
                name=name,
                samples=samples,
                decay_score=decay,
                avg_eff=avg,
                p90_eff=p90,
                spread=spread,
                early_gated=False,
                base_pre_modifiers=base,
                base_post_modifiers=base,
                rationale=[f"base={base:.4f} (decay={decay:.4f}, avg/10={(avg or 0.0) / 10:.4f})"],
            )

            if entry.is_stable:
                entry.base_post_modifiers *= STABILITY_BOOST
                entry.modifiers["stability_boost_applied"] = True
                entry.rationale.append(f"stabilityBoost +5% (spread={spread:.2f})")
            elif entry.is_volatile:
                factor = max(PENALTY_MIN_FACTOR, 1 - (spread - VOLATILE_SPREAD) * PENALTY_SLOPE)
                entry.base_post_modifiers *= factor
                entry.modifiers["volatility_penalty_applied"] = True
                entry.modifiers["volatility_penalty_factor"] = factor
                entry.rationale.append(f"volatilityPenalty factor={factor:.3f} (spread={spread:.2f})")
            entries.append(entry)

        stable_max = max((e.base_post_modifiers for e in entries if e.is_stable), default=0.0)
        for e in entries:
            if e.is_volatile and stable_max > 0 and e.base_post_modifiers > stable_max:
                e.base_post_modifiers = stable_max * CLAMP_RATIO
                e.clamp_applied = e.base_post_modifiers
                e.modifiers["volatility_clamp_applied"] = True
                e.rationale.append(f"volatilityClamp -> {e.base_post_modifiers:.4f}")

        with_data = [e for e in entries if not e.early_gated]
        if len(with_data) == 1:
            e = with_data[0]
            if e.is_volatile and e.base_post_modifiers > DOMINANCE_CAP:
                e.base_post_modifiers = DOMINANCE_CAP
                e.dominance_cap_applied = DOMINANCE_CAP
                e.modifiers["dominance_cap_applied"] = True
                e.rationale.append(f"dominanceCap {DOMINANCE_CAP}")

        sum_before_floor = float(sum(e.base_post_modifiers for e in entries))
        for e in entries:
            if e.base_post_modifiers < cfg.min_floor:
                e.base_post_modifiers = cfg.min_floor
                e.floor_applied = True
                e.rationale.append("floorApplied")
        scores = np.array([e.base_post_modifiers for e in entries], dtype=float)
        sum_after_floor = float(scores.sum())

        normalized, pinned = apply_floor(scores / sum_after_floor, cfg.min_floor)
        for e, weight, was_pinned in zip(entries, normalized, pinned):
            e.final_weight = float(weight)
            if was_pinned:
                e.floor_applied = True
                e.rationale.append(f"normalizedFloor -> {cfg.min_floor}")
            e.rationale.append(f"finalWeight={e.final_weight:.4f}")

        checksum = float(normalized.sum())
        if abs(checksum - 1.0) > cfg.checksum_tolerance:
            logger.error(f"Weight normalization drift: checksum={checksum:.8f} weights={normalized.tolist()}")
            raise NormalizationDriftError(f"Normalized weights sum to {checksum}, expected 1")

        return WeightArtifact(
            strategies=entries,
            sum_before_floor=sum_before_floor,
            sum_after_floor=sum_after_floor,
            checksum=checksum,
            early_gated_strategies=early,
            params={"decay_lambda": cfg.decay_lambda, "min_floor": cfg.min_floor},
            seed=seed,
        )

    async def get_weights(self) -> dict:
        """Final weights per strategy, stamped onto the LAST_50 records and saved."""
        weights = self.compute_unified_weights().weights
        raw = []
        for (_, window), record in self._records.items():
            if window == PerformanceWindow.LAST_50.value:
                record.weights_applied = dict(weights)
                await self._save(record)
                raw.append(record.to_dict())
        return {"weights": weights, "raw": raw}

    def get_weight_details(self) -> WeightArtifact:
        return self.compute_unified_weights()

    def select_strategy(self, seed: int | None = None) -> SelectionResult:
        """Weighted random draw over final weights.

        The same seed against an unchanged artifact always returns the same
        strategy; without a seed the tracker's own generator is used.
        """
        artifact = self.compute_unified_weights(seed=seed)
        rng = np.random.default_rng(seed) if seed is not None else self._rng
        r = rng.random()
        cumulative = np.cumsum([s.final_weight for s in artifact.strategies])
        idx = min(int(np.searchsorted(cumulative, r, side="left")), len(cumulative) - 1)
        return SelectionResult(
            strategy=artifact.strategies[idx].name,
            weights=artifact.weights,
            artifact=artifact,
        )
