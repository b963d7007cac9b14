"""Adaptive noise suppression of governance alert groups.

Each dedup group (strategy|alert_id) moves through a hysteresis state
machine driven by a weighted noise score:

    ACTIVE -> CANDIDATE -> SUPPRESSED -> MONITORING -> ACTIVE

A group becomes a CANDIDATE when its score reaches the high threshold with
enough volume, and is SUPPRESSED when the next evaluation confirms it. It
drops to MONITORING once the score falls below the low threshold and returns
to ACTIVE after a run of quiet evaluations. While a group is SUPPRESSED its
new detections are muted instead of persisted. Critical groups and groups
whose escalations get acted on are never suppressed.

In robust mode the thresholds follow each group's own score history
(median + k * MAD) once enough samples exist.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import numpy as np

from stratagem.config import NoiseWeights, SuppressionConfig
from stratagem.db.d1 import D1Client
from stratagem.governance.alert_store import AlertFilters
from stratagem.types import Severity, from_ms, to_ms, utc_now

if TYPE_CHECKING:
    from stratagem.governance.acks import AckService
    from stratagem.governance.alert_store import AlertStore
    from stratagem.governance.escalation import EscalationService

logger = logging.getLogger(__name__)

TRANSITION_BUFFER = 500
EXIT_BUFFER = 300
RENOISE_HORIZON_MS = 20 * 60 * 1000
DRIFT_SAMPLES = 5
DRIFT_HIGH_FLOOR = 0.7  # Share of the static high kept while scores keep rising
STEADY_HIGH_FLOOR = 0.85
MIN_WEIGHT = 0.0001

SEVERITY_RANK = {Severity.INFO.value: 0, Severity.WARN.value: 1, Severity.CRITICAL.value: 2}


class SuppressionState(str, Enum):
    ACTIVE = "ACTIVE"
    CANDIDATE = "CANDIDATE"
    SUPPRESSED = "SUPPRESSED"
    MONITORING = "MONITORING"


def _unit(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


@dataclass
class SuppressionSignals:
    """Inputs to one group's noise score. Rates are fractions in [0, 1]."""

    ack_rate: float = 0.0
    suspected_false_rate: float = 0.0
    volume: float = 0.0
    dedup_ratio: float = 1.0
    escalation_effectiveness: float = 0.0
    severity: str | None = None

    def clamped(self) -> SuppressionSignals:
        return SuppressionSignals(
            ack_rate=_unit(self.ack_rate),
            suspected_false_rate=_unit(self.suspected_false_rate),
            volume=max(0.0, float(self.volume)),
            dedup_ratio=_unit(self.dedup_ratio),
            escalation_effectiveness=_unit(self.escalation_effectiveness),
            severity=self.severity,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DynamicThresholds:
    high: float
    low: float
    median: float
    mad: float


@dataclass
class GroupState:
    """Runtime suppression state of one dedup group. Timestamps are epoch ms."""

    dedup_group: str
    strategy: str | None = None
    severity_scope: str | None = None
    state: SuppressionState = SuppressionState.ACTIVE
    noise_score: float = 0.0
    noise_score_enter: float | None = None
    noise_score_exit: float | None = None
    suppressed_count: int = 0
    consecutive_stable: int = 0
    high_streak: int = 0
    last_volume: float = 0.0
    suppression_started_at: int | None = None
    recovered_at: int | None = None
    last_state_change_at: int | None = None
    last_eval_at: int | None = None
    dynamic: DynamicThresholds | None = None
    noise_history: deque[float] = field(default_factory=deque)
    ack_inside: list[float] = field(default_factory=list)
    ack_after_exit: list[float] = field(default_factory=list)
    durations: list[int] = field(default_factory=list)

    @property
    def suppressed(self) -> bool:
        return self.state is SuppressionState.SUPPRESSED

    def projection(self) -> dict:
        since = self.suppression_started_at if self.suppressed else None
        return {
            "suppressed": self.suppressed,
            "state": self.state.value,
            "noise_score": self.noise_score,
            "mode": "MUTE" if self.suppressed else "NONE",
            "since": from_ms(since).isoformat() if since is not None else None,
        }

    def to_snapshot(self) -> dict:
        return {
            "dedup_group": self.dedup_group,
            "strategy": self.strategy,
            "severity_scope": self.severity_scope,
            "state": self.state.value,
            "noise_score": self.noise_score,
            "noise_score_enter": self.noise_score_enter,
            "noise_score_exit": self.noise_score_exit,
            "suppressed_count": self.suppressed_count,
            "consecutive_stable": self.consecutive_stable,
            "high_streak": self.high_streak,
            "last_volume": self.last_volume,
            "suppression_started_at": self.suppression_started_at,
            "recovered_at": self.recovered_at,
            "last_state_change_at": self.last_state_change_at,
            "dynamic": asdict(self.dynamic) if self.dynamic else None,
            "noise_history": list(self.noise_history),
        }


@dataclass
class SuppressionTransition:
    dedup_group: str
    prev_state: str
    new_state: str
    reason: str
    changed_at: int
    duration_ms: int | None = None
    noise_score_enter: float | None = None
    noise_score_exit: float | None = None
    reentered_within_ms: int | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["changed_at"] = from_ms(self.changed_at).isoformat()
        return data


@dataclass
class GroupEvaluation:
    dedup_group: str
    state: str
    noise_score: float
    blocked: bool
    dyn_high: float | None = None
    dyn_low: float | None = None
    transition: str | None = None


@dataclass
class SuppressionEvaluation:
    groups: list[GroupEvaluation] = field(default_factory=list)
    transitions: list[SuppressionTransition] = field(default_factory=list)

    @property
    def evaluated(self) -> int:
        return len(self.groups)

    def to_dict(self) -> dict:
        return {
            "evaluated": self.evaluated,
            "suppressed": [g.dedup_group for g in self.groups if g.state == SuppressionState.SUPPRESSED.value],
            "transitions": [t.to_dict() for t in self.transitions],
        }


class SuppressionBackend(Protocol):
    async def save_transitions(self, transitions: list[SuppressionTransition]) -> None: ...

    async def save_states(self, snapshots: list[dict], updated_at: int) -> None: ...

    async def load_states(self) -> list[dict]: ...


class D1SuppressionBackend:
    """Transition history in suppression_state_history, group state in suppression_group_states."""

    INSERT_TRANSITION = """
        INSERT INTO suppression_state_history
            (dedup_group, prev_state, new_state, reason, changed_at, duration_ms,
             noise_score_enter, noise_score_exit, reentered_within_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    UPSERT_STATE = """
        INSERT INTO suppression_group_states (dedup_group, state, snapshot, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(dedup_group) DO UPDATE SET
            state = excluded.state,
            snapshot = excluded.snapshot,
            updated_at = excluded.updated_at
    """

    def __init__(self, d1: D1Client):
        self.d1 = d1

    async def save_transitions(self, transitions: list[SuppressionTransition]) -> None:
        if not transitions:
            return
        await self.d1.batch(
            [
                (
                    self.INSERT_TRANSITION,
                    [
                        t.dedup_group,
                        t.prev_state,
                        t.new_state,
                        t.reason,
                        t.changed_at,
                        t.duration_ms,
                        t.noise_score_enter,
                        t.noise_score_exit,
                        t.reentered_within_ms,
                    ],
                )
                for t in transitions
            ]
        )

    async def save_states(self, snapshots: list[dict], updated_at: int) -> None:
        if not snapshots:
            return
        await self.d1.batch(
            [
                (self.UPSERT_STATE, [s["dedup_group"], s["state"], json.dumps(s), updated_at])
                for s in snapshots
            ]
        )

    async def load_states(self) -> list[dict]:
        result = await self.d1.execute("SELECT snapshot FROM suppression_group_states")
        return [json.loads(row["snapshot"]) for row in result.get("results", [])]

    async def recent_transitions(self, dedup_group: str, limit: int = 100) -> list[dict]:
        result = await self.d1.execute(
            """
            SELECT * FROM suppression_state_history
            WHERE dedup_group = ?
            ORDER BY changed_at DESC, id DESC
            LIMIT ?
            """,
            [dedup_group, limit],
        )
        return result.get("results", [])


@dataclass
class _GroupTally:
    detected: int = 0
    muted: int = 0
    persisted: int = 0
    rows: int = 0
    acked: int = 0
    stale: int = 0
    escalated: int = 0
    escalation_acked: int = 0

    def signals(self) -> SuppressionSignals:
        unmuted = self.detected - self.muted
        return SuppressionSignals(
            ack_rate=self.acked / self.rows if self.rows else 1.0,
            suspected_false_rate=self.stale / self.rows if self.rows else 0.0,
            volume=float(self.detected),
            dedup_ratio=self.persisted / unmuted if unmuted else 1.0,
            escalation_effectiveness=self.escalation_acked / self.escalated if self.escalated else 0.0,
        )


class SuppressionService:
    """Evaluates per-group noise and decides which alert groups are muted.

    State is held in memory and, with a backend, mirrored to the database
    after each evaluation so a restart can hydrate it.
    """

    def __init__(
        self,
        config: SuppressionConfig | None = None,
        backend: SuppressionBackend | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.config = config or SuppressionConfig()
        self.weights = _normalized(asdict(self.config.weights))
        self.backend = backend
        self._clock = clock or (lambda: to_ms(utc_now()))
        self._groups: dict[str, GroupState] = {}
        self._transitions: deque[SuppressionTransition] = deque(maxlen=TRANSITION_BUFFER)
        self._exits: deque[tuple[str, int]] = deque(maxlen=EXIT_BUFFER)
        self._reentries: deque[tuple[str, int, int]] = deque(maxlen=EXIT_BUFFER)
        self._exit_count = 0
        self._false_suppressions = 0
        self._volume_total = 0.0
        self._volume_suppressed = 0.0

    def now_ms(self) -> int:
        return self._clock()

    def _group(self, dedup_group: str) -> GroupState:
        st = self._groups.get(dedup_group)
        if st is None:
            st = GroupState(dedup_group=dedup_group, noise_history=deque(maxlen=self.config.history_size))
            self._groups[dedup_group] = st
        return st

    def group(self, dedup_group: str) -> GroupState | None:
        return self._groups.get(dedup_group)

    def set_weights(self, **weights: float) -> NoiseWeights:
        """Replace some noise weights; all are clamped to [0.0001, 1] and renormalized."""
        unknown = set(weights) - {f.name for f in fields(NoiseWeights)}
        if unknown:
            raise ValueError(f"Unknown noise weights: {sorted(unknown)}")
        merged = {**asdict(self.weights), **weights}
        self.weights = _normalized(merged)
        return self.weights

    def note_alert(self, dedup_group: str, strategy: str, severity: str) -> None:
        """Track the group's strategy and the highest severity it has raised."""
        st = self._group(dedup_group)
        st.strategy = st.strategy or strategy
        if SEVERITY_RANK.get(severity, 0) >= SEVERITY_RANK.get(st.severity_scope or "", -1):
            st.severity_scope = severity

    def is_suppressed(self, dedup_group: str) -> bool:
        st = self._groups.get(dedup_group)
        return st is not None and st.suppressed

    def is_muted(self, dedup_group: str, severity: str) -> bool:
        """Whether a new detection of this severity should be muted."""
        if not self.is_suppressed(dedup_group):
            return False
        return severity != Severity.CRITICAL.value or self.config.allow_suppress_critical

    def get_state(self, dedup_group: str) -> dict:
        st = self._groups.get(dedup_group)
        if st is None:
            return GroupState(dedup_group=dedup_group).projection()
        return st.projection()

    def _volume_norm(self, volume: float) -> float:
        ref = max(volume, self.config.min_volume * 5, 1)
        return min(1.0, volume / ref)

    def noise_score(self, signals: SuppressionSignals) -> float:
        w = self.weights
        raw = (
            w.ack * (1 - signals.ack_rate)
            + w.suspected_false * signals.suspected_false_rate
            + w.volume * self._volume_norm(signals.volume)
            + w.dedup * (1 - signals.dedup_ratio)
            + w.escalation * (1 - signals.escalation_effectiveness)
        )
        return round(_unit(raw), 4)

    def _robust_thresholds(self, history: deque[float]) -> DynamicThresholds:
        cfg = self.config
        values = np.asarray(history, dtype=float)
        median = float(np.median(values))
        mad = max(float(np.median(np.abs(values - median))), cfg.epsilon_mad)
        recent = list(history)[-DRIFT_SAMPLES:]
        drift_up = len(recent) == DRIFT_SAMPLES and all(b >= a for a, b in zip(recent, recent[1:]))
        floor = cfg.high * (DRIFT_HIGH_FLOOR if drift_up else STEADY_HIGH_FLOOR)
        return DynamicThresholds(
            high=max(_unit(median + cfg.k_high * mad), floor),
            low=_unit(median + cfg.k_low * mad),
            median=median,
            mad=mad,
        )

    def _transition(
        self, st: GroupState, new: SuppressionState, reason: str, now: int
    ) -> SuppressionTransition | None:
        prev = st.state
        if prev is new:
            return None

        duration = None
        if prev is SuppressionState.SUPPRESSED and st.suppression_started_at is not None:
            duration = now - st.suppression_started_at

        reentered = None
        if new is SuppressionState.SUPPRESSED:
            st.suppression_started_at = now
            st.noise_score_enter = st.noise_score
            st.ack_inside = []
            if st.recovered_at is not None:
                reentered = now - st.recovered_at
                self._reentries.append((st.dedup_group, reentered, now))

        if prev is SuppressionState.SUPPRESSED:
            st.recovered_at = now
            st.noise_score_exit = st.noise_score
            if duration is not None:
                st.durations.append(duration)
                self._exit_count += 1
                self._exits.append((st.dedup_group, now))
            st.ack_after_exit = []

        if prev is SuppressionState.MONITORING and new is SuppressionState.ACTIVE:
            if st.ack_inside and st.ack_after_exit:
                inside = float(np.mean(st.ack_inside))
                after = float(np.mean(st.ack_after_exit))
                if after - inside >= self.config.recovery_ack_rate_jump:
                    self._false_suppressions += 1
                    logger.info(
                        f"Suppression of {st.dedup_group} looks false: ack rate {inside:.2f} -> {after:.2f}"
                    )
            st.ack_after_exit = []
            st.suppression_started_at = None

        st.state = new
        st.last_state_change_at = now
        record = SuppressionTransition(
            dedup_group=st.dedup_group,
            prev_state=prev.value,
            new_state=new.value,
            reason=reason,
            changed_at=now,
            duration_ms=duration,
            noise_score_enter=st.noise_score_enter,
            noise_score_exit=st.noise_score_exit,
            reentered_within_ms=reentered,
        )
        self._transitions.append(record)
        logger.info(
            f"Suppression {st.dedup_group}: {prev.value} -> {new.value} ({reason}, noise={st.noise_score:.4f})"
        )
        return record

    def _evaluate_group(
        self, st: GroupState, raw: SuppressionSignals, now: int
    ) -> tuple[GroupEvaluation, SuppressionTransition | None]:
        cfg = self.config
        sig = raw.clamped()
        if sig.severity and SEVERITY_RANK.get(sig.severity, 0) > SEVERITY_RANK.get(st.severity_scope or "", -1):
            st.severity_scope = sig.severity

        st.noise_score = self.noise_score(sig)
        st.last_volume = sig.volume
        st.last_eval_at = now
        st.noise_history.append(st.noise_score)
        if cfg.robust and len(st.noise_history) >= cfg.min_samples_for_robust:
            st.dynamic = self._robust_thresholds(st.noise_history)

        dyn = st.dynamic if cfg.robust else None
        high = dyn.high if dyn and dyn.high else cfg.high
        low = dyn.low if dyn and dyn.low else cfg.low
        gated = dyn is not None and dyn.high < cfg.high
        if gated:
            st.high_streak = st.high_streak + 1 if st.noise_score >= high else 0
        else:
            st.high_streak = 0
        gate_open = not gated or st.high_streak >= max(1, cfg.min_consecutive_above_high)

        blocked = (
            st.severity_scope == Severity.CRITICAL.value and not cfg.allow_suppress_critical
        ) or sig.escalation_effectiveness >= cfg.escalation_block_threshold

        self._volume_total += sig.volume
        if st.suppressed:
            self._volume_suppressed += sig.volume
            st.ack_inside.append(sig.ack_rate)
        elif st.suppression_started_at is not None:
            st.ack_after_exit.append(sig.ack_rate)

        score = st.noise_score
        record = None
        if st.state is SuppressionState.ACTIVE:
            st.consecutive_stable = 0
            if not blocked and sig.volume >= cfg.min_volume and score >= high and gate_open:
                record = self._transition(st, SuppressionState.CANDIDATE, "noise_above_high", now)
        elif st.state is SuppressionState.CANDIDATE:
            if blocked:
                record = self._transition(st, SuppressionState.ACTIVE, "blocked", now)
            elif sig.volume < cfg.min_volume:
                record = self._transition(st, SuppressionState.ACTIVE, "volume_below_min", now)
            elif score >= high and gate_open:
                record = self._transition(st, SuppressionState.SUPPRESSED, "confirmed_above_high", now)
            elif score < low:
                record = self._transition(st, SuppressionState.ACTIVE, "noise_below_low", now)
        elif st.state is SuppressionState.SUPPRESSED:
            st.suppressed_count += 1
            if score < low:
                st.consecutive_stable += 1
                record = self._transition(st, SuppressionState.MONITORING, "dropped_below_low", now)
            else:
                st.consecutive_stable = 0
        else:
            if score < low:
                st.consecutive_stable += 1
                if st.consecutive_stable >= cfg.stable_recovery_windows:
                    record = self._transition(st, SuppressionState.ACTIVE, "stable_recovery", now)
            elif score >= high and not blocked:
                st.consecutive_stable = 0
                record = self._transition(st, SuppressionState.SUPPRESSED, "respiked", now)
            else:
                st.consecutive_stable = 0

        outcome = GroupEvaluation(
            dedup_group=st.dedup_group,
            state=st.state.value,
            noise_score=score,
            blocked=blocked,
            dyn_high=dyn.high if dyn else None,
            dyn_low=dyn.low if dyn else None,
            transition=record.reason if record else None,
        )
        return outcome, record

    async def evaluate(self, signals: dict[str, SuppressionSignals]) -> SuppressionEvaluation:
        """Advance every group in `signals` by one evaluation."""
        now = self.now_ms()
        result = SuppressionEvaluation()
        for dedup_group, sig in signals.items():
            st = self._group(dedup_group)
            outcome, record = self._evaluate_group(st, sig, now)
            result.groups.append(outcome)
            if record is not None:
                result.transitions.append(record)

        if self.backend is not None and result.groups:
            try:
                await self.backend.save_transitions(result.transitions)
                await self.backend.save_states(
                    [self._groups[g.dedup_group].to_snapshot() for g in result.groups], now
                )
            except Exception as e:
                logger.warning(f"Failed to persist suppression state, keeping in memory: {e}")
        return result

    async def collect_signals(
        self,
        alert_store: AlertStore,
        ack_service: AckService | None = None,
        escalation_service: EscalationService | None = None,
        window_ms: int | None = None,
    ) -> dict[str, SuppressionSignals]:
        """Derive per-group signals from the trailing window of detections and alerts.

        Every group seen in the window is included, plus every group that is
        not ACTIVE so suppressed groups keep being re-evaluated when they go
        quiet.
        """
        now = self.now_ms()
        start = now - (window_ms or self.config.signal_window_ms)
        tallies: dict[str, _GroupTally] = {}

        for d in alert_store.detections_between(start, now):
            tally = tallies.setdefault(f"{d.strategy}|{d.alert_id}", _GroupTally())
            tally.detected += 1
            if d.muted:
                tally.muted += 1
            elif d.persisted:
                tally.persisted += 1

        rows = await alert_store.rows_between(AlertFilters(from_ms=start, to_ms=now))
        ids = [r.id for r in rows]
        acks = await ack_service.get_ack_state(ids) if ack_service is not None else {}
        escalations = await escalation_service.get_escalation_state(ids) if escalation_service is not None else {}

        for row in rows:
            tally = tallies.setdefault(row.dedup_group, _GroupTally())
            tally.rows += 1
            if row.id in acks:
                tally.acked += 1
            elif now - row.alert_timestamp > self.config.stale_ack_ms:
                tally.stale += 1
            escalation = escalations.get(row.id)
            if escalation is not None:
                tally.escalated += 1
                if escalation.ack_after_escalation_ms is not None:
                    tally.escalation_acked += 1

        for dedup_group, st in self._groups.items():
            if st.state is not SuppressionState.ACTIVE:
                tallies.setdefault(dedup_group, _GroupTally())

        return {group: tally.signals() for group, tally in tallies.items()}

    def metrics(self) -> dict:
        """Group counts per state, false-suppression and re-noise rates."""
        counts = {s.value.lower(): 0 for s in SuppressionState}
        for st in self._groups.values():
            counts[st.state.value.lower()] += 1

        now = self.now_ms()
        window_exits = {g for g, at in self._exits if now - at <= RENOISE_HORIZON_MS}
        exits_in_window = sum(1 for _, at in self._exits if now - at <= RENOISE_HORIZON_MS)
        re_noise = sum(
            1
            for g, re_ms, at in self._reentries
            if now - at <= RENOISE_HORIZON_MS and re_ms <= RENOISE_HORIZON_MS and g in window_exits
        )
        return {
            **counts,
            "false_suppression_rate": round(self._false_suppressions / self._exit_count, 4)
            if self._exit_count
            else 0.0,
            "re_noise_rate": round(re_noise / exits_in_window, 4) if exits_in_window else 0.0,
            "suppressed_volume_ratio": round(self._volume_suppressed / self._volume_total, 4)
            if self._volume_total
            else 0.0,
        }

    def recent_transitions(self, limit: int = 100) -> list[dict]:
        return [t.to_dict() for t in list(self._transitions)[-limit:]]

    def snapshots(self) -> list[dict]:
        return [st.to_snapshot() for st in self._groups.values()]

    def hydrate(self, snapshots: list[dict]) -> int:
        """Merge persisted group snapshots into memory; returns the number applied."""
        count = 0
        for snap in snapshots or []:
            dedup_group = snap.get("dedup_group")
            if not dedup_group:
                continue
            st = self._group(dedup_group)
            st.state = SuppressionState(snap.get("state") or st.state.value)
            st.strategy = snap.get("strategy") or st.strategy
            st.severity_scope = snap.get("severity_scope") or st.severity_scope
            for name in (
                "noise_score",
                "noise_score_enter",
                "noise_score_exit",
                "suppressed_count",
                "consecutive_stable",
                "high_streak",
                "last_volume",
                "suppression_started_at",
                "recovered_at",
                "last_state_change_at",
            ):
                if snap.get(name) is not None:
                    setattr(st, name, snap[name])
            if snap.get("dynamic"):
                st.dynamic = DynamicThresholds(**snap["dynamic"])
            if snap.get("noise_history"):
                st.noise_history = deque(snap["noise_history"], maxlen=self.config.history_size)
            count += 1
        return count

    async def load(self) -> int:
        """Hydrate group state from the backend, if there is one."""
        if self.backend is None:
            return 0
        try:
            snapshots = await self.backend.load_states()
        except Exception as e:
            logger.warning(f"Could not load suppression state: {e}")
            return 0
        count = self.hydrate(snapshots)
        logger.info(f"Hydrated {count} suppression groups")
        return count


def _normalized(weights: dict[str, float]) -> NoiseWeights:
    clamped = {k: min(1.0, max(MIN_WEIGHT, float(v))) for k, v in weights.items()}
    total = sum(clamped.values())
    return NoiseWeights(**{k: v / total for k, v in clamped.items()})
