"""DDL for the durable backend.

Timestamps are stored as epoch milliseconds (INTEGER) so ordering and
cutoff comparisons are exact.
"""

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS strategy_performance (
        strategy TEXT NOT NULL,
        perf_window TEXT NOT NULL,
        decisions_count INTEGER NOT NULL DEFAULT 0,
        avg_effectiveness REAL,
        p90_effectiveness REAL,
        decay_weighted_score REAL,
        weights_applied TEXT,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (strategy, perf_window)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strategy_weight_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        captured_at INTEGER NOT NULL,
        version TEXT NOT NULL,
        strategy TEXT NOT NULL,
        weight REAL NOT NULL,
        base_post REAL,
        decay_score REAL,
        avg_eff REAL,
        p90_eff REAL,
        spread REAL,
        early_gated INTEGER NOT NULL DEFAULT 0,
        checksum REAL,
        seed INTEGER,
        modifiers TEXT,
        meta TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_snapshots_captured ON strategy_weight_snapshots (captured_at)",
    "CREATE INDEX IF NOT EXISTS idx_snapshots_strategy_captured ON strategy_weight_snapshots (strategy, captured_at)",
    """
    CREATE TABLE IF NOT EXISTS governance_alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_timestamp INTEGER NOT NULL,
        generated_at INTEGER NOT NULL,
        strategy TEXT NOT NULL,
        alert_id TEXT NOT NULL,
        severity TEXT NOT NULL,
        message TEXT NOT NULL,
        hash TEXT NOT NULL,
        rationale TEXT,
        context TEXT,
        dedup_group TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_alerts_dedup ON governance_alerts (strategy, alert_id, alert_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_time ON governance_alerts (alert_timestamp, id)",
    """
    CREATE TABLE IF NOT EXISTS governance_alert_acks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_pk INTEGER NOT NULL UNIQUE,
        alert_timestamp INTEGER NOT NULL,
        severity TEXT NOT NULL,
        acknowledged_at INTEGER NOT NULL,
        acknowledged_by TEXT,
        note TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS governance_alert_escalations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_pk INTEGER NOT NULL UNIQUE,
        alert_timestamp INTEGER NOT NULL,
        severity TEXT NOT NULL,
        escalated_at INTEGER NOT NULL,
        reason_code TEXT NOT NULL,
        threshold_ms INTEGER,
        age_ms_at_escalation INTEGER,
        cooldown_until INTEGER,
        ack_after_escalation_ms INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS suppression_state_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dedup_group TEXT NOT NULL,
        prev_state TEXT NOT NULL,
        new_state TEXT NOT NULL,
        reason TEXT NOT NULL,
        changed_at INTEGER NOT NULL,
        duration_ms INTEGER,
        noise_score_enter REAL,
        noise_score_exit REAL,
        reentered_within_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_suppression_history_group ON suppression_state_history (dedup_group, changed_at)",
    """
    CREATE TABLE IF NOT EXISTS suppression_group_states (
        dedup_group TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        snapshot TEXT NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
]
