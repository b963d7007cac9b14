"""Adaptive strategy weighting and governance analytics.

Scores competing decision strategies from their outcomes, snapshots the
resulting weight distribution, derives trend and anomaly signals from that
history and raises deduplicated governance alerts when drift crosses
thresholds calibrated from the data itself.
"""
