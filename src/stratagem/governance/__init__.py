"""Governance alerting: rule evaluation, cooldown persistence, query, acks, escalation and suppression."""

from stratagem.governance.acks import AckService, AlertNotFoundError
from stratagem.governance.alert_store import AlertFilters, AlertRecord, AlertStore
from stratagem.governance.engine import GovernanceAlertEngine, GovernanceReport, GovernanceThresholds
from stratagem.governance.escalation import EscalationService
from stratagem.governance.query import AlertQueryService, InvalidCursorError, InvalidRangeError
from stratagem.governance.suppression import SuppressionService, SuppressionSignals, SuppressionState

__all__ = [
    "GovernanceAlertEngine",
    "GovernanceReport",
    "GovernanceThresholds",
    "AlertStore",
    "AlertRecord",
    "AlertFilters",
    "AlertQueryService",
    "InvalidCursorError",
    "InvalidRangeError",
    "AckService",
    "AlertNotFoundError",
    "EscalationService",
    "SuppressionService",
    "SuppressionSignals",
    "SuppressionState",
]
