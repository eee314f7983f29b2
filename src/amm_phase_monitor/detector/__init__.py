"""Detection layer - Phase classification, invariant and anomaly checks."""

from amm_phase_monitor.detector.anomaly import AnomalyDetector
from amm_phase_monitor.detector.models import (
    Alert,
    AlertKind,
    AlertPriority,
    CheckOutcome,
    CheckResult,
    Evaluation,
)
from amm_phase_monitor.detector.phase import PhaseClassification, PhaseClassifier
from amm_phase_monitor.detector.supply_invariant import SupplyInvariantValidator

__all__ = [
    "Alert",
    "AlertKind",
    "AlertPriority",
    "AnomalyDetector",
    "CheckOutcome",
    "CheckResult",
    "Evaluation",
    "PhaseClassification",
    "PhaseClassifier",
    "SupplyInvariantValidator",
]
