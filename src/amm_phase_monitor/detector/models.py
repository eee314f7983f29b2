"""Data models for the detector module.

Alerts are a tagged union: the `kind` selects exactly one payload type,
and the pairing is checked when the alert is built.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Union

from amm_phase_monitor.ingestor.models import Phase, PoolSnapshot


class AlertKind(str, Enum):
    """Alert categories."""

    RESERVE_DROP = "reserve_drop"
    PRICE_SPIKE = "price_spike"
    SUPPLY_ANOMALY = "supply_anomaly"
    SUPPLY_INVARIANT_VIOLATION = "supply_invariant_violation"
    PAUSED = "paused"
    LOW_RESERVE = "low_reserve"
    HIGH_FEES = "high_fees"
    PHASE_TRANSITION = "phase_transition"


class AlertPriority(str, Enum):
    """Alert priorities, most severe first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


@dataclass(frozen=True)
class ReserveDropPayload:
    drop_percent: float
    old_reserve_usd: Decimal
    new_reserve_usd: Decimal
    window_seconds: int


@dataclass(frozen=True)
class PriceSpikePayload:
    change_percent: float
    old_price_usd: Decimal
    new_price_usd: Decimal
    window_seconds: int


@dataclass(frozen=True)
class SupplyAnomalyPayload:
    change_percent: float
    old_supply: Decimal
    new_supply: Decimal
    window_seconds: int


@dataclass(frozen=True)
class SupplyInvariantPayload:
    """Bonding-curve invariant breach.

    Attributes:
        expected_ratio: crr / 1_000_000.
        actual_ratio: reserve / (price * supply).
        deviation_percent: |actual - expected| / expected * 100.
        tolerance_percent: Tolerance the deviation exceeded.
    """

    expected_ratio: Decimal
    actual_ratio: Decimal
    deviation_percent: Decimal
    tolerance_percent: Decimal


@dataclass(frozen=True)
class PausedPayload:
    paused_since: datetime
    paused_duration_seconds: float
    threshold_hours: float


@dataclass(frozen=True)
class LowReservePayload:
    reserve_usd: Decimal
    min_reserve_usd: Decimal


@dataclass(frozen=True)
class HighFeesPayload:
    treasury_fees_usd: Decimal
    threshold_usd: Decimal


@dataclass(frozen=True)
class PhaseTransitionPayload:
    from_phase: Phase
    to_phase: Phase
    reserve_balance: int
    event_timestamp: datetime
    block_number: int
    transaction_hash: str


AlertPayload = Union[
    ReserveDropPayload,
    PriceSpikePayload,
    SupplyAnomalyPayload,
    SupplyInvariantPayload,
    PausedPayload,
    LowReservePayload,
    HighFeesPayload,
    PhaseTransitionPayload,
]

PAYLOAD_TYPES: dict[AlertKind, type] = {
    AlertKind.RESERVE_DROP: ReserveDropPayload,
    AlertKind.PRICE_SPIKE: PriceSpikePayload,
    AlertKind.SUPPLY_ANOMALY: SupplyAnomalyPayload,
    AlertKind.SUPPLY_INVARIANT_VIOLATION: SupplyInvariantPayload,
    AlertKind.PAUSED: PausedPayload,
    AlertKind.LOW_RESERVE: LowReservePayload,
    AlertKind.HIGH_FEES: HighFeesPayload,
    AlertKind.PHASE_TRANSITION: PhaseTransitionPayload,
}


def _jsonable(value: object) -> object:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Phase):
        return value.label
    return value


@dataclass(frozen=True)
class Alert:
    """A structured alert for the notification sink.

    Attributes:
        kind: Alert category; selects the payload type.
        priority: Severity.
        pool_id: Pool the alert is about.
        message: Human-readable one-line summary.
        payload: Kind-specific typed details.
        current_snapshot: State the alert was raised on. Only a phase
            transition seen before the pool's first tick has none.
        previous_snapshot: Baseline snapshot for windowed checks.
    """

    kind: AlertKind
    priority: AlertPriority
    pool_id: str
    message: str
    payload: AlertPayload
    current_snapshot: PoolSnapshot | None
    previous_snapshot: PoolSnapshot | None = None

    def __post_init__(self) -> None:
        expected = PAYLOAD_TYPES[self.kind]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.kind.value} alert requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def is_security(self) -> bool:
        """Phase transitions are informational; every other kind is a security alert."""
        return self.kind is not AlertKind.PHASE_TRANSITION

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-friendly dictionary."""
        return {
            "kind": self.kind.value,
            "priority": self.priority.value,
            "pool_id": self.pool_id,
            "message": self.message,
            "payload": {k: _jsonable(v) for k, v in asdict(self.payload).items()},
            "current_snapshot": self.current_snapshot.to_dict() if self.current_snapshot else None,
            "previous_snapshot": (
                self.previous_snapshot.to_dict() if self.previous_snapshot else None
            ),
        }


class CheckOutcome(str, Enum):
    """What happened to one check in one tick."""

    FIRED = "fired"
    PASSED = "passed"
    SUPPRESSED = "suppressed"  # not evaluated: meaningless in the current phase
    SKIPPED = "skipped"  # not evaluated: missing data or guard condition


@dataclass(frozen=True)
class CheckResult:
    check: AlertKind
    outcome: CheckOutcome
    reason: str = ""


@dataclass(frozen=True)
class Evaluation:
    """Result of evaluating one snapshot against one pool's rules."""

    pool_id: str
    phase: Phase
    alerts: tuple[Alert, ...] = ()
    checks: tuple[CheckResult, ...] = field(default_factory=tuple)

    @property
    def suppressed(self) -> tuple[AlertKind, ...]:
        return tuple(c.check for c in self.checks if c.outcome is CheckOutcome.SUPPRESSED)

    def outcome_of(self, check: AlertKind) -> CheckOutcome | None:
        for c in self.checks:
            if c.check is check:
                return c.outcome
        return None
