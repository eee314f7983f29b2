"""Bonding-curve supply invariant validation.

In the bonding-curve phase the pool keeps reserve / (price * supply) equal
to crr / 1_000_000. A drift beyond the tolerance means tokens were minted or
burned outside the curve.

Known limitation: the flat phase is not validated. Its linear
price * supply relationship has no check here and the validator returns a
skip for it.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from amm_phase_monitor.detector.models import (
    Alert,
    AlertKind,
    AlertPriority,
    CheckOutcome,
    CheckResult,
    SupplyInvariantPayload,
)
from amm_phase_monitor.ingestor.models import Phase, PoolSnapshot

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_PERCENT = Decimal("5")

_CHECK = AlertKind.SUPPLY_INVARIANT_VIOLATION


class SupplyInvariantValidator:
    """Validates the reserve ratio of a bonding-curve snapshot against its CRR."""

    def __init__(self, *, tolerance_percent: Decimal = DEFAULT_TOLERANCE_PERCENT) -> None:
        if tolerance_percent < 0:
            raise ValueError("tolerance_percent must be >= 0")
        self._tolerance = tolerance_percent

    @property
    def tolerance_percent(self) -> Decimal:
        return self._tolerance

    def validate(self, snapshot: PoolSnapshot) -> tuple[CheckResult, Alert | None]:
        """Check one snapshot.

        Returns:
            The check result and, when the invariant is violated, a Critical alert.
        """
        if snapshot.pricing_phase is Phase.FLAT:
            return self._skip(snapshot, "flat phase is not validated")

        if snapshot.reserve_balance == 0 or snapshot.token_supply == 0 or snapshot.spot_price == 0:
            return self._skip(snapshot, "zero reserve, supply or price (uninitialized pool)")

        if snapshot.crr <= 0:
            return self._skip(snapshot, "crr is zero")

        expected = snapshot.expected_reserve_ratio
        actual = snapshot.reserve_ratio
        deviation = abs(actual - expected) / expected * Decimal(100)

        if deviation <= self._tolerance:
            logger.debug(
                "Supply invariant holds for %s: expected=%s actual=%s deviation=%.2f%%",
                snapshot.pool_id,
                expected,
                actual,
                deviation,
            )
            return CheckResult(_CHECK, CheckOutcome.PASSED), None

        alert = Alert(
            kind=_CHECK,
            priority=AlertPriority.CRITICAL,
            pool_id=snapshot.pool_id,
            message=(
                f"Reserve ratio {actual:.4f} deviates {deviation:.1f}% from CRR target "
                f"{expected:.4f} (tolerance {self._tolerance}%): possible unauthorized mint/burn"
            ),
            payload=SupplyInvariantPayload(
                expected_ratio=expected,
                actual_ratio=actual,
                deviation_percent=deviation,
                tolerance_percent=self._tolerance,
            ),
            current_snapshot=snapshot,
        )
        logger.info("Supply invariant violation for %s: %s", snapshot.pool_id, alert.message)
        return CheckResult(_CHECK, CheckOutcome.FIRED), alert

    @staticmethod
    def _skip(snapshot: PoolSnapshot, reason: str) -> tuple[CheckResult, None]:
        logger.debug("Supply invariant skipped for %s: %s", snapshot.pool_id, reason)
        return CheckResult(_CHECK, CheckOutcome.SKIPPED, reason), None
