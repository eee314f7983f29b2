"""Phase-gated anomaly detection.

This module provides the AnomalyDetector, a per-tick decision table keyed
by pricing phase:

- Always evaluated: Paused, HighFees, SupplyInvariantViolation.
- Bonding-curve only: ReserveDrop, PriceSpike, SupplyAnomaly, LowReserve.

In the flat phase the bonding-curve checks are not run at all; each is
reported as suppressed so the caller can count it. Evaluation is a pure
function of its inputs: no clock reads, no I/O, no cross-tick
deduplication. A paused run can outlive the bounded history, so its start
time is passed in by the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal

from amm_phase_monitor.config import AlertThresholds
from amm_phase_monitor.detector.models import (
    Alert,
    AlertKind,
    AlertPriority,
    CheckOutcome,
    CheckResult,
    Evaluation,
    HighFeesPayload,
    LowReservePayload,
    PausedPayload,
    PriceSpikePayload,
    ReserveDropPayload,
    SupplyAnomalyPayload,
)
from amm_phase_monitor.detector.supply_invariant import SupplyInvariantValidator
from amm_phase_monitor.ingestor.models import Phase, PoolSnapshot

logger = logging.getLogger(__name__)

MIN_HISTORY_FOR_EVALUATION = 2

ALWAYS_CHECKS: tuple[AlertKind, ...] = (
    AlertKind.PAUSED,
    AlertKind.HIGH_FEES,
    AlertKind.SUPPLY_INVARIANT_VIOLATION,
)
BONDING_CURVE_CHECKS: tuple[AlertKind, ...] = (
    AlertKind.RESERVE_DROP,
    AlertKind.PRICE_SPIKE,
    AlertKind.SUPPLY_ANOMALY,
    AlertKind.LOW_RESERVE,
)

CheckReturn = tuple[CheckResult, Alert | None]


def _usd(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def _percent_change(old: Decimal, new: Decimal) -> float:
    return float((new - old) / old * Decimal(100))


def find_baseline(
    current: PoolSnapshot,
    history: Sequence[PoolSnapshot],
    window: timedelta,
) -> PoolSnapshot | None:
    """Oldest snapshot strictly before `current` and within `window` of it."""
    cutoff = current.timestamp - window
    for snapshot in history:
        if snapshot.timestamp < cutoff:
            continue
        if snapshot.timestamp >= current.timestamp:
            return None
        return snapshot
    return None


def paused_since(current: PoolSnapshot, history: Sequence[PoolSnapshot]) -> PoolSnapshot | None:
    """First snapshot of the trailing run of paused snapshots ending at `current`."""
    if not current.paused:
        return None
    start = current
    for snapshot in reversed(history):
        if snapshot.timestamp > current.timestamp:
            continue
        if not snapshot.paused:
            break
        start = snapshot
    return start


class AnomalyDetector:
    """Evaluates one pool's snapshots against phase-gated rules.

    Example:
        ```python
        detector = AnomalyDetector(thresholds)
        evaluation = detector.evaluate(snapshot, history.snapshots())
        for alert in evaluation.alerts:
            ...
        ```
    """

    def __init__(
        self,
        thresholds: AlertThresholds,
        *,
        invariant_validator: SupplyInvariantValidator | None = None,
    ) -> None:
        self._thresholds = thresholds
        self._validator = invariant_validator or SupplyInvariantValidator()

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds

    def evaluate(
        self,
        current: PoolSnapshot,
        history: Sequence[PoolSnapshot],
        *,
        paused_at: datetime | None = None,
    ) -> Evaluation:
        """Evaluate the current snapshot.

        Args:
            current: Snapshot of this tick.
            history: The pool's history, oldest first; may include `current`.
            paused_at: When the pool's current paused run started, tracked by
                the caller across history eviction. Falls back to the oldest
                paused snapshot still in `history`.

        Returns:
            Evaluation with every fired alert and one CheckResult per check.
        """
        phase = current.pricing_phase
        results: list[CheckReturn] = []

        if phase is Phase.FLAT:
            for check in BONDING_CURVE_CHECKS:
                results.append((CheckResult(check, CheckOutcome.SUPPRESSED, "flat phase"), None))

        if len(history) < MIN_HISTORY_FOR_EVALUATION:
            pending = ALWAYS_CHECKS if phase is Phase.FLAT else ALWAYS_CHECKS + BONDING_CURVE_CHECKS
            for check in pending:
                results.append(
                    (CheckResult(check, CheckOutcome.SKIPPED, "insufficient history"), None)
                )
            return self._finish(current, phase, results)

        results.append(self._check_paused(current, history, paused_at))
        results.append(self._check_high_fees(current))
        results.append(self._validator.validate(current))

        if phase is Phase.BONDING_CURVE:
            results.append(self._check_reserve_drop(current, history))
            results.append(self._check_price_spike(current, history))
            results.append(self._check_supply_anomaly(current, history))
            results.append(self._check_low_reserve(current))

        return self._finish(current, phase, results)

    def _finish(
        self,
        current: PoolSnapshot,
        phase: Phase,
        results: list[CheckReturn],
    ) -> Evaluation:
        for result, _ in results:
            logger.debug(
                "Check %s for %s (%s): %s%s",
                result.check.value,
                current.pool_id,
                phase.label,
                result.outcome.value,
                f" ({result.reason})" if result.reason else "",
            )
        return Evaluation(
            pool_id=current.pool_id,
            phase=phase,
            alerts=tuple(alert for _, alert in results if alert is not None),
            checks=tuple(result for result, _ in results),
        )

    def _check_paused(
        self,
        current: PoolSnapshot,
        history: Sequence[PoolSnapshot],
        paused_at: datetime | None,
    ) -> CheckReturn:
        check = AlertKind.PAUSED
        start = paused_since(current, history)
        if start is None:
            return CheckResult(check, CheckOutcome.PASSED), None

        since = start.timestamp
        if paused_at is not None and paused_at < since:
            since = paused_at
        duration = (current.timestamp - since).total_seconds()
        threshold_hours = self._thresholds.paused_duration_hours
        if duration <= threshold_hours * 3600:
            return CheckResult(check, CheckOutcome.PASSED, "paused below duration threshold"), None

        return CheckResult(check, CheckOutcome.FIRED), Alert(
            kind=check,
            priority=AlertPriority.CRITICAL,
            pool_id=current.pool_id,
            message=f"Pool has been paused for {duration / 3600:.1f} hours",
            payload=PausedPayload(
                paused_since=since,
                paused_duration_seconds=duration,
                threshold_hours=threshold_hours,
            ),
            current_snapshot=current,
            previous_snapshot=start if start is not current else None,
        )

    def _check_high_fees(self, current: PoolSnapshot) -> CheckReturn:
        check = AlertKind.HIGH_FEES
        fees = current.treasury_fees_usd
        limit = self._thresholds.high_fees_usd
        if fees <= limit:
            return CheckResult(check, CheckOutcome.PASSED), None

        return CheckResult(check, CheckOutcome.FIRED), Alert(
            kind=check,
            priority=AlertPriority.MEDIUM,
            pool_id=current.pool_id,
            message=f"High treasury fees: {_usd(fees)} (threshold: {_usd(limit)})",
            payload=HighFeesPayload(treasury_fees_usd=fees, threshold_usd=limit),
            current_snapshot=current,
        )

    def _check_reserve_drop(
        self, current: PoolSnapshot, history: Sequence[PoolSnapshot]
    ) -> CheckReturn:
        check = AlertKind.RESERVE_DROP
        window_seconds = self._thresholds.reserve_drop_window_seconds
        baseline = find_baseline(current, history, timedelta(seconds=window_seconds))
        if baseline is None:
            return CheckResult(check, CheckOutcome.SKIPPED, "no baseline in window"), None
        if baseline.reserve_usd == 0:
            return CheckResult(check, CheckOutcome.SKIPPED, "baseline reserve is zero"), None

        drop = -_percent_change(baseline.reserve_usd, current.reserve_usd)
        if drop <= self._thresholds.reserve_drop_percent:
            return CheckResult(check, CheckOutcome.PASSED), None

        return CheckResult(check, CheckOutcome.FIRED), Alert(
            kind=check,
            priority=AlertPriority.CRITICAL,
            pool_id=current.pool_id,
            message=(
                f"Reserve dropped {drop:.1f}% in {window_seconds / 3600:g}h: "
                f"{_usd(baseline.reserve_usd)} -> {_usd(current.reserve_usd)}"
            ),
            payload=ReserveDropPayload(
                drop_percent=drop,
                old_reserve_usd=baseline.reserve_usd,
                new_reserve_usd=current.reserve_usd,
                window_seconds=window_seconds,
            ),
            current_snapshot=current,
            previous_snapshot=baseline,
        )

    def _check_price_spike(
        self, current: PoolSnapshot, history: Sequence[PoolSnapshot]
    ) -> CheckReturn:
        check = AlertKind.PRICE_SPIKE
        window_seconds = self._thresholds.price_spike_window_seconds
        baseline = find_baseline(current, history, timedelta(seconds=window_seconds))
        if baseline is None:
            return CheckResult(check, CheckOutcome.SKIPPED, "no baseline in window"), None
        if baseline.price_usd == 0:
            return CheckResult(check, CheckOutcome.SKIPPED, "baseline price is zero"), None

        change = abs(_percent_change(baseline.price_usd, current.price_usd))
        if change <= self._thresholds.price_spike_percent:
            return CheckResult(check, CheckOutcome.PASSED), None

        return CheckResult(check, CheckOutcome.FIRED), Alert(
            kind=check,
            priority=AlertPriority.HIGH,
            pool_id=current.pool_id,
            message=(
                f"Price changed {change:.1f}% in {window_seconds / 3600:g}h: "
                f"${baseline.price_usd:.6f} -> ${current.price_usd:.6f}"
            ),
            payload=PriceSpikePayload(
                change_percent=change,
                old_price_usd=baseline.price_usd,
                new_price_usd=current.price_usd,
                window_seconds=window_seconds,
            ),
            current_snapshot=current,
            previous_snapshot=baseline,
        )

    def _check_supply_anomaly(
        self, current: PoolSnapshot, history: Sequence[PoolSnapshot]
    ) -> CheckReturn:
        check = AlertKind.SUPPLY_ANOMALY
        window_seconds = self._thresholds.supply_change_window_seconds
        baseline = find_baseline(current, history, timedelta(seconds=window_seconds))
        if baseline is None:
            return CheckResult(check, CheckOutcome.SKIPPED, "no baseline in window"), None
        if baseline.token_supply == 0:
            return CheckResult(check, CheckOutcome.SKIPPED, "baseline supply is zero"), None

        change = abs(_percent_change(baseline.supply_tokens, current.supply_tokens))
        if change <= self._thresholds.supply_change_percent:
            return CheckResult(check, CheckOutcome.PASSED), None

        return CheckResult(check, CheckOutcome.FIRED), Alert(
            kind=check,
            priority=AlertPriority.HIGH,
            pool_id=current.pool_id,
            message=(
                f"Supply changed {change:.1f}% in {window_seconds / 3600:g}h: "
                f"{baseline.supply_tokens:,.0f} -> {current.supply_tokens:,.0f} tokens"
            ),
            payload=SupplyAnomalyPayload(
                change_percent=change,
                old_supply=baseline.supply_tokens,
                new_supply=current.supply_tokens,
                window_seconds=window_seconds,
            ),
            current_snapshot=current,
            previous_snapshot=baseline,
        )

    def _check_low_reserve(self, current: PoolSnapshot) -> CheckReturn:
        check = AlertKind.LOW_RESERVE
        floor = self._thresholds.min_reserve_usd
        if current.reserve_usd >= floor:
            return CheckResult(check, CheckOutcome.PASSED), None

        return CheckResult(check, CheckOutcome.FIRED), Alert(
            kind=check,
            priority=AlertPriority.HIGH,
            pool_id=current.pool_id,
            message=f"Reserve below minimum: {_usd(current.reserve_usd)} < {_usd(floor)}",
            payload=LowReservePayload(reserve_usd=current.reserve_usd, min_reserve_usd=floor),
            current_snapshot=current,
        )
