"""Tests for bonding-curve supply invariant validation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from amm_phase_monitor.detector.models import (
    AlertKind,
    AlertPriority,
    CheckOutcome,
    SupplyInvariantPayload,
)
from amm_phase_monitor.detector.supply_invariant import SupplyInvariantValidator
from amm_phase_monitor.ingestor.models import Phase


@pytest.fixture
def validator() -> SupplyInvariantValidator:
    return SupplyInvariantValidator()


class TestSupplyInvariantValidator:
    def test_default_tolerance(self, validator: SupplyInvariantValidator) -> None:
        assert validator.tolerance_percent == Decimal("5")

    def test_holds_at_exact_ratio(self, validator: SupplyInvariantValidator, make_snapshot) -> None:
        result, alert = validator.validate(make_snapshot())

        assert result.outcome is CheckOutcome.PASSED
        assert alert is None

    def test_violation_emits_critical_alert(
        self, validator: SupplyInvariantValidator, make_snapshot
    ) -> None:
        # crr 10%, reserve / (price * supply) = 130_000 / (1 * 1_000_000) = 0.13
        snapshot = make_snapshot(
            crr=100_000, reserve_usd=130_000, price_usd=1, supply_tokens=1_000_000
        )

        result, alert = validator.validate(snapshot)

        assert result.outcome is CheckOutcome.FIRED
        assert alert is not None
        assert alert.kind is AlertKind.SUPPLY_INVARIANT_VIOLATION
        assert alert.priority is AlertPriority.CRITICAL
        assert isinstance(alert.payload, SupplyInvariantPayload)
        assert alert.payload.expected_ratio == Decimal("0.10")
        assert alert.payload.actual_ratio == Decimal("0.13")
        assert alert.payload.deviation_percent == Decimal(30)
        assert alert.current_snapshot is snapshot

    def test_deviation_at_tolerance_passes(
        self, validator: SupplyInvariantValidator, make_snapshot
    ) -> None:
        # 0.105 vs 0.10 is exactly 5%
        snapshot = make_snapshot(reserve_usd=105_000, price_usd=1, supply_tokens=1_000_000)

        result, alert = validator.validate(snapshot)

        assert result.outcome is CheckOutcome.PASSED
        assert alert is None

    def test_deviation_below_expected_fires(
        self, validator: SupplyInvariantValidator, make_snapshot
    ) -> None:
        snapshot = make_snapshot(reserve_usd=80_000, price_usd=1, supply_tokens=1_000_000)

        result, alert = validator.validate(snapshot)

        assert result.outcome is CheckOutcome.FIRED
        assert alert is not None
        assert alert.payload.deviation_percent == Decimal(20)

    def test_flat_phase_is_noop(self, validator: SupplyInvariantValidator, make_snapshot) -> None:
        snapshot = make_snapshot(
            phase=Phase.FLAT, reserve_usd=130_000, price_usd=1, supply_tokens=1_000_000
        )

        result, alert = validator.validate(snapshot)

        assert result.outcome is CheckOutcome.SKIPPED
        assert alert is None

    @pytest.mark.parametrize(
        "overrides",
        [{"reserve_usd": 0}, {"supply_tokens": 0}, {"price_usd": 0}, {"crr": 0}],
    )
    def test_zero_values_skip(
        self, validator: SupplyInvariantValidator, make_snapshot, overrides: dict
    ) -> None:
        result, alert = validator.validate(make_snapshot(**overrides))

        assert result.outcome is CheckOutcome.SKIPPED
        assert alert is None

    def test_custom_tolerance(self, make_snapshot) -> None:
        validator = SupplyInvariantValidator(tolerance_percent=Decimal("40"))
        snapshot = make_snapshot(reserve_usd=130_000, price_usd=1, supply_tokens=1_000_000)

        result, _ = validator.validate(snapshot)

        assert result.outcome is CheckOutcome.PASSED

    def test_rejects_negative_tolerance(self) -> None:
        with pytest.raises(ValueError):
            SupplyInvariantValidator(tolerance_percent=Decimal("-1"))
