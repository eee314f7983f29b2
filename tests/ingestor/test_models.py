"""Tests for ingestor data models."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from amm_phase_monitor.ingestor.models import (
    ImmutableParams,
    Phase,
    PhaseTransitionEvent,
    PoolSnapshot,
)


class TestPhase:
    def test_values_match_contract(self) -> None:
        assert Phase(0) is Phase.FLAT
        assert Phase(1) is Phase.BONDING_CURVE

    def test_labels(self) -> None:
        assert Phase.FLAT.label == "Flat"
        assert Phase.BONDING_CURVE.label == "BondingCurve"


class TestPoolSnapshot:
    def test_usd_conversions(self, make_snapshot) -> None:
        snapshot = make_snapshot(
            reserve_usd="12345.678901",
            price_usd="0.25",
            supply_tokens="1000.5",
            fees_usd="42",
        )

        assert snapshot.reserve_usd == Decimal("12345.678901")
        assert snapshot.price_usd == Decimal("0.25")
        assert snapshot.supply_tokens == Decimal("1000.5")
        assert snapshot.treasury_fees_usd == Decimal("42")

    def test_market_cap_from_crr(self, make_snapshot) -> None:
        snapshot = make_snapshot(reserve_usd=50_000, crr=100_000)
        assert snapshot.market_cap_usd == Decimal(500_000)

    def test_market_cap_zero_crr(self, make_snapshot) -> None:
        assert make_snapshot(crr=0).market_cap_usd == 0

    def test_reserve_ratio(self, make_snapshot) -> None:
        snapshot = make_snapshot(reserve_usd=130_000, price_usd=1, supply_tokens=1_000_000)
        assert snapshot.reserve_ratio == Decimal("0.13")
        assert snapshot.expected_reserve_ratio == Decimal("0.1")

    def test_reserve_ratio_zero_guard(self, make_snapshot) -> None:
        assert make_snapshot(price_usd=0).reserve_ratio == 0
        assert make_snapshot(supply_tokens=0).reserve_ratio == 0

    def test_requires_aware_timestamp(self, pool_id: str) -> None:
        with pytest.raises(ValueError, match="timezone-aware"):
            PoolSnapshot(
                pool_id=pool_id,
                timestamp=datetime(2026, 1, 1),
                block_height=1,
                reserve_balance=0,
                spot_price=0,
                token_supply=0,
                paused=False,
                crr=0,
                pricing_phase=Phase.FLAT,
                flat_curve_threshold=0,
                flat_curve_price=0,
            )

    def test_frozen(self, make_snapshot) -> None:
        snapshot = make_snapshot()
        with pytest.raises(FrozenInstanceError):
            snapshot.paused = True  # type: ignore[misc]

    def test_to_dict(self, make_snapshot) -> None:
        data = make_snapshot(phase=Phase.FLAT, reserve_usd=5_000).to_dict()

        assert data["pricing_phase"] == "Flat"
        assert data["reserve_usd"] == "5000"
        assert data["reserve_balance"] == "5000000000"


class TestImmutableParams:
    def test_dict_round_trip(self) -> None:
        params = ImmutableParams(
            flat_curve_threshold=25_000 * 10**6,
            flat_curve_price=10_000,
            token_address="0x" + "2" * 40,
        )
        assert ImmutableParams.from_dict(params.to_dict()) == params


class TestPhaseTransitionEvent:
    def test_from_log(self, pool_id: str) -> None:
        log = {
            "args": {
                "fromPhase": 0,
                "toPhase": 1,
                "reserveBalance": 25_000 * 10**6,
                "timestamp": 1_767_268_800,
            },
            "blockNumber": 21_000_000,
            "transactionHash": bytes.fromhex("ab" * 32),
        }

        event = PhaseTransitionEvent.from_log(pool_id, log)

        assert event.pool_id == pool_id
        assert event.from_phase is Phase.FLAT
        assert event.to_phase is Phase.BONDING_CURVE
        assert event.reserve_usd == Decimal(25_000)
        assert event.timestamp == datetime.fromtimestamp(1_767_268_800, tz=UTC)
        assert event.block_number == 21_000_000
        assert event.transaction_hash == "0x" + "ab" * 32

    def test_from_log_string_hash(self, pool_id: str) -> None:
        log = {
            "args": {"fromPhase": 1, "toPhase": 0, "reserveBalance": 0, "timestamp": 0},
            "blockNumber": 5,
            "transactionHash": "0xdead",
        }
        assert PhaseTransitionEvent.from_log(pool_id, log).transaction_hash == "0xdead"
