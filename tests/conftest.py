"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from amm_phase_monitor.config import AlertThresholds, PoolConfig
from amm_phase_monitor.ingestor.models import Phase, PoolSnapshot

# All-digit addresses are their own checksum form.
POOL_ID = "0x" + "1" * 40
TOKEN_ADDRESS = "0x" + "2" * 40
BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def usdc(amount: object) -> int:
    return int(Decimal(str(amount)) * 10**6)


def tokens(amount: object) -> int:
    return int(Decimal(str(amount)) * 10**18)


SnapshotFactory = Callable[..., PoolSnapshot]


@pytest.fixture
def pool_id() -> str:
    return POOL_ID


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def pool_config() -> PoolConfig:
    return PoolConfig(pool_id=POOL_ID, name="model-7", token_address=TOKEN_ADDRESS)


@pytest.fixture
def thresholds() -> AlertThresholds:
    return AlertThresholds()


@pytest.fixture
def make_snapshot() -> SnapshotFactory:
    """Build snapshots in human units.

    Defaults describe a healthy bonding-curve pool whose reserve ratio
    matches its 10% CRR exactly.
    """

    def _make(
        *,
        minutes: float = 0,
        block: int | None = None,
        reserve_usd: object = 50_000,
        price_usd: object = 1,
        supply_tokens: object = 500_000,
        paused: bool = False,
        crr: int = 100_000,
        phase: Phase = Phase.BONDING_CURVE,
        threshold_usd: object = 25_000,
        flat_price_usd: object = "0.01",
        fees_usd: object = 0,
        pool_id: str = POOL_ID,
    ) -> PoolSnapshot:
        return PoolSnapshot(
            pool_id=pool_id,
            timestamp=BASE_TIME + timedelta(minutes=minutes),
            block_height=block if block is not None else 1_000 + int(minutes * 5),
            reserve_balance=usdc(reserve_usd),
            spot_price=usdc(price_usd),
            token_supply=tokens(supply_tokens),
            paused=paused,
            crr=crr,
            pricing_phase=phase,
            flat_curve_threshold=usdc(threshold_usd),
            flat_curve_price=usdc(flat_price_usd),
            treasury_fees=usdc(fees_usd),
        )

    return _make
