"""Data models for the ingestor module."""

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import IntEnum
from typing import Any

# Token decimals used by the pool contracts
USDC_DECIMALS = 6
PRICE_DECIMALS = 6
TOKEN_DECIMALS = 18

# CRR is expressed in parts-per-million on-chain
CRR_SCALE = Decimal(1_000_000)

_USDC_UNIT = Decimal(10**USDC_DECIMALS)
_PRICE_UNIT = Decimal(10**PRICE_DECIMALS)
_TOKEN_UNIT = Decimal(10**TOKEN_DECIMALS)


class Phase(IntEnum):
    """Pricing regime of a pool, matching the on-chain `getCurrentPhase()` values."""

    FLAT = 0
    BONDING_CURVE = 1

    @property
    def label(self) -> str:
        return "Flat" if self is Phase.FLAT else "BondingCurve"


@dataclass(frozen=True)
class ImmutableParams:
    """Contract-immutable pool parameters, read once per process.

    Attributes:
        flat_curve_threshold: Reserve (USDC units) at which the bonding curve takes over.
        flat_curve_price: Fixed price (USDC units) during the flat phase.
        token_address: ERC-20 token whose supply the pool controls.
    """

    flat_curve_threshold: int
    flat_curve_price: int
    token_address: str

    def to_dict(self) -> dict[str, object]:
        return {
            "flat_curve_threshold": str(self.flat_curve_threshold),
            "flat_curve_price": str(self.flat_curve_price),
            "token_address": self.token_address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImmutableParams":
        return cls(
            flat_curve_threshold=int(data["flat_curve_threshold"]),
            flat_curve_price=int(data["flat_curve_price"]),
            token_address=str(data["token_address"]),
        )


@dataclass(frozen=True)
class PoolSnapshot:
    """Immutable point-in-time record of one pool's on-chain state.

    Raw fields hold on-chain integer units; the USD-denominated values are
    derived on access so a snapshot never carries inconsistent copies.

    Attributes:
        pool_id: Checksummed pool contract address.
        timestamp: When the batch read was issued (timezone-aware).
        block_height: Block the batch was read at.
        reserve_balance: Tracked reserve in USDC units (6 decimals).
        spot_price: Current spot price in USDC units (6 decimals).
        token_supply: Token total supply (18 decimals).
        paused: Emergency pause flag.
        crr: Constant reserve ratio in parts-per-million.
        pricing_phase: Authoritative on-chain phase flag.
        flat_curve_threshold: Immutable flat-phase reserve threshold (USDC units).
        flat_curve_price: Immutable flat-phase price (USDC units).
        treasury_fees: Accumulated, unwithdrawn fees in USDC units.
    """

    pool_id: str
    timestamp: datetime
    block_height: int
    reserve_balance: int
    spot_price: int
    token_supply: int
    paused: bool
    crr: int
    pricing_phase: Phase
    flat_curve_threshold: int
    flat_curve_price: int
    treasury_fees: int = 0

    def __post_init__(self) -> None:
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")

    @property
    def reserve_usd(self) -> Decimal:
        return Decimal(self.reserve_balance) / _USDC_UNIT

    @property
    def price_usd(self) -> Decimal:
        return Decimal(self.spot_price) / _PRICE_UNIT

    @property
    def supply_tokens(self) -> Decimal:
        return Decimal(self.token_supply) / _TOKEN_UNIT

    @property
    def treasury_fees_usd(self) -> Decimal:
        return Decimal(self.treasury_fees) / _USDC_UNIT

    @property
    def market_cap_usd(self) -> Decimal:
        """Approximate market cap: reserve / (crr / 1e6)."""
        if self.crr <= 0:
            return Decimal(0)
        return self.reserve_usd / (Decimal(self.crr) / CRR_SCALE)

    @property
    def reserve_ratio(self) -> Decimal:
        """reserve / (price * supply); 0 when price or supply is zero."""
        if self.spot_price <= 0 or self.token_supply <= 0:
            return Decimal(0)
        # Decimal scaling cancels out: (R/1e6) / ((P/1e6) * (S/1e18)) == R*1e18 / (P*S)
        return Decimal(self.reserve_balance * 10**TOKEN_DECIMALS) / Decimal(
            self.spot_price * self.token_supply
        )

    @property
    def expected_reserve_ratio(self) -> Decimal:
        return Decimal(self.crr) / CRR_SCALE

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-friendly dictionary."""
        return {
            "pool_id": self.pool_id,
            "timestamp": self.timestamp.isoformat(),
            "block_height": self.block_height,
            "reserve_balance": str(self.reserve_balance),
            "spot_price": str(self.spot_price),
            "token_supply": str(self.token_supply),
            "paused": self.paused,
            "crr": self.crr,
            "pricing_phase": self.pricing_phase.label,
            "flat_curve_threshold": str(self.flat_curve_threshold),
            "flat_curve_price": str(self.flat_curve_price),
            "treasury_fees": str(self.treasury_fees),
            "reserve_usd": str(self.reserve_usd),
            "price_usd": str(self.price_usd),
            "market_cap_usd": str(self.market_cap_usd),
            "reserve_ratio": str(self.reserve_ratio),
            "treasury_fees_usd": str(self.treasury_fees_usd),
        }


@dataclass(frozen=True)
class PhaseTransitionEvent:
    """Decoded `PhaseTransition(fromPhase, toPhase, reserveBalance, timestamp)` log."""

    pool_id: str
    from_phase: Phase
    to_phase: Phase
    reserve_balance: int
    timestamp: datetime
    block_number: int
    transaction_hash: str

    @classmethod
    def from_log(cls, pool_id: str, log: Any) -> "PhaseTransitionEvent":
        """Create an event from a web3 decoded event log (AttributeDict or dict)."""
        args = log["args"]
        tx_hash = log.get("transactionHash")
        if isinstance(tx_hash, (bytes, bytearray)):
            tx_hash = "0x" + bytes(tx_hash).hex()
        elif tx_hash is not None and not isinstance(tx_hash, str):
            tx_hash = tx_hash.hex()
        return cls(
            pool_id=pool_id,
            from_phase=Phase(int(args["fromPhase"])),
            to_phase=Phase(int(args["toPhase"])),
            reserve_balance=int(args["reserveBalance"]),
            timestamp=datetime.fromtimestamp(int(args["timestamp"]), tz=UTC),
            block_number=int(log["blockNumber"]),
            transaction_hash=str(tx_hash or ""),
        )

    @property
    def reserve_usd(self) -> Decimal:
        return Decimal(self.reserve_balance) / _USDC_UNIT
