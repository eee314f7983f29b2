"""Batched pool state reads.

The reader fans out every per-tick read for one pool at a single block
height and fans the results back into one PoolSnapshot. A failed or timed
out batch raises TransientReadError; nothing is retried inside the tick.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from amm_phase_monitor.config import PoolConfig
from amm_phase_monitor.ingestor.chain import PoolChainClient
from amm_phase_monitor.ingestor.models import ImmutableParams, Phase, PoolSnapshot

logger = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT_SECONDS = 10.0


class TransientReadError(Exception):
    """Raised when a batched state read fails or times out."""

    def __init__(self, pool_id: str, message: str) -> None:
        super().__init__(f"{pool_id}: {message}")
        self.pool_id = pool_id


class ImmutableParamsCache:
    """Process-wide memo of contract-immutable pool parameters.

    Shared by every pool task. Loads are single-flight per pool: concurrent
    callers for the same pool wait on one load, and a failed load leaves the
    entry empty so the next tick retries it.
    """

    def __init__(self) -> None:
        self._params: dict[str, ImmutableParams] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, pool_id: str) -> ImmutableParams | None:
        return self._params.get(pool_id)

    async def get_or_load(
        self,
        pool_id: str,
        loader: Callable[[], Awaitable[ImmutableParams]],
    ) -> ImmutableParams:
        params = self._params.get(pool_id)
        if params is not None:
            return params

        lock = self._locks.setdefault(pool_id, asyncio.Lock())
        async with lock:
            params = self._params.get(pool_id)
            if params is None:
                params = await loader()
                self._params[pool_id] = params
                logger.info(
                    "Cached immutable params for %s: threshold=%d flat_price=%d token=%s",
                    pool_id,
                    params.flat_curve_threshold,
                    params.flat_curve_price,
                    params.token_address,
                )
            return params

    def __len__(self) -> int:
        return len(self._params)

    def __contains__(self, pool_id: object) -> bool:
        return pool_id in self._params


class ChainStateReader:
    """Reads one pool's on-chain state into a PoolSnapshot.

    Example:
        ```python
        reader = ChainStateReader(client, params_cache=ImmutableParamsCache())
        snapshot = await reader.read(pool_config)
        ```
    """

    def __init__(
        self,
        client: PoolChainClient,
        *,
        params_cache: ImmutableParamsCache,
        timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the reader.

        Args:
            client: Chain client used for all reads.
            params_cache: Shared immutable-parameter cache.
            timeout_seconds: Bound on one whole batch, immutables included.
            clock: Timestamp source for snapshots (defaults to UTC now).
        """
        self._client = client
        self._params_cache = params_cache
        self._timeout = timeout_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    async def read(self, pool: PoolConfig) -> PoolSnapshot:
        """Read a complete snapshot for a pool.

        Raises:
            TransientReadError: If any read fails or the batch times out.
        """
        try:
            return await asyncio.wait_for(self._read_batch(pool), timeout=self._timeout)
        except TimeoutError as e:
            raise TransientReadError(
                pool.pool_id, f"batch read timed out after {self._timeout:.1f}s"
            ) from e
        except TransientReadError:
            raise
        except Exception as e:
            raise TransientReadError(pool.pool_id, f"batch read failed: {e}") from e

    async def load_immutable_params(self, pool: PoolConfig) -> ImmutableParams:
        """Read the pool's immutable parameters (uncached)."""
        threshold, flat_price = await asyncio.gather(
            self._client.call_pool_immutable(pool.pool_id, "FLAT_CURVE_THRESHOLD"),
            self._client.call_pool_immutable(pool.pool_id, "FLAT_CURVE_PRICE"),
        )
        token_address = pool.token_address
        if token_address is None:
            token_address = await self._client.call_pool_immutable(pool.pool_id, "hokusaiToken")
        return ImmutableParams(
            flat_curve_threshold=int(threshold),
            flat_curve_price=int(flat_price),
            token_address=token_address,
        )

    async def _read_batch(self, pool: PoolConfig) -> PoolSnapshot:
        params = await self._params_cache.get_or_load(
            pool.pool_id,
            lambda: self.load_immutable_params(pool),
        )

        timestamp = self._clock()
        block = await self._client.get_block_number()

        def call(name: str) -> Awaitable[Any]:
            return self._client.call_pool(pool.pool_id, name, block_identifier=block)

        reserve, price, paused, crr, phase, fees, supply = await asyncio.gather(
            call("reserveBalance"),
            call("spotPrice"),
            call("paused"),
            call("crr"),
            call("getCurrentPhase"),
            call("treasuryFees"),
            self._client.get_token_total_supply(params.token_address, block_identifier=block),
        )

        snapshot = PoolSnapshot(
            pool_id=pool.pool_id,
            timestamp=timestamp,
            block_height=block,
            reserve_balance=int(reserve),
            spot_price=int(price),
            token_supply=int(supply),
            paused=bool(paused),
            crr=int(crr),
            pricing_phase=Phase(int(phase)),
            flat_curve_threshold=params.flat_curve_threshold,
            flat_curve_price=params.flat_curve_price,
            treasury_fees=int(fees),
        )
        logger.debug(
            "Read %s at block %d: reserve=%s price=%s supply=%s phase=%s paused=%s",
            pool.label,
            block,
            snapshot.reserve_usd,
            snapshot.price_usd,
            snapshot.supply_tokens,
            snapshot.pricing_phase.label,
            snapshot.paused,
        )
        return snapshot
