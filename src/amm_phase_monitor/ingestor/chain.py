"""AMM pool chain client with rate limiting, failover and immutable caching.

This module provides the RPC access used by the state reader and the phase
transition watcher:
- Read-only calls against the pool contract and its ERC-20 token
- Redis caching for contract-immutable values
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to a secondary RPC URL
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_IMMUTABLE_CACHE_TTL_SECONDS = 30 * 24 * 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_SECONDS = 0.5

POOL_ABI: list[dict[str, Any]] = [
    *(
        {
            "inputs": [],
            "name": name,
            "outputs": [{"name": "", "type": output}],
            "stateMutability": "view",
            "type": "function",
        }
        for name, output in (
            ("reserveBalance", "uint256"),
            ("spotPrice", "uint256"),
            ("paused", "bool"),
            ("crr", "uint256"),
            ("getCurrentPhase", "uint8"),
            ("FLAT_CURVE_THRESHOLD", "uint256"),
            ("FLAT_CURVE_PRICE", "uint256"),
            ("treasuryFees", "uint256"),
            ("hokusaiToken", "address"),
        )
    ),
    {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "name": "fromPhase", "type": "uint8"},
            {"indexed": False, "name": "toPhase", "type": "uint8"},
            {"indexed": False, "name": "reserveBalance", "type": "uint256"},
            {"indexed": False, "name": "timestamp", "type": "uint256"},
        ],
        "name": "PhaseTransition",
        "type": "event",
    },
]

ERC20_SUPPLY_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    }
]

T = TypeVar("T")

BlockIdentifier = int | str


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails on every endpoint."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.max_tokens, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            await asyncio.sleep((tokens - self.tokens) / self.refill_rate)


class PoolChainClient:
    """Read-only client for two-phase AMM pools.

    Example:
        ```python
        client = PoolChainClient("https://eth.llamarpc.com")
        block = await client.get_block_number()
        reserve = await client.call_pool(pool_address, "reserveBalance", block_identifier=block)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        immutable_cache_ttl_seconds: int = DEFAULT_IMMUTABLE_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client backing the immutable-value cache.
            immutable_cache_ttl_seconds: TTL for cached immutable values.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Attempts per endpoint.
            retry_delay_seconds: Initial delay between attempts.
        """
        self._redis = redis
        self._immutable_ttl = immutable_cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3: AsyncWeb3[AsyncHTTPProvider] = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url))

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "amm:immutable:"

    def _cache_key(self, address: str, name: str) -> str:
        return f"{self._cache_prefix}{address.lower()}:{name}"

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=self._immutable_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _execute_with_retry(
        self,
        description: str,
        operation: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Run an RPC operation with retry and failover.

        Args:
            description: Short label used in logs and errors.
            operation: Coroutine factory taking the web3 instance to use.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        endpoints: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = []
        if self._should_try_primary() or self._w3_fallback is None:
            endpoints.append(("primary", self._w3))
        if self._w3_fallback is not None:
            endpoints.append(("fallback", self._w3_fallback))

        for label, w3 in endpoints:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await operation(w3)
                    if label == "primary":
                        self._primary_healthy = True
                    else:
                        logger.info("Fallback RPC succeeded for %s", description)
                    return result
                except (Web3Exception, OSError) as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label.capitalize(),
                        description,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2
            if label == "primary":
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise RPCError(f"RPC call {description} failed after all retries: {last_error}")

    async def get_block_number(self) -> int:
        """Get the latest block number."""

        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.block_number)

        return await self._execute_with_retry("block_number", op)

    async def call_pool(
        self,
        pool_address: str,
        function_name: str,
        *,
        block_identifier: BlockIdentifier = "latest",
    ) -> Any:
        """Call a zero-argument view function on the pool contract."""

        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            contract = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(pool_address),
                abi=POOL_ABI,
            )
            fn = getattr(contract.functions, function_name)()
            return await fn.call(block_identifier=block_identifier)

        return await self._execute_with_retry(f"{function_name}@{pool_address}", op)

    async def call_pool_immutable(self, pool_address: str, function_name: str) -> str:
        """Call a contract-immutable view function, caching the result in Redis.

        Values are returned as strings so integers and addresses share one cache format.
        """
        cache_key = self._cache_key(pool_address, function_name)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cached

        value = str(await self.call_pool(pool_address, function_name))
        await self._set_cached(cache_key, value)
        return value

    async def get_token_total_supply(
        self,
        token_address: str,
        *,
        block_identifier: BlockIdentifier = "latest",
    ) -> int:
        """Get an ERC-20 token's total supply."""

        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            contract = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(token_address),
                abi=ERC20_SUPPLY_ABI,
            )
            return int(await contract.functions.totalSupply().call(block_identifier=block_identifier))

        return await self._execute_with_retry(f"totalSupply@{token_address}", op)

    async def get_phase_transition_logs(
        self,
        pool_address: str,
        *,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Fetch decoded PhaseTransition logs for a block range (inclusive)."""
        if from_block > to_block:
            return []

        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> list[dict[str, Any]]:
            contract = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(pool_address),
                abi=POOL_ABI,
            )
            logs = await contract.events.PhaseTransition().get_logs(
                from_block=from_block,
                to_block=to_block,
            )
            return [dict(log) for log in logs]

        return await self._execute_with_retry(f"PhaseTransition logs@{pool_address}", op)

    async def health_check(self) -> bool:
        """Check if the client can reach an RPC endpoint."""
        try:
            await self.get_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
