"""PhaseTransition event watcher.

Polls `eth_getLogs` for the pool's PhaseTransition event from a block
cursor. Each event becomes an informational alert, and the pool's
PhaseCell is updated and woken so the scheduler re-evaluates the pool
without waiting for the next interval. Missing an event is harmless: the
next scheduled poll reads the on-chain phase anyway.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from amm_phase_monitor.config import PoolConfig
from amm_phase_monitor.detector.models import (
    Alert,
    AlertKind,
    AlertPriority,
    PhaseTransitionPayload,
)
from amm_phase_monitor.ingestor.chain import ChainClientError, PoolChainClient
from amm_phase_monitor.ingestor.models import Phase, PhaseTransitionEvent, PoolSnapshot

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 4.0
DEFAULT_MAX_BACKOFF_SECONDS = 60.0

AlertCallback = Callable[[Alert], Awaitable[Any]]


class PhaseSource(str, Enum):
    POLL = "poll"
    EVENT = "event"


class PhaseCell:
    """Last known phase of one pool, shared by its poll task and its watcher.

    Writes are last-writer-wins; both writers converge on the on-chain
    value. `request_refresh` wakes the pool's tick loop early.
    """

    def __init__(self, pool_id: str) -> None:
        self.pool_id = pool_id
        self.phase: Phase | None = None
        self.source: PhaseSource | None = None
        self.block_number: int | None = None
        self.last_snapshot: PoolSnapshot | None = None
        self._wake = asyncio.Event()

    def write(self, phase: Phase, *, source: PhaseSource, block_number: int) -> None:
        previous = self.phase
        self.phase = phase
        self.source = source
        self.block_number = block_number
        if previous is not None and previous is not phase:
            logger.info(
                "Phase of %s changed %s -> %s (via %s at block %d)",
                self.pool_id,
                previous.label,
                phase.label,
                source.value,
                block_number,
            )

    def record_snapshot(self, snapshot: PoolSnapshot, *, phase: Phase | None = None) -> None:
        """Store a polled snapshot and its classified phase (defaults to the on-chain flag)."""
        self.last_snapshot = snapshot
        self.write(
            phase if phase is not None else snapshot.pricing_phase,
            source=PhaseSource.POLL,
            block_number=snapshot.block_height,
        )

    def request_refresh(self) -> None:
        self._wake.set()

    @property
    def refresh_requested(self) -> bool:
        return self._wake.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds. Returns True if woken by a refresh request."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except TimeoutError:
            return False
        self._wake.clear()
        return True


@dataclass
class WatcherStats:
    polls: int = 0
    events_received: int = 0
    errors: int = 0
    last_block: int | None = None
    last_event_at: datetime | None = None
    last_error: str | None = None


def build_transition_alert(event: PhaseTransitionEvent, snapshot: PoolSnapshot | None) -> Alert:
    """Build the Medium informational alert for a phase transition."""
    return Alert(
        kind=AlertKind.PHASE_TRANSITION,
        priority=AlertPriority.MEDIUM,
        pool_id=event.pool_id,
        message=(
            f"Pool transitioned from {event.from_phase.label} to {event.to_phase.label} "
            f"at reserve ${event.reserve_usd:,.2f}"
        ),
        payload=PhaseTransitionPayload(
            from_phase=event.from_phase,
            to_phase=event.to_phase,
            reserve_balance=event.reserve_balance,
            event_timestamp=event.timestamp,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        ),
        current_snapshot=snapshot,
    )


class PhaseTransitionWatcher:
    """Per-pool PhaseTransition log follower.

    Example:
        ```python
        watcher = PhaseTransitionWatcher(client, pool, cell=cell, on_alert=dispatcher.dispatch)
        await watcher.start()
        ...
        await watcher.stop()
        ```
    """

    def __init__(
        self,
        client: PoolChainClient,
        pool: PoolConfig,
        *,
        cell: PhaseCell,
        on_alert: AlertCallback,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        start_block: int | None = None,
    ) -> None:
        """Initialize the watcher.

        Args:
            client: Chain client used for log queries.
            pool: Pool to follow.
            cell: The pool's shared phase cell.
            on_alert: Called with each transition alert.
            poll_interval_seconds: Delay between log queries.
            max_backoff_seconds: Upper bound on the retry delay after RPC errors.
            start_block: First block to scan. Defaults to the chain head at
                the first poll, so past transitions are not replayed.
        """
        self._client = client
        self._pool = pool
        self._cell = cell
        self._on_alert = on_alert
        self._interval = poll_interval_seconds
        self._max_backoff = max_backoff_seconds
        self._cursor = start_block
        self._stats = WatcherStats()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> WatcherStats:
        return self._stats

    @property
    def cursor(self) -> int | None:
        """Next block to scan."""
        return self._cursor

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(
            self._run(), name=f"phase-watcher:{self._pool.pool_id}"
        )
        logger.debug("Phase watcher started for %s", self._pool.label)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.debug("Phase watcher stopped for %s", self._pool.label)

    async def poll_once(self) -> list[PhaseTransitionEvent]:
        """Scan new blocks once and handle any transitions found.

        Raises:
            ChainClientError: If the block number or log query fails. The
                cursor is left unchanged so the range is retried.
        """
        latest = await self._client.get_block_number()
        self._stats.polls += 1
        self._stats.last_block = latest

        if self._cursor is None:
            self._cursor = latest + 1
            return []
        if latest < self._cursor:
            return []

        logs = await self._client.get_phase_transition_logs(
            self._pool.pool_id,
            from_block=self._cursor,
            to_block=latest,
        )
        events: list[PhaseTransitionEvent] = []
        for log in logs:
            try:
                events.append(PhaseTransitionEvent.from_log(self._pool.pool_id, log))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed PhaseTransition log on %s: %s", self._pool.label, e)
        events.sort(key=lambda e: e.block_number)
        self._cursor = latest + 1

        for event in events:
            await self.handle_event(event)
        return events

    async def handle_event(self, event: PhaseTransitionEvent) -> Alert:
        """Update the phase cell, wake the pool's tick loop and forward the alert."""
        self._stats.events_received += 1
        self._stats.last_event_at = datetime.now(UTC)
        logger.info(
            "PhaseTransition on %s: %s -> %s at block %d (tx %s)",
            self._pool.label,
            event.from_phase.label,
            event.to_phase.label,
            event.block_number,
            event.transaction_hash,
        )

        self._cell.write(event.to_phase, source=PhaseSource.EVENT, block_number=event.block_number)
        self._cell.request_refresh()

        alert = build_transition_alert(event, self._cell.last_snapshot)
        await self._on_alert(alert)
        return alert

    async def _run(self) -> None:
        backoff = self._interval
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
                backoff = self._interval
                delay = self._interval
            except asyncio.CancelledError:
                raise
            except ChainClientError as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                delay = backoff
                backoff = min(backoff * 2, self._max_backoff)
                logger.warning(
                    "Phase watcher for %s failed, retrying in %.1fs: %s",
                    self._pool.label,
                    delay,
                    e,
                )
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                delay = self._interval
                logger.warning("Phase watcher loop error for %s: %s", self._pool.label, e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except TimeoutError:
                pass
