"""Per-pool monitoring scheduler.

This module provides the Scheduler class that owns one periodic task per
monitored pool. Each tick runs:

    ChainStateReader -> PhaseClassifier -> PoolHistory -> AnomalyDetector -> AlertDispatcher

A PhaseTransitionWatcher per pool runs beside the tick loop and wakes it
early when the pool changes phase.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from amm_phase_monitor.alerter.dispatcher import (
    AlertDispatcher,
    AlertSink,
    LoggingSink,
    SuppressionCounters,
)
from amm_phase_monitor.config import ConfigurationMissingError, PoolConfig, Settings, get_settings
from amm_phase_monitor.detector.anomaly import AnomalyDetector
from amm_phase_monitor.detector.models import Alert, Evaluation
from amm_phase_monitor.detector.phase import PhaseClassifier
from amm_phase_monitor.ingestor.chain import PoolChainClient
from amm_phase_monitor.ingestor.history import HistoryOrderError, PoolHistory, StateHistoryStore
from amm_phase_monitor.ingestor.models import PoolSnapshot
from amm_phase_monitor.ingestor.phase_watcher import PhaseCell, PhaseTransitionWatcher
from amm_phase_monitor.ingestor.reader import (
    ChainStateReader,
    ImmutableParamsCache,
    TransientReadError,
)

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    """Scheduler lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SchedulerStats:
    """Statistics for the scheduler."""

    started_at: datetime | None = None
    pools_running: int = 0
    pools_skipped: int = 0
    ticks_completed: int = 0
    ticks_failed: int = 0
    phase_disagreements: int = 0
    alerts_generated: int = 0
    alerts_sent: int = 0
    last_tick_time: datetime | None = None
    last_error: str | None = None


@dataclass
class PoolRuntime:
    """Everything one pool's task owns."""

    pool: PoolConfig
    detector: AnomalyDetector
    history: PoolHistory
    cell: PhaseCell
    watcher: PhaseTransitionWatcher | None = None
    task: asyncio.Task[None] | None = None
    # Start of the current paused run; kept here since history eviction drops it.
    paused_at: datetime | None = None

    def track_pause(self, snapshot: PoolSnapshot) -> datetime | None:
        if not snapshot.paused:
            self.paused_at = None
        elif self.paused_at is None:
            self.paused_at = snapshot.timestamp
        return self.paused_at


class Scheduler:
    """Main orchestrator for the AMM phase monitor.

    Example:
        ```python
        from amm_phase_monitor.config import get_settings
        from amm_phase_monitor.scheduler import Scheduler

        async with Scheduler(get_settings(), sink=my_sink) as scheduler:
            ...
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        sink: AlertSink | None = None,
        client: PoolChainClient | None = None,
        counters: SuppressionCounters | None = None,
        params_cache: ImmutableParamsCache | None = None,
        dry_run: bool | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            sink: Notification sink. Defaults to logging the alerts.
            client: Chain client. Built from settings when not provided; an
                injected client is not closed on stop.
            counters: Shared suppression counters.
            params_cache: Shared immutable-parameter cache.
            dry_run: If True, skip sending alerts. Overrides settings.dry_run.
            clock: Snapshot timestamp source.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._sink = sink
        self._clock = clock

        self._state = SchedulerState.STOPPED
        self._stats = SchedulerStats()

        self._client = client
        self._owns_client = client is None
        self._redis: Redis | None = None
        self._counters = counters or SuppressionCounters()
        self._params_cache = params_cache or ImmutableParamsCache()
        self._history_store = StateHistoryStore(capacity=self._settings.monitor.history_capacity)

        self._reader: ChainStateReader | None = None
        self._classifier = PhaseClassifier()
        self._dispatcher: AlertDispatcher | None = None
        self._pools: dict[str, PoolRuntime] = {}

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> SchedulerState:
        """Current scheduler state."""
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        """Current scheduler statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    @property
    def counters(self) -> SuppressionCounters:
        return self._counters

    @property
    def history_store(self) -> StateHistoryStore:
        return self._history_store

    @property
    def pool_ids(self) -> list[str]:
        return list(self._pools)

    def phase_cell(self, pool_id: str) -> PhaseCell:
        return self._pools[pool_id].cell

    async def start(self) -> None:
        """Start one task per configured pool.

        Raises:
            RuntimeError: If the scheduler is not stopped.
        """
        if self._state != SchedulerState.STOPPED:
            raise RuntimeError(f"Cannot start scheduler in state {self._state}")

        self._state = SchedulerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting scheduler...")

        try:
            await self.initialize()
            await self._start_pool_tasks()
            self._stats.started_at = datetime.now(UTC)
            self._state = SchedulerState.RUNNING
            logger.info("Scheduler started with %d pool(s)", len(self._pools))
        except Exception as e:
            self._state = SchedulerState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start scheduler: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop all pool tasks and release resources."""
        if self._state == SchedulerState.STOPPED:
            return

        self._state = SchedulerState.STOPPING
        logger.info("Stopping scheduler...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_pool_tasks()
        await self._cleanup()

        self._state = SchedulerState.STOPPED
        logger.info("Scheduler stopped")

    async def initialize(self) -> None:
        """Build components and pool runtimes without starting any task.

        `start()` calls this; tests and one-shot runs can call it directly
        and drive pools with `tick()`.
        """
        if self._reader is None:
            await self._initialize_components()

    async def _initialize_components(self) -> None:
        settings = self._settings
        self._pools.clear()

        if self._client is None:
            if settings.redis.url:
                logger.debug("Initializing Redis connection...")
                self._redis = Redis.from_url(settings.redis.url)
            self._client = PoolChainClient(
                settings.chain.rpc_url,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                redis=self._redis,
                max_requests_per_second=settings.chain.max_requests_per_second,
                max_retries=settings.chain.max_retries,
            )

        self._reader = ChainStateReader(
            self._client,
            params_cache=self._params_cache,
            timeout_seconds=settings.monitor.read_timeout_seconds,
            clock=self._clock,
        )

        if self._sink is None:
            logger.warning("No notification sink configured, alerts will only be logged")
        self._dispatcher = AlertDispatcher(
            self._sink or LoggingSink(),
            counters=self._counters,
            dry_run=self._dry_run,
        )

        for pool in settings.monitor.pools:
            try:
                thresholds = settings.thresholds_for(pool)
            except ConfigurationMissingError as e:
                self._stats.pools_skipped += 1
                logger.error("Not monitoring %s: %s", pool.label, e)
                continue

            cell = PhaseCell(pool.pool_id)
            runtime = PoolRuntime(
                pool=pool,
                detector=AnomalyDetector(thresholds),
                history=self._history_store.history_for(pool.pool_id),
                cell=cell,
            )
            if settings.monitor.event_watch_enabled:
                runtime.watcher = PhaseTransitionWatcher(
                    self._client,
                    pool,
                    cell=cell,
                    on_alert=self._on_transition_alert,
                    poll_interval_seconds=settings.monitor.event_poll_interval_seconds,
                )
            self._pools[pool.pool_id] = runtime

        if not self._pools:
            logger.warning("No pools to monitor")

        logger.info("All components initialized")

    async def _start_pool_tasks(self) -> None:
        for runtime in self._pools.values():
            logger.debug("Starting pool task for %s...", runtime.pool.label)
            runtime.task = asyncio.create_task(
                self._run_pool(runtime), name=f"pool:{runtime.pool.pool_id}"
            )
            if runtime.watcher is not None:
                await runtime.watcher.start()
        self._stats.pools_running = len(self._pools)

    async def _stop_pool_tasks(self) -> None:
        for runtime in self._pools.values():
            if runtime.watcher is not None:
                await runtime.watcher.stop()
            runtime.cell.request_refresh()

        tasks = [r.task for r in self._pools.values() if r.task is not None]
        if tasks:
            # In-flight ticks get one read timeout to finish before cancellation.
            _, pending = await asyncio.wait(
                tasks, timeout=self._settings.monitor.read_timeout_seconds
            )
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        for runtime in self._pools.values():
            runtime.task = None
        self._stats.pools_running = 0

    async def _cleanup(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            self._reader = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def _run_pool(self, runtime: PoolRuntime) -> None:
        if not self._stop_event:
            return

        loop = asyncio.get_running_loop()
        interval = self._settings.monitor.poll_interval_seconds
        while not self._stop_event.is_set():
            started = loop.time()
            try:
                await self._tick(runtime)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.ticks_failed += 1
                self._stats.last_error = str(e)
                logger.error("Tick failed for %s: %s", runtime.pool.label, e)

            if self._stop_event.is_set():
                break

            # Fixed cadence; a slow tick shortens the wait, missed ticks are not replayed.
            remaining = max(0.0, interval - (loop.time() - started))
            if await runtime.cell.wait(remaining) and not self._stop_event.is_set():
                logger.debug("Early tick for %s after phase event", runtime.pool.label)

    async def tick(self, pool_id: str) -> Evaluation | None:
        """Run one tick for a pool.

        Returns:
            The evaluation, or None when the tick was skipped.

        Raises:
            KeyError: If the pool is not monitored.
        """
        return await self._tick(self._pools[pool_id])

    async def _tick(self, runtime: PoolRuntime) -> Evaluation | None:
        if self._reader is None or self._dispatcher is None:
            raise RuntimeError("Scheduler is not initialized")

        pool = runtime.pool
        try:
            snapshot = await self._reader.read(pool)
        except TransientReadError as e:
            self._stats.ticks_failed += 1
            self._stats.last_error = str(e)
            logger.warning("Tick skipped for %s: %s", pool.label, e)
            return None

        classification = self._classifier.classify(snapshot)
        if not classification.agrees:
            self._stats.phase_disagreements += 1
        runtime.cell.record_snapshot(snapshot, phase=classification.phase)

        try:
            runtime.history.append(snapshot)
        except HistoryOrderError as e:
            self._stats.ticks_failed += 1
            self._stats.last_error = str(e)
            logger.warning("Tick skipped for %s: %s", pool.label, e)
            return None

        evaluation = runtime.detector.evaluate(
            snapshot,
            runtime.history.snapshots(),
            paused_at=runtime.track_pause(snapshot),
        )
        self._stats.alerts_generated += len(evaluation.alerts)

        result = await self._dispatcher.deliver(evaluation)
        if not result.dry_run:
            self._stats.alerts_sent += result.success_count

        self._stats.ticks_completed += 1
        self._stats.last_tick_time = snapshot.timestamp
        logger.debug(
            "Tick for %s at block %d: phase=%s alerts=%d suppressed=%d",
            pool.label,
            snapshot.block_height,
            evaluation.phase.label,
            len(evaluation.alerts),
            len(evaluation.suppressed),
        )
        return evaluation

    async def _on_transition_alert(self, alert: Alert) -> None:
        if self._dispatcher is None:
            return
        self._stats.alerts_generated += 1
        if await self._dispatcher.dispatch(alert) and not self._dry_run:
            self._stats.alerts_sent += 1

    async def run(self) -> None:
        """Start the scheduler and run until stopped or cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Scheduler:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
