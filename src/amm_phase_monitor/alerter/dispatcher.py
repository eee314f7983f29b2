"""Alert delivery and suppression accounting.

The dispatcher hands alerts one at a time to an injected notification sink.
There is no deduplication, no retry and no fan-out: a failed send is logged
and the rest of the batch still goes out.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from amm_phase_monitor.detector.models import Alert, AlertKind, AlertPriority, Evaluation

logger = logging.getLogger(__name__)


class NotificationSendError(Exception):
    """Raised by a sink when it rejects an alert."""


@runtime_checkable
class AlertSink(Protocol):
    """External notification sink."""

    async def send(self, alert: Alert) -> None:
        """Deliver one alert. Raises on failure."""
        ...


class LoggingSink:
    """Sink that writes alerts to the log. Used when nothing else is configured."""

    def __init__(self, logger_name: str = "amm_phase_monitor.alerts") -> None:
        self._logger = logging.getLogger(logger_name)

    async def send(self, alert: Alert) -> None:
        self._logger.warning(
            "[%s] %s %s: %s",
            alert.priority.value.upper(),
            alert.pool_id,
            alert.kind.value,
            alert.message,
        )


class SuppressionCounters:
    """Process-wide per-kind counters of phase-suppressed checks.

    Counters only go up and live as long as the process. Increments are
    guarded by a lock so pool tasks on any thread may share one instance.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[AlertKind, int] = {}

    def increment(self, kind: AlertKind, amount: int = 1) -> int:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        with self._lock:
            value = self._counts.get(kind, 0) + amount
            self._counts[kind] = value
            return value

    def get(self, kind: AlertKind) -> int:
        with self._lock:
            return self._counts.get(kind, 0)

    def snapshot(self) -> dict[AlertKind, int]:
        with self._lock:
            return dict(self._counts)

    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())


@dataclass
class DispatchResult:
    """Outcome of delivering a batch of alerts."""

    delivered: list[Alert] = field(default_factory=list)
    failed: list[tuple[Alert, str]] = field(default_factory=list)
    dry_run: bool = False

    @property
    def success_count(self) -> int:
        return len(self.delivered)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


@dataclass
class DispatcherStats:
    """Dispatch totals; `by_kind` and `by_priority` count every alert handed in."""

    sent: int = 0
    failed: int = 0
    skipped_dry_run: int = 0
    by_kind: dict[AlertKind, int] = field(default_factory=dict)
    by_priority: dict[AlertPriority, int] = field(default_factory=dict)

    def record(self, alert: Alert) -> None:
        self.by_kind[alert.kind] = self.by_kind.get(alert.kind, 0) + 1
        self.by_priority[alert.priority] = self.by_priority.get(alert.priority, 0) + 1


class AlertDispatcher:
    """Forwards alerts to a sink and tracks suppression counters.

    Example:
        ```python
        dispatcher = AlertDispatcher(sink, counters=SuppressionCounters())
        result = await dispatcher.deliver(evaluation)
        if not result.all_succeeded:
            ...
        ```
    """

    def __init__(
        self,
        sink: AlertSink,
        *,
        counters: SuppressionCounters | None = None,
        dry_run: bool = False,
    ) -> None:
        self._sink = sink
        self._counters = counters or SuppressionCounters()
        self._dry_run = dry_run
        self._stats = DispatcherStats()

    @property
    def counters(self) -> SuppressionCounters:
        return self._counters

    @property
    def stats(self) -> DispatcherStats:
        return self._stats

    async def dispatch(self, alert: Alert) -> bool:
        """Send one alert. Returns False if the sink failed; never raises for sink errors."""
        return await self._send(alert) is None

    async def _send(self, alert: Alert) -> str | None:
        self._stats.record(alert)
        if self._dry_run:
            self._stats.skipped_dry_run += 1
            logger.info(
                "[DRY RUN] Would send alert: pool=%s kind=%s priority=%s",
                alert.pool_id,
                alert.kind.value,
                alert.priority.value,
            )
            return None

        try:
            await self._sink.send(alert)
        except Exception as e:
            self._stats.failed += 1
            logger.error(
                "Failed to send %s alert for %s: %s",
                alert.kind.value,
                alert.pool_id,
                e,
            )
            return str(e) or type(e).__name__

        self._stats.sent += 1
        logger.info(
            "Alert sent: pool=%s kind=%s priority=%s",
            alert.pool_id,
            alert.kind.value,
            alert.priority.value,
        )
        return None

    async def dispatch_batch(self, alerts: Sequence[Alert]) -> DispatchResult:
        """Send alerts in order; one failure does not stop the rest."""
        result = DispatchResult(dry_run=self._dry_run)
        for alert in alerts:
            error = await self._send(alert)
            if error is None:
                result.delivered.append(alert)
            else:
                result.failed.append((alert, error))
        return result

    def record_suppressed(self, kinds: Iterable[AlertKind]) -> None:
        for kind in kinds:
            self._counters.increment(kind)

    async def deliver(self, evaluation: Evaluation) -> DispatchResult:
        """Record the evaluation's suppressed checks and send its alerts."""
        self.record_suppressed(evaluation.suppressed)
        result = await self.dispatch_batch(evaluation.alerts)
        if not result.all_succeeded:
            logger.warning(
                "Alert delivery for %s partially failed: %d/%d sent",
                evaluation.pool_id,
                result.success_count,
                result.success_count + result.failure_count,
            )
        return result
