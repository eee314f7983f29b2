"""Bounded per-pool snapshot history for windowed comparisons."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from datetime import datetime, timedelta

from amm_phase_monitor.ingestor.models import PoolSnapshot

DEFAULT_HISTORY_CAPACITY = 300  # ~1 hour at 12s polling


class HistoryOrderError(Exception):
    """Raised when an append would break the history's ordering invariant."""


class PoolHistory:
    """FIFO ring of snapshots for one pool.

    Timestamps are strictly increasing and block heights never decrease
    (two polls can land in the same block). A rejected append leaves the
    history untouched. Each instance is owned by exactly one pool task, so
    no locking is done here.
    """

    def __init__(self, pool_id: str, *, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._pool_id = pool_id
        self._entries: deque[PoolSnapshot] = deque(maxlen=capacity)

    @property
    def pool_id(self) -> str:
        return self._pool_id

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    @property
    def latest(self) -> PoolSnapshot | None:
        return self._entries[-1] if self._entries else None

    @property
    def oldest(self) -> PoolSnapshot | None:
        return self._entries[0] if self._entries else None

    def append(self, snapshot: PoolSnapshot) -> None:
        """Append a snapshot, evicting the oldest entry when full.

        Raises:
            HistoryOrderError: If the snapshot belongs to another pool or is
                not newer than the latest entry.
        """
        if snapshot.pool_id != self._pool_id:
            raise HistoryOrderError(
                f"Snapshot for {snapshot.pool_id} appended to history of {self._pool_id}"
            )
        latest = self.latest
        if latest is not None:
            if snapshot.timestamp <= latest.timestamp:
                raise HistoryOrderError(
                    f"Non-increasing timestamp for {self._pool_id}: "
                    f"{snapshot.timestamp.isoformat()} <= {latest.timestamp.isoformat()}"
                )
            if snapshot.block_height < latest.block_height:
                raise HistoryOrderError(
                    f"Block height went backwards for {self._pool_id}: "
                    f"{snapshot.block_height} < {latest.block_height}"
                )
        self._entries.append(snapshot)

    def snapshots(self) -> tuple[PoolSnapshot, ...]:
        """Return all entries, oldest first."""
        return tuple(self._entries)

    def since(self, cutoff: datetime) -> tuple[PoolSnapshot, ...]:
        """Return entries with timestamp >= cutoff, oldest first."""
        return tuple(s for s in self._entries if s.timestamp >= cutoff)

    def window(self, length: timedelta) -> tuple[PoolSnapshot, ...]:
        """Return entries within `length` of the latest entry."""
        latest = self.latest
        if latest is None:
            return ()
        return self.since(latest.timestamp - length)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PoolSnapshot]:
        return iter(tuple(self._entries))


class StateHistoryStore:
    """Registry of per-pool histories sharing one capacity."""

    def __init__(self, *, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        self._capacity = capacity
        self._histories: dict[str, PoolHistory] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def history_for(self, pool_id: str) -> PoolHistory:
        """Get the pool's history, creating it on first use."""
        history = self._histories.get(pool_id)
        if history is None:
            history = PoolHistory(pool_id, capacity=self._capacity)
            self._histories[pool_id] = history
        return history

    def get(self, pool_id: str) -> PoolHistory | None:
        return self._histories.get(pool_id)

    def pool_ids(self) -> list[str]:
        return list(self._histories)

    def __len__(self) -> int:
        return len(self._histories)
