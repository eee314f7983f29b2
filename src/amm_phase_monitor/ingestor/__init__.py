"""Chain ingestion layer - Pool state reads, history windows and phase events."""

from amm_phase_monitor.ingestor.chain import ChainClientError, PoolChainClient, RPCError
from amm_phase_monitor.ingestor.history import HistoryOrderError, PoolHistory, StateHistoryStore
from amm_phase_monitor.ingestor.models import (
    ImmutableParams,
    Phase,
    PhaseTransitionEvent,
    PoolSnapshot,
)
from amm_phase_monitor.ingestor.reader import (
    ChainStateReader,
    ImmutableParamsCache,
    TransientReadError,
)

__all__ = [
    "ChainClientError",
    "ChainStateReader",
    "HistoryOrderError",
    "ImmutableParams",
    "ImmutableParamsCache",
    "Phase",
    "PhaseTransitionEvent",
    "PoolChainClient",
    "PoolHistory",
    "PoolSnapshot",
    "RPCError",
    "StateHistoryStore",
    "TransientReadError",
]
