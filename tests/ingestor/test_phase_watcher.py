"""Tests for the PhaseTransition watcher and phase cell."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from amm_phase_monitor.config import PoolConfig
from amm_phase_monitor.detector.models import AlertKind, AlertPriority, PhaseTransitionPayload
from amm_phase_monitor.ingestor.chain import RPCError
from amm_phase_monitor.ingestor.models import Phase, PhaseTransitionEvent
from amm_phase_monitor.ingestor.phase_watcher import (
    PhaseCell,
    PhaseSource,
    PhaseTransitionWatcher,
)


def make_log(block: int, *, from_phase: int = 0, to_phase: int = 1) -> dict:
    return {
        "args": {
            "fromPhase": from_phase,
            "toPhase": to_phase,
            "reserveBalance": 25_000 * 10**6,
            "timestamp": 1_767_268_800,
        },
        "blockNumber": block,
        "transactionHash": "0x" + "cd" * 32,
    }


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock()
    client.get_block_number = AsyncMock(return_value=100)
    client.get_phase_transition_logs = AsyncMock(return_value=[])
    return client


@pytest.fixture
def cell(pool_id: str) -> PhaseCell:
    return PhaseCell(pool_id)


@pytest.fixture
def on_alert() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def watcher(
    mock_client: MagicMock, pool_config: PoolConfig, cell: PhaseCell, on_alert: AsyncMock
) -> PhaseTransitionWatcher:
    return PhaseTransitionWatcher(
        mock_client,
        pool_config,
        cell=cell,
        on_alert=on_alert,
        poll_interval_seconds=0.01,
    )


class TestPhaseCell:
    def test_write_last_writer_wins(self, cell: PhaseCell) -> None:
        cell.write(Phase.FLAT, source=PhaseSource.POLL, block_number=10)
        cell.write(Phase.BONDING_CURVE, source=PhaseSource.EVENT, block_number=11)
        cell.write(Phase.FLAT, source=PhaseSource.POLL, block_number=11)

        assert cell.phase is Phase.FLAT
        assert cell.source is PhaseSource.POLL

    def test_record_snapshot(self, cell: PhaseCell, make_snapshot) -> None:
        snapshot = make_snapshot(phase=Phase.BONDING_CURVE, block=42)
        cell.record_snapshot(snapshot)

        assert cell.last_snapshot is snapshot
        assert cell.phase is Phase.BONDING_CURVE
        assert cell.block_number == 42

    @pytest.mark.asyncio
    async def test_wait_times_out(self, cell: PhaseCell) -> None:
        assert await cell.wait(0.01) is False

    @pytest.mark.asyncio
    async def test_wait_woken_by_refresh(self, cell: PhaseCell) -> None:
        asyncio.get_running_loop().call_later(0.01, cell.request_refresh)

        assert await cell.wait(5.0) is True
        assert cell.refresh_requested is False


class TestPhaseTransitionWatcher:
    @pytest.mark.asyncio
    async def test_first_poll_starts_at_head(
        self, watcher: PhaseTransitionWatcher, mock_client: MagicMock
    ) -> None:
        events = await watcher.poll_once()

        assert events == []
        assert watcher.cursor == 101
        mock_client.get_phase_transition_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_event_updates_cell_and_alerts(
        self,
        watcher: PhaseTransitionWatcher,
        mock_client: MagicMock,
        cell: PhaseCell,
        on_alert: AsyncMock,
        pool_config: PoolConfig,
    ) -> None:
        await watcher.poll_once()
        mock_client.get_block_number.return_value = 110
        mock_client.get_phase_transition_logs.return_value = [make_log(105)]

        events = await watcher.poll_once()

        mock_client.get_phase_transition_logs.assert_awaited_once_with(
            pool_config.pool_id, from_block=101, to_block=110
        )
        assert len(events) == 1
        assert watcher.cursor == 111
        assert cell.phase is Phase.BONDING_CURVE
        assert cell.source is PhaseSource.EVENT
        assert cell.refresh_requested is True

        on_alert.assert_awaited_once()
        alert = on_alert.await_args.args[0]
        assert alert.kind is AlertKind.PHASE_TRANSITION
        assert alert.priority is AlertPriority.MEDIUM
        assert alert.is_security is False
        assert isinstance(alert.payload, PhaseTransitionPayload)
        assert alert.payload.block_number == 105
        assert alert.current_snapshot is None

    @pytest.mark.asyncio
    async def test_alert_carries_last_snapshot(
        self,
        watcher: PhaseTransitionWatcher,
        cell: PhaseCell,
        on_alert: AsyncMock,
        make_snapshot,
    ) -> None:
        snapshot = make_snapshot(phase=Phase.FLAT)
        cell.record_snapshot(snapshot)

        event = PhaseTransitionEvent.from_log(cell.pool_id, make_log(200))
        alert = await watcher.handle_event(event)

        assert alert.current_snapshot is snapshot
        assert watcher.stats.events_received == 1

    @pytest.mark.asyncio
    async def test_rpc_failure_keeps_cursor(
        self, watcher: PhaseTransitionWatcher, mock_client: MagicMock
    ) -> None:
        await watcher.poll_once()
        mock_client.get_block_number.return_value = 120
        mock_client.get_phase_transition_logs.side_effect = RPCError("down")

        with pytest.raises(RPCError):
            await watcher.poll_once()

        assert watcher.cursor == 101

    @pytest.mark.asyncio
    async def test_malformed_log_skipped(
        self,
        watcher: PhaseTransitionWatcher,
        mock_client: MagicMock,
        on_alert: AsyncMock,
    ) -> None:
        await watcher.poll_once()
        mock_client.get_block_number.return_value = 110
        mock_client.get_phase_transition_logs.return_value = [
            {"args": {}, "blockNumber": 102},
            make_log(103),
        ]

        events = await watcher.poll_once()

        assert len(events) == 1
        assert on_alert.await_count == 1

    @pytest.mark.asyncio
    async def test_no_new_blocks(
        self, watcher: PhaseTransitionWatcher, mock_client: MagicMock
    ) -> None:
        await watcher.poll_once()
        await watcher.poll_once()

        mock_client.get_phase_transition_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_stop(
        self, watcher: PhaseTransitionWatcher, mock_client: MagicMock
    ) -> None:
        mock_client.get_block_number.side_effect = RPCError("down")

        await watcher.start()
        assert watcher.is_running
        await asyncio.sleep(0.05)
        await watcher.stop()

        assert not watcher.is_running
        assert watcher.stats.errors >= 1
        assert watcher.stats.last_error is not None
