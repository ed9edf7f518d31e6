"""
Unit tests for the BlockWatcher

Tests:
- newHeads message parsing
- Blocks at or below the last delivered one are dropped
- Polling fallback and reconnection backoff
- Handshake and timeout failures reconnect
"""

import asyncio
import json
from unittest.mock import AsyncMock, Mock, patch

import pytest
from websockets.exceptions import InvalidHandshake

from conftest import create_mock_ledger
from liquidator.src.block_watcher import BlockWatcher
from liquidator.src.types import ConfigurationError, RPCError


def head_message(number: int) -> str:
    return json.dumps({
        "jsonrpc": "2.0",
        "method": "eth_subscription",
        "params": {"subscription": "0x1", "result": {"number": hex(number), "hash": "0x00"}},
    })


class TestParsing:
    """Subscription messages"""

    def test_new_head(self):
        assert BlockWatcher._parse_head(head_message(19_000_000)) == 19_000_000

    def test_subscription_ack_is_ignored(self):
        assert BlockWatcher._parse_head(json.dumps({"jsonrpc": "2.0", "id": 1, "result": "0x1"})) is None

    def test_invalid_json(self):
        assert BlockWatcher._parse_head("not json") is None


class TestDelivery:
    """Block callback"""

    @pytest.mark.asyncio
    async def test_drops_stale_blocks(self):
        on_block = AsyncMock()
        watcher = BlockWatcher(on_block, ws_url="ws://localhost:8546")

        for number in (10, 10, 9, 11):
            await watcher._emit(number)

        assert [c.args[0] for c in on_block.await_args_list] == [10, 11]

    @pytest.mark.asyncio
    async def test_poll_delivers_head(self):
        ledger = create_mock_ledger(block_number=42)
        watcher = BlockWatcher(AsyncMock(), ledger=ledger, poll_interval=0)

        async def on_block(number):
            await watcher.stop()

        watcher.on_block = AsyncMock(side_effect=on_block)
        await watcher.start()

        watcher.on_block.assert_awaited_once_with(42)

    @pytest.mark.asyncio
    async def test_poll_survives_rpc_errors(self):
        ledger = create_mock_ledger()
        ledger.get_block_number.side_effect = [RPCError("timeout"), 7]
        watcher = BlockWatcher(AsyncMock(), ledger=ledger, poll_interval=0)

        async def on_block(number):
            await watcher.stop()

        watcher.on_block = AsyncMock(side_effect=on_block)
        await watcher.start()

        watcher.on_block.assert_awaited_once_with(7)

    def test_needs_a_source(self):
        with pytest.raises(ConfigurationError):
            BlockWatcher(AsyncMock())


class TestBackoff:
    """Reconnection delay"""

    @pytest.mark.asyncio
    async def test_handshake_failures_reconnect(self):
        watcher = BlockWatcher(AsyncMock(), ws_url="ws://localhost:8546")
        connect = Mock(side_effect=[InvalidHandshake("HTTP 503"), asyncio.TimeoutError(), OSError("refused")])

        async def sleep(delay):
            if connect.call_count == 3:
                await watcher.stop()

        with patch("liquidator.src.block_watcher.connect", new=connect), \
                patch("liquidator.src.block_watcher.asyncio.sleep", new=AsyncMock(side_effect=sleep)):
            await watcher.start()

        assert connect.call_count == 3
        assert watcher.reconnect_attempts == 3

    @pytest.mark.asyncio
    async def test_exponential_and_capped(self):
        watcher = BlockWatcher(AsyncMock(), ws_url="ws://localhost:8546")

        with patch("liquidator.src.block_watcher.asyncio.sleep", new=AsyncMock()) as sleep:
            for _ in range(8):
                await watcher._backoff()

        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]
