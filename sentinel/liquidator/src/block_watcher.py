"""
Block Watcher

Delivers new block numbers to a callback, from a `newHeads` websocket
subscription or, without a websocket endpoint, by polling the ledger.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

from websockets import connect, ConnectionClosed

from .ledger import LedgerClient
from .types import ConfigurationError, RPCError

logger = logging.getLogger(__name__)

BlockCallback = Callable[[int], Awaitable[None]]


class BlockWatcher:
    """newHeads subscriber with exponential-backoff reconnection"""

    def __init__(
        self,
        on_block: BlockCallback,
        ws_url: Optional[str] = None,
        ledger: Optional[LedgerClient] = None,
        poll_interval: float = 2.0,
    ):
        if ws_url is None and ledger is None:
            raise ConfigurationError("BlockWatcher needs a websocket URL or a ledger to poll")

        self.on_block = on_block
        self.ws_url = ws_url
        self.ledger = ledger
        self.poll_interval = poll_interval

        self.reconnect_attempts = 0
        self.base_backoff = 1.0  # seconds
        self.max_backoff = 60.0  # seconds

        self._running = False
        self._last_block: Optional[int] = None

    async def start(self):
        """Run until stop() is called"""
        self._running = True
        if self.ws_url:
            await self._watch_websocket()
        else:
            await self._poll()

    async def stop(self):
        self._running = False

    async def _emit(self, block_number: int):
        if self._last_block is not None and block_number <= self._last_block:
            return
        self._last_block = block_number
        await self.on_block(block_number)

    async def _watch_websocket(self):
        while self._running:
            try:
                async with connect(self.ws_url, ping_interval=20, ping_timeout=10) as ws:
                    await ws.send(json.dumps({
                        "jsonrpc": "2.0",
                        "id": 1,
                        "method": "eth_subscribe",
                        "params": ["newHeads"],
                    }))
                    self.reconnect_attempts = 0
                    logger.info("Subscribed to newHeads")

                    async for message in ws:
                        if not self._running:
                            return
                        block_number = self._parse_head(message)
                        if block_number is not None:
                            await self._emit(block_number)

            except ConnectionClosed as e:
                logger.warning(f"WebSocket connection closed: {e}")
            except Exception as e:
                logger.error(f"WebSocket error: {e}")

            if self._running:
                await self._backoff()

    @staticmethod
    def _parse_head(message) -> Optional[int]:
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse WebSocket message: {e}")
            return None

        head = (data.get("params") or {}).get("result")
        if not isinstance(head, dict) or "number" not in head:
            return None
        return int(head["number"], 16)

    async def _backoff(self):
        backoff = min(self.base_backoff * (2 ** self.reconnect_attempts), self.max_backoff)
        logger.info(f"Reconnecting in {backoff:.1f} seconds (attempt {self.reconnect_attempts + 1})")
        self.reconnect_attempts += 1
        await asyncio.sleep(backoff)

    async def _poll(self):
        while self._running:
            try:
                await self._emit(await self.ledger.get_block_number())
            except RPCError as e:
                logger.warning(f"Block polling failed: {e}")
            await asyncio.sleep(self.poll_interval)
