"""
Ledger Client

Async access to an EVM chain through web3's AsyncWeb3:
- Block numbers and timestamps
- Event logs decoded against the protocol ABIs
- Batched reads through Multicall3 with per-call failure isolation
- Bundle simulation (eth_simulateV1), gas price, signing and submission

Every RPC request is throttled by a token bucket rate limiter.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_account import Account
from web3 import AsyncWeb3, AsyncHTTPProvider

from .abis import EventDefinition, decode_log, decode_output, encode_call, to_hex
from .types import CallResult, DecodedLog, RPCError, SimulatedCall

logger = logging.getLogger(__name__)

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"
DEFAULT_MAX_REQUESTS_PER_SECOND = 100
DEFAULT_BURST = 20
DEFAULT_MAX_WAIT_SECONDS = 30.0

Call = Tuple[str, bytes]


# ============================================================================
# Rate Limiting
# ============================================================================

class AsyncRateLimiter:
    """
    Token bucket limiter for outgoing RPC requests.

    Tokens refill continuously at `rate` per second up to `burst`. Waiters
    are served in arrival order; a waiter that cannot get a token within
    `max_wait` seconds fails with RPCError.
    """

    def __init__(
        self,
        rate: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        burst: int = DEFAULT_BURST,
        max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
    ):
        self.rate = rate
        self.burst = burst
        self.max_wait = max_wait
        self._tokens = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now

    async def acquire(self) -> None:
        deadline = time.monotonic() + self.max_wait
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self.rate
                if time.monotonic() + wait > deadline:
                    raise RPCError("Rate limiter: max wait time exceeded")
                await asyncio.sleep(wait)


# ============================================================================
# Client Interface
# ============================================================================

class LedgerClient(ABC):
    """Operations the indexer and the liquidation engine need from a chain"""

    chain_id: int
    account_address: Optional[str] = None

    @abstractmethod
    async def get_block_number(self) -> int:
        ...

    @abstractmethod
    async def get_block_timestamp(self, block_number: int) -> int:
        ...

    @abstractmethod
    async def get_logs(
        self, address: str, events: Sequence[EventDefinition], from_block: int, to_block: int
    ) -> List[DecodedLog]:
        ...

    @abstractmethod
    async def multicall(self, calls: Sequence[Call]) -> List[CallResult]:
        ...

    @abstractmethod
    async def call(self, to: str, data: bytes) -> bytes:
        ...

    @abstractmethod
    async def get_decimals(self, token: str) -> int:
        ...

    @abstractmethod
    async def simulate_calls(self, sender: str, calls: Sequence[Call]) -> List[SimulatedCall]:
        ...

    @abstractmethod
    async def get_gas_price(self) -> int:
        ...

    @abstractmethod
    async def build_transaction(self, to: str, data: bytes) -> Dict[str, Any]:
        ...

    @abstractmethod
    def sign_transaction(self, transaction: Dict[str, Any]) -> bytes:
        ...

    @abstractmethod
    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        ...

    async def send_transaction(self, to: str, data: bytes) -> str:
        """Build, sign and broadcast a transaction; returns its hash"""
        transaction = await self.build_transaction(to, data)
        return await self.send_raw_transaction(self.sign_transaction(transaction))


# ============================================================================
# Web3 Implementation
# ============================================================================

class Web3LedgerClient(LedgerClient):
    """LedgerClient backed by an AsyncWeb3 HTTP provider"""

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        private_key: Optional[str] = None,
        max_requests_per_second: int = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout: float = 30.0,
    ):
        self.chain_id = chain_id
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.account = Account.from_key(private_key) if private_key else None
        self.account_address = self.account.address if self.account else None
        self.rate_limiter = AsyncRateLimiter(rate=max_requests_per_second)
        self._decimals: Dict[str, int] = {}

        logger.info(f"Ledger client initialized for chain {chain_id}")

    async def _throttled(self, coro_factory):
        await self.rate_limiter.acquire()
        try:
            return await coro_factory()
        except RPCError:
            raise
        except Exception as e:
            raise RPCError(f"RPC request failed: {e}") from e

    async def get_block_number(self) -> int:
        return await self._throttled(lambda: self.w3.eth.block_number)

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self._throttled(lambda: self.w3.eth.get_block(block_number))
        return int(block["timestamp"])

    async def get_logs(
        self, address: str, events: Sequence[EventDefinition], from_block: int, to_block: int
    ) -> List[DecodedLog]:
        params = {
            "address": AsyncWeb3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [[e.topic0 for e in events]],
        }
        raw_logs = await self._throttled(lambda: self.w3.eth.get_logs(params))

        decoded = []
        for raw_log in raw_logs:
            log = decode_log(raw_log, events)
            if log is not None:
                decoded.append(log)
        return decoded

    async def multicall(self, calls: Sequence[Call]) -> List[CallResult]:
        if not calls:
            return []
        data = encode_call(
            "aggregate3",
            ["(address,bool,bytes)[]"],
            [[(AsyncWeb3.to_checksum_address(target), True, call_data) for target, call_data in calls]],
        )
        output = await self.call(MULTICALL3_ADDRESS, data)
        (results,) = decode_output(["(bool,bytes)[]"], output)
        return [CallResult(success=success, return_data=bytes(ret)) for success, ret in results]

    async def call(self, to: str, data: bytes) -> bytes:
        tx = {"to": AsyncWeb3.to_checksum_address(to), "data": to_hex(data)}
        return bytes(await self._throttled(lambda: self.w3.eth.call(tx)))

    async def get_decimals(self, token: str) -> int:
        key = token.lower()
        if key not in self._decimals:
            output = await self.call(token, encode_call("decimals", [], []))
            (self._decimals[key],) = decode_output(["uint8"], output)
        return self._decimals[key]

    async def simulate_calls(self, sender: str, calls: Sequence[Call]) -> List[SimulatedCall]:
        payload = {
            "blockStateCalls": [
                {
                    "calls": [
                        {"from": sender, "to": AsyncWeb3.to_checksum_address(to), "data": to_hex(data)}
                        for to, data in calls
                    ]
                }
            ],
            "validation": False,
        }
        response = await self._throttled(
            lambda: self.w3.provider.make_request("eth_simulateV1", [payload, "latest"])
        )
        if response.get("error"):
            raise RPCError(f"eth_simulateV1 failed: {response['error']}")

        results = []
        for entry in response["result"][0]["calls"]:
            error = entry.get("error")
            results.append(
                SimulatedCall(
                    success=int(entry.get("status", "0x0"), 16) == 1,
                    return_data=bytes.fromhex(entry.get("returnData", "0x")[2:]),
                    gas_used=int(entry.get("gasUsed", "0x0"), 16),
                    error=error.get("message") if isinstance(error, dict) else error,
                )
            )
        return results

    async def get_gas_price(self) -> int:
        return await self._throttled(lambda: self.w3.eth.gas_price)

    def _require_account(self):
        if self.account is None:
            raise RPCError("No signing account configured")
        return self.account

    async def build_transaction(self, to: str, data: bytes) -> Dict[str, Any]:
        account = self._require_account()
        tx: Dict[str, Any] = {
            "from": account.address,
            "to": AsyncWeb3.to_checksum_address(to),
            "data": to_hex(data),
            "value": 0,
            "chainId": self.chain_id,
        }

        nonce, latest_block, priority_fee = await asyncio.gather(
            self._throttled(lambda: self.w3.eth.get_transaction_count(account.address, "pending")),
            self._throttled(lambda: self.w3.eth.get_block("latest")),
            self._throttled(lambda: self.w3.eth.max_priority_fee),
        )
        base_fee = latest_block.get("baseFeePerGas", 0)

        tx["nonce"] = nonce
        tx["maxPriorityFeePerGas"] = priority_fee
        # Max fee = base fee * 2 + priority fee (room for base fee increases)
        tx["maxFeePerGas"] = base_fee * 2 + priority_fee
        tx["type"] = 2
        tx["gas"] = await self._throttled(lambda: self.w3.eth.estimate_gas(tx))
        return tx

    def sign_transaction(self, transaction: Dict[str, Any]) -> bytes:
        account = self._require_account()
        unsigned = {k: v for k, v in transaction.items() if k != "from"}
        return bytes(account.sign_transaction(unsigned).raw_transaction)

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        tx_hash = await self._throttled(lambda: self.w3.eth.send_raw_transaction(raw_transaction))
        return to_hex(tx_hash)
