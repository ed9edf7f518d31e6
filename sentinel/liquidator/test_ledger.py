"""
Unit tests for the ledger client

Tests:
- Token bucket rate limiter
- Multicall3 result decoding
- eth_simulateV1 response parsing
- RPC failures surface as RPCError
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from eth_abi import decode, encode

from conftest import EXECUTOR, LIQUIDATOR, LOAN_TOKEN
from liquidator.src.abis import function_selector
from liquidator.src.ledger import MULTICALL3_ADDRESS, AsyncRateLimiter, Web3LedgerClient
from liquidator.src.types import RPCError


def create_client(**kwargs) -> Web3LedgerClient:
    client = Web3LedgerClient("http://localhost:8545", chain_id=1, **kwargs)
    client.w3 = Mock()
    return client


class TestAsyncRateLimiter:
    """Token bucket"""

    @pytest.mark.asyncio
    async def test_burst_is_immediate(self):
        limiter = AsyncRateLimiter(rate=1, burst=3, max_wait=0.01)
        for _ in range(3):
            await limiter.acquire()

    @pytest.mark.asyncio
    async def test_max_wait_exceeded(self):
        limiter = AsyncRateLimiter(rate=1, burst=1, max_wait=0.05)
        await limiter.acquire()

        with pytest.raises(RPCError, match="max wait time exceeded"):
            await limiter.acquire()

    @pytest.mark.asyncio
    async def test_waits_for_refill(self):
        limiter = AsyncRateLimiter(rate=100, burst=1, max_wait=1.0)
        await limiter.acquire()
        await asyncio.wait_for(limiter.acquire(), timeout=1.0)


class TestWeb3LedgerClient:
    """AsyncWeb3-backed client"""

    @pytest.mark.asyncio
    async def test_multicall_isolates_failures(self):
        client = create_client()
        client.call = AsyncMock(return_value=encode(["(bool,bytes)[]"], [[(True, b"\x01"), (False, b"")]]))

        results = await client.multicall([(LOAN_TOKEN, b"\xaa"), (EXECUTOR, b"\xbb")])

        assert [(r.success, r.return_data) for r in results] == [(True, b"\x01"), (False, b"")]
        to, data = client.call.call_args.args
        assert to == MULTICALL3_ADDRESS
        assert data[:4] == function_selector("aggregate3", ["(address,bool,bytes)[]"])
        (calls,) = decode(["(address,bool,bytes)[]"], data[4:])
        assert [allow_failure for _, allow_failure, _ in calls] == [True, True]

    @pytest.mark.asyncio
    async def test_empty_multicall(self):
        client = create_client()
        client.call = AsyncMock()
        assert await client.multicall([]) == []
        client.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_decimals_are_cached(self):
        client = create_client()
        client.call = AsyncMock(return_value=encode(["uint8"], [6]))

        assert await client.get_decimals(LOAN_TOKEN) == 6
        assert await client.get_decimals(LOAN_TOKEN.upper().replace("0X", "0x")) == 6
        client.call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_simulate_calls(self):
        client = create_client()
        client.w3.provider.make_request = AsyncMock(return_value={"result": [{"calls": [
            {"status": "0x1", "returnData": "0x" + "00" * 31 + "05", "gasUsed": "0x5208"},
            {"status": "0x0", "returnData": "0x", "gasUsed": "0x0",
             "error": {"code": 3, "message": "execution reverted"}},
        ]}]})

        ok, reverted = await client.simulate_calls(LIQUIDATOR, [(LOAN_TOKEN, b"\x01"), (EXECUTOR, b"\x02")])

        assert ok.success is True
        assert ok.gas_used == 21_000
        assert int.from_bytes(ok.return_data, "big") == 5
        assert reverted.success is False
        assert reverted.error == "execution reverted"
        method, (payload, block) = client.w3.provider.make_request.call_args.args
        assert method == "eth_simulateV1"
        assert block == "latest"
        assert len(payload["blockStateCalls"][0]["calls"]) == 2

    @pytest.mark.asyncio
    async def test_simulate_rpc_error(self):
        client = create_client()
        client.w3.provider.make_request = AsyncMock(return_value={"error": {"message": "method not found"}})
        with pytest.raises(RPCError, match="method not found"):
            await client.simulate_calls(LIQUIDATOR, [])

    @pytest.mark.asyncio
    async def test_transport_errors_are_wrapped(self):
        client = create_client()
        client.w3.eth.get_block = AsyncMock(side_effect=ValueError("header not found"))
        with pytest.raises(RPCError, match="header not found"):
            await client.get_block_timestamp(10)

    @pytest.mark.asyncio
    async def test_block_timestamp(self):
        client = create_client()
        client.w3.eth.get_block = AsyncMock(return_value={"timestamp": 1_700_000_012})
        assert await client.get_block_timestamp(1) == 1_700_000_012

    def test_signing_needs_account(self):
        client = create_client()
        assert client.account_address is None
        with pytest.raises(RPCError):
            client.sign_transaction({"to": EXECUTOR})

    def test_account_from_private_key(self):
        client = create_client(private_key="0x" + "01" * 32)
        assert client.account_address.startswith("0x")
        assert len(client.account_address) == 42
