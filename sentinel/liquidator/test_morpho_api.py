"""
Unit tests for the Morpho discovery API client

Tests:
- Whitelisted vaults and vault allocations
- Liquidatable position parsing
- GraphQL and transport errors surface as DiscoveryApiError
"""

from unittest.mock import AsyncMock

import aiohttp
import pytest

from conftest import BORROWER, VAULT
from liquidator.src.morpho_api import MorphoApiClient, _to_candidate
from liquidator.src.types import DiscoveryApiError


MARKET = "0x" + "aa" * 32


def create_client(response=None, error=None) -> MorphoApiClient:
    client = MorphoApiClient(url="http://api.test/graphql")
    client._post = AsyncMock(return_value=response, side_effect=error)
    return client


def position_item(**overrides):
    item = {
        "healthFactor": 0.97,
        "user": {"address": BORROWER},
        "market": {"uniqueKey": MARKET, "oracle": {"address": "0x" + "11" * 20}},
        "state": {"borrowShares": "900000000", "collateral": "1000", "supplyShares": None},
    }
    item.update(overrides)
    return item


class TestQueries:
    """GraphQL queries"""

    @pytest.mark.asyncio
    async def test_whitelisted_vaults(self):
        client = create_client({"data": {"vaults": {"items": [{"address": VAULT}]}}})

        assert await client.fetch_whitelisted_vaults(1) == [VAULT]
        payload = client._post.call_args.args[0]
        assert payload["variables"] == {"chainId": 1}

    @pytest.mark.asyncio
    async def test_vault_markets_keyed_by_lowercase_address(self):
        client = create_client({"data": {"vaults": {"items": [{
            "address": VAULT.upper().replace("0X", "0x"),
            "state": {"allocation": [{"market": {"uniqueKey": MARKET}}, {"market": None}]},
        }]}}})

        assert await client.fetch_markets_for_vaults(1, [VAULT]) == {VAULT: [MARKET]}

    @pytest.mark.asyncio
    async def test_no_vaults_skips_request(self):
        client = create_client()
        assert await client.fetch_markets_for_vaults(1, []) == {}
        client._post.assert_not_called()

    @pytest.mark.asyncio
    async def test_liquidatable_positions(self):
        client = create_client({"data": {"marketPositions": {"items": [
            position_item(),
            position_item(state=None),
        ]}}})

        (candidate,) = await client.fetch_liquidatable_positions(1, [MARKET])

        assert candidate.market_id == MARKET
        assert candidate.user == BORROWER
        assert (candidate.borrow_shares, candidate.collateral, candidate.supply_shares) == (900_000_000, 1000, 0)
        variables = client._post.call_args.args[0]["variables"]
        assert variables["marketIds"] == [MARKET]
        assert variables["first"] == 100


class TestCandidateParsing:
    """Incomplete API entries are dropped"""

    def test_missing_oracle(self):
        assert _to_candidate(position_item(market={"uniqueKey": MARKET, "oracle": None})) is None

    def test_missing_market(self):
        assert _to_candidate(position_item(market=None)) is None


class TestErrors:
    """Error propagation"""

    @pytest.mark.asyncio
    async def test_graphql_errors(self):
        client = create_client({"errors": [{"message": "bad query"}]})
        with pytest.raises(DiscoveryApiError, match="bad query"):
            await client.fetch_whitelisted_vaults(1)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        client = create_client(error=aiohttp.ClientError("connection refused"))
        with pytest.raises(DiscoveryApiError, match="connection refused"):
            await client.fetch_whitelisted_vaults(1)

    @pytest.mark.asyncio
    async def test_http_status(self):
        client = create_client(error=DiscoveryApiError("Morpho API returned HTTP 502"))
        with pytest.raises(DiscoveryApiError, match="502"):
            await client.fetch_liquidatable_positions(1, [MARKET])
