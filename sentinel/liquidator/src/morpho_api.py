"""
Morpho Discovery API Client

GraphQL queries against the Morpho Blue API for whitelisted vaults, the
markets those vaults allocate to, and borrower positions with a health
factor at or below 1.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .types import DiscoveryApiError, PositionCandidate

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://blue-api.morpho.org/graphql"
POSITIONS_PAGE_SIZE = 100

WHITELISTED_VAULTS_QUERY = """
query getWhitelistedVaults($chainId: Int!) {
  vaults(first: 1000, where: {chainId_in: [$chainId], whitelisted: true}) {
    items {
      address
    }
  }
}
"""

VAULT_MARKETS_QUERY = """
query getVaultMarkets($chainId: Int!, $vaults: [String!]) {
  vaults(first: 1000, where: {chainId_in: [$chainId], address_in: $vaults}) {
    items {
      address
      state {
        allocation {
          market {
            uniqueKey
          }
        }
      }
    }
  }
}
"""

LIQUIDATABLE_POSITIONS_QUERY = """
query getLiquidatablePositions($chainId: Int!, $marketIds: [String!], $skip: Int, $first: Int = 100) {
  marketPositions(
    skip: $skip
    first: $first
    where: {chainId_in: [$chainId], marketUniqueKey_in: $marketIds, healthFactor_lte: 1}
  ) {
    items {
      healthFactor
      user {
        address
      }
      market {
        uniqueKey
        oracle {
          address
        }
      }
      state {
        borrowShares
        collateral
        supplyShares
      }
    }
  }
}
"""


class MorphoApiClient:
    """Thin GraphQL client; every failure surfaces as DiscoveryApiError"""

    def __init__(self, url: str = DEFAULT_API_URL, timeout: float = 30.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.url, json=payload) as response:
                if response.status != 200:
                    raise DiscoveryApiError(f"Morpho API returned HTTP {response.status}")
                return await response.json()

    async def query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            body = await self._post({"query": query, "variables": variables})
        except DiscoveryApiError:
            raise
        except (aiohttp.ClientError, ValueError) as e:
            raise DiscoveryApiError(f"Morpho API request failed: {e}") from e

        if body.get("errors"):
            raise DiscoveryApiError(f"Morpho API query failed: {body['errors']}")
        return body.get("data") or {}

    async def fetch_whitelisted_vaults(self, chain_id: int) -> List[str]:
        data = await self.query(WHITELISTED_VAULTS_QUERY, {"chainId": chain_id})
        return [item["address"] for item in (data.get("vaults") or {}).get("items") or []]

    async def fetch_markets_for_vaults(self, chain_id: int, vaults: Sequence[str]) -> Dict[str, List[str]]:
        """Markets each vault allocates to, keyed by lowercased vault address"""
        if not vaults:
            return {}

        data = await self.query(VAULT_MARKETS_QUERY, {"chainId": chain_id, "vaults": list(vaults)})

        markets: Dict[str, List[str]] = {}
        for item in (data.get("vaults") or {}).get("items") or []:
            allocation = (item.get("state") or {}).get("allocation") or []
            markets[item["address"].lower()] = [
                entry["market"]["uniqueKey"] for entry in allocation if entry.get("market")
            ]
        return markets

    async def fetch_liquidatable_positions(
        self, chain_id: int, market_ids: Sequence[str]
    ) -> List[PositionCandidate]:
        """First page of positions with health factor <= 1 on `market_ids`"""
        if not market_ids:
            return []

        data = await self.query(
            LIQUIDATABLE_POSITIONS_QUERY,
            {"chainId": chain_id, "marketIds": list(market_ids), "skip": 0, "first": POSITIONS_PAGE_SIZE},
        )

        candidates = []
        for item in (data.get("marketPositions") or {}).get("items") or []:
            candidate = _to_candidate(item)
            if candidate is not None:
                candidates.append(candidate)
        return candidates


def _to_candidate(item: Dict[str, Any]) -> Optional[PositionCandidate]:
    market = item.get("market") or {}
    state = item.get("state")
    if not market.get("uniqueKey") or market.get("oracle") is None or state is None:
        return None

    return PositionCandidate(
        market_id=market["uniqueKey"],
        user=item["user"]["address"],
        supply_shares=int(state.get("supplyShares") or 0),
        borrow_shares=int(state.get("borrowShares") or 0),
        collateral=int(state.get("collateral") or 0),
    )
