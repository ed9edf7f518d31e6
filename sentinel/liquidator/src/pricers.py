"""
Price Adapters

USD prices for the profitability check. A pricer answers None when it has
no usable price; the caller then tries the next configured pricer.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

import aiohttp

from .abis import decode_output, encode_call
from .config import ChainConfig
from .ledger import LedgerClient
from .types import ConfigurationError, PricingError, RPCError

logger = logging.getLogger(__name__)

DEFILLAMA_URL = "https://coins.llama.fi/prices/current"

# DefiLlama chain slugs by chain id
DEFILLAMA_CHAINS: Dict[int, str] = {
    1: "ethereum",
    10: "optimism",
    130: "unichain",
    143: "monad",
    999: "hyperliquid",
    8453: "base",
    42161: "arbitrum",
    747474: "katana",
}


class PricerName(str, Enum):
    CHAINLINK = "chainlink"
    DEFILLAMA = "defillama"


class Pricer(ABC):
    """Base class for price adapters"""

    async def price(self, asset: str) -> Optional[Decimal]:
        """USD price of one whole unit of `asset`, or None"""
        try:
            return await self._fetch_price(asset)
        except (PricingError, RPCError, aiohttp.ClientError, ValueError) as e:
            logger.debug(f"{type(self).__name__} has no price for {asset}: {e}")
            return None

    @abstractmethod
    async def _fetch_price(self, asset: str) -> Optional[Decimal]:
        ...


class ChainlinkPricer(Pricer):
    """Reads USD feeds configured per asset"""

    LATEST_ROUND_DATA_CALL = encode_call("latestRoundData", [], [])
    DECIMALS_CALL = encode_call("decimals", [], [])

    def __init__(self, ledger: LedgerClient, feeds: Dict[str, str]):
        self.ledger = ledger
        self.feeds = {asset.lower(): feed for asset, feed in feeds.items()}

    async def _fetch_price(self, asset: str) -> Optional[Decimal]:
        feed = self.feeds.get(asset.lower())
        if feed is None:
            return None

        round_data, decimals = await self.ledger.multicall(
            [(feed, self.LATEST_ROUND_DATA_CALL), (feed, self.DECIMALS_CALL)]
        )
        if not round_data.success or not decimals.success:
            raise PricingError(f"Feed {feed} call failed")

        _, answer, _, _, _ = decode_output(
            ["uint80", "int256", "uint256", "uint256", "uint80"], round_data.return_data
        )
        (feed_decimals,) = decode_output(["uint8"], decimals.return_data)
        if answer <= 0:
            return None

        return Decimal(answer) / Decimal(10 ** feed_decimals)


class DefiLlamaPricer(Pricer):
    """Current prices from the DefiLlama coins API"""

    def __init__(self, chain: str, base_url: str = DEFILLAMA_URL, timeout: float = 10.0):
        self.chain = chain
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_json(self, url: str) -> Dict:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url) as response:
                if response.status != 200:
                    raise PricingError(f"DefiLlama returned HTTP {response.status}")
                return await response.json()

    async def _fetch_price(self, asset: str) -> Optional[Decimal]:
        coin = f"{self.chain}:{asset}"
        data = await self._get_json(f"{self.base_url}/{coin}")

        coins = {key.lower(): value for key, value in data.get("coins", {}).items()}
        entry = coins.get(coin.lower())
        if entry is None or entry.get("price") is None:
            return None
        return Decimal(str(entry["price"]))


def create_pricer(name: str, ledger: LedgerClient, chain_config: ChainConfig) -> Pricer:
    """Build a pricer from its configured name"""
    try:
        pricer_name = PricerName(name)
    except ValueError:
        raise ConfigurationError(f"Unknown pricer: {name}")

    if pricer_name == PricerName.CHAINLINK:
        return ChainlinkPricer(ledger, chain_config.chainlink_feeds)

    chain = chain_config.defillama_chain or DEFILLAMA_CHAINS.get(chain_config.chain_id)
    if chain is None:
        raise ConfigurationError(f"Chain {chain_config.chain_id}: set defillama_chain to use DefiLlama")
    return DefiLlamaPricer(chain)
