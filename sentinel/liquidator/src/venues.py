"""
Liquidity Venues

Conversion steps that turn seized collateral into the loan asset. Each
venue appends its calls to the LiquidationEncoder and returns what is left
to convert. Venues are tried in configured order until the source asset
equals the loan asset.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional

from .abis import decode_output, encode_call
from .config import ChainConfig
from .encoder import LiquidationEncoder
from .ledger import LedgerClient
from .types import ConfigurationError, RPCError, ToConvert, ZERO_ADDRESS

logger = logging.getLogger(__name__)


class LiquidityVenueName(str, Enum):
    ERC20_WRAPPER = "erc20_wrapper"
    ERC4626 = "erc4626"
    UNISWAP_V3 = "uniswap_v3"


class LiquidityVenue(ABC):
    """Base class for conversion venues"""

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    @abstractmethod
    async def supports_route(self, encoder: LiquidationEncoder, src: str, dst: str) -> bool:
        ...

    @abstractmethod
    async def convert(self, encoder: LiquidationEncoder, to_convert: ToConvert) -> ToConvert:
        ...


class Erc20WrapperVenue(LiquidityVenue):
    """Unwraps configured wrapper tokens into their underlying asset"""

    def __init__(self, ledger: LedgerClient, wrappers: Dict[str, str]):
        super().__init__(ledger)
        self.wrappers = {wrapper.lower(): underlying for wrapper, underlying in wrappers.items()}

    async def supports_route(self, encoder: LiquidationEncoder, src: str, dst: str) -> bool:
        return src.lower() in self.wrappers

    async def convert(self, encoder: LiquidationEncoder, to_convert: ToConvert) -> ToConvert:
        underlying = self.wrappers[to_convert.src.lower()]
        encoder.erc20_wrapper_withdraw_to(to_convert.src, encoder.address, to_convert.src_amount)
        return ToConvert(src=underlying, dst=to_convert.dst, src_amount=to_convert.src_amount)


class Erc4626Venue(LiquidityVenue):
    """Redeems ERC4626 vault shares for the vault's underlying asset"""

    ASSET_CALL = encode_call("asset", [], [])

    async def _underlying(self, vault: str) -> Optional[str]:
        try:
            output = await self.ledger.call(vault, self.ASSET_CALL)
            (asset,) = decode_output(["address"], output)
            return asset
        except (RPCError, ValueError):
            return None

    async def supports_route(self, encoder: LiquidationEncoder, src: str, dst: str) -> bool:
        if src.lower() == dst.lower():
            return False
        return await self._underlying(src) is not None

    async def convert(self, encoder: LiquidationEncoder, to_convert: ToConvert) -> ToConvert:
        underlying = await self._underlying(to_convert.src)
        if underlying is None:
            raise RPCError(f"{to_convert.src} is not an ERC4626 vault")

        output = await self.ledger.call(
            to_convert.src, encode_call("previewRedeem", ["uint256"], [to_convert.src_amount])
        )
        (assets,) = decode_output(["uint256"], output)

        encoder.erc4626_redeem(to_convert.src, to_convert.src_amount, encoder.address, encoder.address)
        return ToConvert(src=underlying, dst=to_convert.dst, src_amount=assets)


class UniswapV3Venue(LiquidityVenue):
    """
    Swaps through the first Uniswap V3 pool found across the fee tiers.

    The swap accepts any output amount; the profit check after simulation
    is what protects the attempt.
    """

    def __init__(self, ledger: LedgerClient, factory: str, router: str, fee_tiers: List[int]):
        super().__init__(ledger)
        self.factory = factory
        self.router = router
        self.fee_tiers = list(fee_tiers)

    async def _find_fee(self, src: str, dst: str) -> Optional[int]:
        calls = [
            (self.factory, encode_call("getPool", ["address", "address", "uint24"], [src, dst, fee]))
            for fee in self.fee_tiers
        ]
        results = await self.ledger.multicall(calls)
        for fee, result in zip(self.fee_tiers, results):
            if not result.success:
                continue
            (pool,) = decode_output(["address"], result.return_data)
            if pool.lower() != ZERO_ADDRESS:
                return fee
        return None

    async def supports_route(self, encoder: LiquidationEncoder, src: str, dst: str) -> bool:
        if src.lower() == dst.lower():
            return False
        return await self._find_fee(src, dst) is not None

    async def convert(self, encoder: LiquidationEncoder, to_convert: ToConvert) -> ToConvert:
        fee = await self._find_fee(to_convert.src, to_convert.dst)
        if fee is None:
            raise RPCError(f"No Uniswap V3 pool for {to_convert.src} -> {to_convert.dst}")

        encoder.erc20_approve(to_convert.src, self.router, to_convert.src_amount)
        encoder.uniswap_v3_exact_input_single(
            self.router,
            to_convert.src,
            to_convert.dst,
            fee,
            encoder.address,
            to_convert.src_amount,
        )
        # Output amount is only known on-chain
        return ToConvert(src=to_convert.dst, dst=to_convert.dst, src_amount=0)


def create_liquidity_venue(name: str, ledger: LedgerClient, chain_config: ChainConfig) -> LiquidityVenue:
    """Build a venue from its configured name"""
    try:
        venue_name = LiquidityVenueName(name)
    except ValueError:
        raise ConfigurationError(f"Unknown liquidity venue: {name}")

    if venue_name == LiquidityVenueName.ERC20_WRAPPER:
        return Erc20WrapperVenue(ledger, chain_config.erc20_wrappers)
    if venue_name == LiquidityVenueName.ERC4626:
        return Erc4626Venue(ledger)

    if not chain_config.uniswap_v3_factory or not chain_config.uniswap_v3_router:
        raise ConfigurationError(
            f"Chain {chain_config.chain_id}: uniswap_v3 venue needs uniswap_v3_factory and uniswap_v3_router"
        )
    return UniswapV3Venue(
        ledger,
        chain_config.uniswap_v3_factory,
        chain_config.uniswap_v3_router,
        chain_config.uniswap_v3_fee_tiers,
    )
