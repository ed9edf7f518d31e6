"""
Executor Call Encoding

Accumulates the calls the executor contract runs atomically in a single
`exec_606BaXt(bytes[])` transaction. Each call is encoded as
`(address target, uint256 value, bytes data)`.
"""

from typing import List, Sequence

from eth_abi import encode

from .abis import MARKET_PARAMS_TYPE, encode_call
from .types import MarketParams

EXEC_SELECTOR_NAME = "exec_606BaXt"

UNISWAP_V3_EXACT_INPUT_SINGLE_TYPE = "(address,address,uint24,address,uint256,uint256,uint160)"


class LiquidationEncoder:
    """Builds the executor call list for one liquidation"""

    def __init__(self, executor_address: str):
        self.address = executor_address
        self._calls: List[bytes] = []

    @property
    def pending(self) -> List[bytes]:
        return list(self._calls)

    def push_call(self, target: str, value: int, data: bytes) -> "LiquidationEncoder":
        self._calls.append(encode(["address", "uint256", "bytes"], [target, value, data]))
        return self

    def flush(self) -> List[bytes]:
        """Return the pending calls and start a new list"""
        calls, self._calls = self._calls, []
        return calls

    @staticmethod
    def encode_callback_data(calls: Sequence[bytes]) -> bytes:
        return encode(["bytes[]"], [list(calls)])

    @staticmethod
    def exec_calldata(calls: Sequence[bytes]) -> bytes:
        return encode_call(EXEC_SELECTOR_NAME, ["bytes[]"], [list(calls)])

    # ========================================================================
    # ERC20
    # ========================================================================

    def erc20_approve(self, asset: str, spender: str, amount: int) -> "LiquidationEncoder":
        return self.push_call(asset, 0, encode_call("approve", ["address", "uint256"], [spender, amount]))

    def erc20_skim(self, asset: str, recipient: str) -> "LiquidationEncoder":
        """Sweep the executor's whole balance of `asset` to `recipient`"""
        return self.push_call(
            self.address, 0, encode_call("skim", ["address", "address"], [asset, recipient])
        )

    def erc20_wrapper_withdraw_to(self, wrapper: str, receiver: str, amount: int) -> "LiquidationEncoder":
        return self.push_call(
            wrapper, 0, encode_call("withdrawTo", ["address", "uint256"], [receiver, amount])
        )

    # ========================================================================
    # ERC4626
    # ========================================================================

    def erc4626_redeem(self, vault: str, shares: int, receiver: str, owner: str) -> "LiquidationEncoder":
        return self.push_call(
            vault,
            0,
            encode_call("redeem", ["uint256", "address", "address"], [shares, receiver, owner]),
        )

    # ========================================================================
    # Uniswap V3
    # ========================================================================

    def uniswap_v3_exact_input_single(
        self,
        router: str,
        token_in: str,
        token_out: str,
        fee: int,
        recipient: str,
        amount_in: int,
        amount_out_minimum: int = 0,
    ) -> "LiquidationEncoder":
        params = (token_in, token_out, fee, recipient, amount_in, amount_out_minimum, 0)
        return self.push_call(
            router, 0, encode_call("exactInputSingle", [UNISWAP_V3_EXACT_INPUT_SINGLE_TYPE], [params])
        )

    # ========================================================================
    # Morpho Blue
    # ========================================================================

    def morpho_blue_liquidate(
        self,
        morpho: str,
        market_params: MarketParams,
        borrower: str,
        seized_assets: int,
        repaid_shares: int,
        callback_calls: Sequence[bytes],
    ) -> "LiquidationEncoder":
        """
        Liquidate `borrower` on Morpho Blue.

        `callback_calls` run inside the liquidation callback, after the
        collateral is seized and before the loan asset is pulled.
        """
        data = encode_call(
            "liquidate",
            [MARKET_PARAMS_TYPE, "address", "uint256", "uint256", "bytes"],
            [
                market_params.as_tuple(),
                borrower,
                seized_assets,
                repaid_shares,
                self.encode_callback_data(callback_calls),
            ],
        )
        return self.push_call(morpho, 0, data)

    def pre_liquidate(
        self,
        pre_liquidation: str,
        borrower: str,
        seized_assets: int,
        repaid_shares: int,
        callback_calls: Sequence[bytes],
    ) -> "LiquidationEncoder":
        data = encode_call(
            "preLiquidate",
            ["address", "uint256", "uint256", "bytes"],
            [borrower, seized_assets, repaid_shares, self.encode_callback_data(callback_calls)],
        )
        return self.push_call(pre_liquidation, 0, data)
