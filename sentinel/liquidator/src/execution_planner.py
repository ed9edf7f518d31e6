"""
ExecutionPlanner Module - Simulation, profitability and submission

This module is responsible for:
- Simulating the executor call bundle between two treasury balance reads
- Rejecting attempts whose loan-asset profit does not cover gas in USD
- Submitting through the public mempool or a Flashbots bundle
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from eth_utils import keccak

from .abis import decode_output, encode_call, to_hex
from .encoder import LiquidationEncoder
from .flashbots import FlashbotsRelay
from .ledger import LedgerClient
from .pricers import Pricer
from .types import ExecutionError, SimulatedCall, SimulationError, SubmissionPath

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18


@dataclass
class SimulationResult:
    """Treasury loan-asset balance around the simulated bundle"""
    balance_before: Optional[int]
    balance_after: Optional[int]
    gas_used: int
    gas_price: int


@dataclass
class SubmissionResult:
    accepted: bool
    path: SubmissionPath
    tx_hash: Optional[str] = None


class SubmissionPathAdapter:
    """Base class for submission path adapters"""

    path: SubmissionPath

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger
        self.submission_count = 0
        self.success_count = 0

    @property
    def inclusion_rate(self) -> Decimal:
        """Share of submissions accepted on this path"""
        if self.submission_count == 0:
            return Decimal("0")
        return Decimal(self.success_count) / Decimal(self.submission_count)

    async def submit(self, to: str, data: bytes) -> SubmissionResult:
        raise NotImplementedError

    def update_stats(self, success: bool):
        self.submission_count += 1
        if success:
            self.success_count += 1


class PublicMempoolAdapter(SubmissionPathAdapter):
    """Direct mempool submission adapter"""

    path = SubmissionPath.PUBLIC

    async def submit(self, to: str, data: bytes) -> SubmissionResult:
        try:
            tx_hash = await self.ledger.send_transaction(to, data)
        except Exception as e:
            self.update_stats(False)
            logger.error(f"Mempool submission failed: {e}")
            raise ExecutionError(f"Mempool submission failed: {e}") from e

        self.update_stats(True)
        logger.info(f"Submitted to mempool: {tx_hash}")
        return SubmissionResult(accepted=True, path=self.path, tx_hash=tx_hash)


class FlashbotsAdapter(SubmissionPathAdapter):
    """Private bundle targeting the block after the current head"""

    path = SubmissionPath.FLASHBOTS

    def __init__(self, ledger: LedgerClient, relay: FlashbotsRelay):
        super().__init__(ledger)
        self.relay = relay

    async def submit(self, to: str, data: bytes) -> SubmissionResult:
        signed = await self.relay.sign_bundle([(to, data)])
        target_block = await self.ledger.get_block_number() + 1

        accepted = await self.relay.send_raw_bundle(signed, target_block)
        self.update_stats(accepted)
        return SubmissionResult(
            accepted=accepted,
            path=self.path,
            tx_hash=to_hex(keccak(hexstr=signed[0])) if accepted else None,
        )


class ExecutionPlanner:
    """
    Turns an encoded executor call list into a submitted transaction.

    Simulation is never skipped: a bundle whose executor call reverts is
    abandoned before any profit check or submission.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        executor_address: str,
        treasury_address: str,
        w_native: str,
        pricers: Optional[List[Pricer]] = None,
        always_realize_bad_debt: bool = True,
        flashbots_relay: Optional[FlashbotsRelay] = None,
    ):
        self.ledger = ledger
        self.executor_address = executor_address
        self.treasury_address = treasury_address
        self.w_native = w_native
        self.pricers = pricers
        self.always_realize_bad_debt = always_realize_bad_debt

        if flashbots_relay is not None:
            self.adapter: SubmissionPathAdapter = FlashbotsAdapter(ledger, flashbots_relay)
        else:
            self.adapter = PublicMempoolAdapter(ledger)

        logger.info(
            f"ExecutionPlanner initialized for executor {executor_address} "
            f"({self.adapter.path.value} submission)"
        )

    # ========================================================================
    # Simulation
    # ========================================================================

    def _balance_call(self, asset: str):
        return (asset, encode_call("balanceOf", ["address"], [self.treasury_address]))

    @staticmethod
    def _decode_balance(result: SimulatedCall) -> Optional[int]:
        if not result.success or len(result.return_data) < 32:
            return None
        (balance,) = decode_output(["uint256"], result.return_data)
        return balance

    async def simulate(self, loan_token: str, calls: Sequence[bytes]) -> SimulationResult:
        """
        Simulate balanceOf / exec / balanceOf as one sequence.

        Raises:
            SimulationError: the executor call reverted
        """
        bundle = [
            self._balance_call(loan_token),
            (self.executor_address, LiquidationEncoder.exec_calldata(calls)),
            self._balance_call(loan_token),
        ]
        results, gas_price = await asyncio.gather(
            self.ledger.simulate_calls(self.ledger.account_address, bundle),
            self.ledger.get_gas_price(),
        )

        execution = results[1]
        if not execution.success:
            if not execution.error:
                raise SimulationError("Simulation failed: Unknown error")
            reason = execution.error.split("Contract Call:")[0].rstrip()
            raise SimulationError(f"Simulation failed: {reason}")

        return SimulationResult(
            balance_before=self._decode_balance(results[0]),
            balance_after=self._decode_balance(results[2]),
            gas_used=execution.gas_used,
            gas_price=gas_price,
        )

    # ========================================================================
    # Profitability
    # ========================================================================

    async def price(self, asset: str, amount: int) -> Optional[Decimal]:
        """USD value of `amount` base units of `asset`, using the first pricer that answers"""
        unit_price = None
        for pricer in self.pricers or []:
            unit_price = await pricer.price(asset)
            if unit_price is not None:
                break

        if unit_price is None:
            return None

        if asset.lower() == self.w_native.lower():
            decimals = NATIVE_DECIMALS
        else:
            decimals = await self.ledger.get_decimals(asset)

        return Decimal(amount) / Decimal(10 ** decimals) * unit_price

    async def check_profit(self, loan_asset: str, simulation: SimulationResult, bad_debt: bool) -> bool:
        if self.always_realize_bad_debt and bad_debt:
            return True
        if self.pricers is None:
            return True

        if simulation.balance_before is None or simulation.balance_after is None:
            return False

        loan_asset_profit = simulation.balance_after - simulation.balance_before
        if loan_asset_profit <= 0:
            return False

        profit_usd, gas_usd = await asyncio.gather(
            self.price(loan_asset, loan_asset_profit),
            self.price(self.w_native, simulation.gas_used * simulation.gas_price),
        )
        if profit_usd is None or gas_usd is None:
            return False

        return profit_usd - gas_usd > 0

    # ========================================================================
    # Submission
    # ========================================================================

    async def submit(self, calls: Sequence[bytes]) -> SubmissionResult:
        return await self.adapter.submit(self.executor_address, LiquidationEncoder.exec_calldata(calls))
