"""
Liquidation Bot - Per-chain run cycle

Each run refreshes the covered markets, brings the indexer to the head,
and attempts every liquidatable and pre-liquidatable position
concurrently. Every attempt ends in exactly one LiquidationReport.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence

from .config import ChainConfig, MORPHO_API_VAULTS
from .cooldown import MarketsFetchingCooldown, PositionLiquidationCooldown
from .database import get_db_manager
from .encoder import LiquidationEncoder
from .execution_planner import ExecutionPlanner
from .indexer import Indexer
from .logging_config import get_logger, log_liquidation_outcome
from .market import AccrualPosition, PreLiquidationPosition
from .maths import decrease_seizable_collateral
from .metrics_server import MetricsServer
from .morpho_api import MorphoApiClient
from .types import (
    ConfigurationError, ConversionError, DatabaseError, DiscoveryApiError, LiquidationCandidates,
    LiquidationKind, LiquidationOutcome, LiquidationReport, MarketParams, MAX_UINT256, ToConvert,
)
from .venues import LiquidityVenue

logger = logging.getLogger(__name__)


class LiquidationBot:
    """
    Liquidation decision and execution engine for one chain.

    Responsibilities:
    - Resolve the vaults and markets to cover
    - Select positions from the indexer (or the discovery API)
    - Apply cooldown, buffer, routing and profitability policy
    - Report every attempt to logs, metrics and the database
    """

    def __init__(
        self,
        chain_config: ChainConfig,
        indexer: Indexer,
        planner: ExecutionPlanner,
        liquidity_venues: Sequence[LiquidityVenue],
        markets_cooldown: MarketsFetchingCooldown,
        position_cooldown: Optional[PositionLiquidationCooldown] = None,
        morpho_api: Optional[MorphoApiClient] = None,
    ):
        self.chain_id = chain_config.chain_id
        self.morpho_address = chain_config.morpho_address
        self.vault_whitelist = chain_config.vault_whitelist
        self.additional_markets_whitelist = list(chain_config.additional_markets_whitelist)
        self.liquidation_buffer_bps = chain_config.liquidation_buffer_bps
        self.position_source = chain_config.position_source

        self.indexer = indexer
        self.planner = planner
        self.liquidity_venues = list(liquidity_venues)
        self.markets_cooldown = markets_cooldown
        self.position_cooldown = position_cooldown
        self.morpho_api = morpho_api

        if morpho_api is None and (
            self.vault_whitelist == MORPHO_API_VAULTS or self.position_source == MORPHO_API_VAULTS
        ):
            raise ConfigurationError(f"Chain {self.chain_id}: the morpho-api options need a MorphoApiClient")

        self._vaults: List[str] = []
        self._api_vault_markets: Dict[str, List[str]] = {}

        self.log_tag = f"[{self.chain_id}]"
        self.outcome_logger = get_logger("liquidation_bot")

    # ========================================================================
    # Run Cycle
    # ========================================================================

    async def run(self, now: Optional[int] = None) -> List[LiquidationReport]:
        """One cycle: refresh markets, sync, evaluate and attempt"""
        timestamp = int(time.time()) if now is None else now

        await self.fetch_markets(timestamp)
        await self.indexer.sync()

        covered = self.covered_markets
        candidates = await self._get_candidates(covered, timestamp)
        MetricsServer.update_liquidatable_positions(
            self.chain_id, len(candidates.liquidatable) + len(candidates.pre_liquidatable)
        )

        results = await asyncio.gather(
            *(self.liquidate(p, timestamp) for p in candidates.liquidatable),
            *(self.pre_liquidate(p, timestamp) for p in candidates.pre_liquidatable),
            return_exceptions=True,
        )

        reports = []
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"{self.log_tag} Liquidation attempt crashed: {result}")
            elif result is not None:
                reports.append(result)
        return reports

    async def fetch_markets(self, now: int) -> None:
        """Refresh the watched vaults, at most once per cooldown period"""
        if not self.markets_cooldown.is_ready(now):
            return

        if self.vault_whitelist == MORPHO_API_VAULTS:
            self._vaults = await self.morpho_api.fetch_whitelisted_vaults(self.chain_id)
        else:
            self._vaults = list(self.vault_whitelist)

        logger.info(f"{self.log_tag} Watching markets in {len(self._vaults)} vaults")
        self.indexer.update_vault_addresses(self._vaults)

        self._api_vault_markets = {}
        missing = [v for v in self._vaults if not self.indexer.get_markets_for_vaults([v])]
        if missing and self.morpho_api is not None:
            try:
                self._api_vault_markets = await self.morpho_api.fetch_markets_for_vaults(self.chain_id, missing)
            except DiscoveryApiError as e:
                logger.warning(f"{self.log_tag} Could not fetch vault markets from the API: {e}")

    @property
    def covered_markets(self) -> List[str]:
        """
        Indexed withdraw queues of the watched vaults, API allocations for
        vaults not indexed yet, then the additional markets whitelist.
        """
        market_ids: Dict[str, str] = {}
        for vault in self._vaults:
            indexed = self.indexer.get_markets_for_vaults([vault])
            for market_id in indexed or self._api_vault_markets.get(vault.lower(), []):
                market_ids.setdefault(market_id.lower(), market_id)
        for market_id in self.additional_markets_whitelist:
            market_ids.setdefault(market_id.lower(), market_id)
        return list(market_ids.values())

    async def _get_candidates(self, covered: List[str], now: int) -> LiquidationCandidates:
        if self.position_source == MORPHO_API_VAULTS:
            positions = await self.morpho_api.fetch_liquidatable_positions(self.chain_id, covered)
            return await self.indexer.evaluate_positions(positions, covered, now)
        return await self.indexer.get_liquidatable_positions(covered, now)

    # ========================================================================
    # Per-Position Attempts
    # ========================================================================

    def _check_cooldown(self, market_id: str, user: str, now: int) -> bool:
        if self.position_cooldown is None:
            return True
        return self.position_cooldown.try_claim(market_id, user, now)

    async def liquidate(self, position: AccrualPosition, now: int) -> Optional[LiquidationReport]:
        """Attempt a Morpho Blue liquidation; None when the cooldown skipped it"""
        params = position.market_params
        seizable = position.seizable_collateral
        bad_debt = seizable == position.collateral
        amount = decrease_seizable_collateral(seizable, bad_debt, self.liquidation_buffer_bps)

        if not self._check_cooldown(position.market_id, position.user, now):
            logger.debug(f"{self.log_tag} {position.user} on {position.market_id} is cooling down")
            return None

        encoder = LiquidationEncoder(self.planner.executor_address)
        try:
            await self.convert_collateral_to_loan(params, amount, encoder)
        except ConversionError as e:
            return self._report(
                LiquidationKind.LIQUIDATION, position, amount, bad_debt, LiquidationOutcome.FAILED, reason=str(e)
            )

        encoder.erc20_approve(params.loan_token, self.morpho_address, MAX_UINT256)
        encoder.morpho_blue_liquidate(self.morpho_address, params, position.user, amount, 0, encoder.flush())
        encoder.erc20_skim(params.loan_token, self.planner.treasury_address)

        return await self._handle_tx(LiquidationKind.LIQUIDATION, position, amount, bad_debt, encoder.flush())

    async def pre_liquidate(self, position: PreLiquidationPosition, now: int) -> Optional[LiquidationReport]:
        """Attempt a pre-liquidation through the position's authorized contract"""
        params = position.market_params
        amount = decrease_seizable_collateral(position.seizable_collateral, False, self.liquidation_buffer_bps)

        if not self._check_cooldown(position.market_id, position.user, now):
            logger.debug(f"{self.log_tag} {position.user} on {position.market_id} is cooling down")
            return None

        encoder = LiquidationEncoder(self.planner.executor_address)
        try:
            await self.convert_collateral_to_loan(params, amount, encoder)
        except ConversionError as e:
            return self._report(
                LiquidationKind.PRE_LIQUIDATION, position, amount, False, LiquidationOutcome.FAILED, reason=str(e)
            )

        encoder.erc20_approve(params.loan_token, position.pre_liquidation, MAX_UINT256)
        encoder.pre_liquidate(position.pre_liquidation, position.user, amount, 0, encoder.flush())
        encoder.erc20_skim(params.loan_token, self.planner.treasury_address)

        return await self._handle_tx(LiquidationKind.PRE_LIQUIDATION, position, amount, False, encoder.flush())

    async def _handle_tx(
        self,
        kind: LiquidationKind,
        position: AccrualPosition,
        amount: int,
        bad_debt: bool,
        calls: List[bytes],
    ) -> LiquidationReport:
        loan_token = position.market_params.loan_token
        try:
            simulation = await self.planner.simulate(loan_token, calls)

            if not await self.planner.check_profit(loan_token, simulation, bad_debt):
                return self._report(kind, position, amount, bad_debt, LiquidationOutcome.SKIPPED_UNPROFITABLE)

            submission = await self.planner.submit(calls)
        except Exception as e:
            logger.error(f"{self.log_tag} {kind.value} of {position.user} on {position.market_id} failed: {e}")
            return self._report(kind, position, amount, bad_debt, LiquidationOutcome.FAILED, reason=str(e))

        if not submission.accepted:
            return self._report(
                kind, position, amount, bad_debt, LiquidationOutcome.FAILED,
                reason="bundle rejected by relay", submission_path=submission.path,
            )

        return self._report(
            kind, position, amount, bad_debt, LiquidationOutcome.LIQUIDATED,
            tx_hash=submission.tx_hash, submission_path=submission.path,
        )

    async def convert_collateral_to_loan(
        self, market_params: MarketParams, seizable_collateral: int, encoder: LiquidationEncoder
    ) -> None:
        """
        Walk the venues in order until the collateral is routed to the loan
        asset. A venue that raises is skipped.

        Raises:
            ConversionError: no venue sequence reaches the loan asset
        """
        to_convert = ToConvert(
            src=market_params.collateral_token,
            dst=market_params.loan_token,
            src_amount=seizable_collateral,
        )
        if to_convert.src.lower() == to_convert.dst.lower():
            return

        for venue in self.liquidity_venues:
            try:
                if await venue.supports_route(encoder, to_convert.src, to_convert.dst):
                    to_convert = await venue.convert(encoder, to_convert)
            except Exception as e:
                logger.error(
                    f"{self.log_tag} {type(venue).__name__} failed converting "
                    f"{to_convert.src} to {to_convert.dst}: {e}"
                )
                continue

            if to_convert.src.lower() == to_convert.dst.lower():
                return

        raise ConversionError(
            f"no conversion route from {market_params.collateral_token} to {market_params.loan_token}"
        )

    # ========================================================================
    # Reporting
    # ========================================================================

    def _report(
        self,
        kind: LiquidationKind,
        position: AccrualPosition,
        seized_assets: int,
        bad_debt: bool,
        outcome: LiquidationOutcome,
        **details,
    ) -> LiquidationReport:
        report = LiquidationReport(
            chain_id=self.chain_id,
            kind=kind,
            outcome=outcome,
            market_id=position.market_id,
            user=position.user,
            seized_assets=seized_assets,
            bad_debt=bad_debt,
            **details,
        )

        log_liquidation_outcome(self.outcome_logger, report.to_dict())
        MetricsServer.record_liquidation(self.chain_id, kind.value, outcome.value)

        db_manager = get_db_manager()
        if db_manager is not None:
            try:
                db_manager.record_liquidation(report)
            except DatabaseError as e:
                logger.warning(f"{self.log_tag} Could not persist liquidation report: {e}")

        return report
