"""
Indexer Module - Event-sourced Morpho Blue state

Maintains a locally rebuilt view of markets and positions through:
- Chunked catch-up from the last checkpoint to the chain head
- Copy-on-write chunk application with bounded exponential-backoff retries
- Durable checkpoints after every committed chunk
- Liquidatable / pre-liquidatable position queries using live oracle prices
- Background backfill of withdraw queues for newly tracked vaults
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .abis import VAULT_EVENTS, decode_output, encode_call
from .checkpoint import CheckpointManager
from .ledger import LedgerClient
from .market import AccrualPosition, Market, PreLiquidationPosition
from .metrics_server import MetricsServer
from .state import (
    IndexerState, IndexedMarketState, PreLiquidationContract,
    authorization_key, parse_position_key,
)
from .sync import SyncConfig, sync_range
from .types import (
    IndexerStatus, LiquidationCandidates, PositionCandidate, SyncError, ZERO_ADDRESS,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BLOCK_RANGE = 10_000
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_BACKOFF = 1.0

ORACLE_PRICE_CALL = encode_call("price", [], [])

# (market_id, user, supply_shares, borrow_shares, collateral)
PositionTuple = Tuple[str, str, int, int, int]


class Indexer:
    """
    Event-sourced indexer for one chain.

    State only changes at chunk boundaries: each chunk is replayed into a
    clone which replaces the live state once the whole chunk succeeded.
    """

    def __init__(
        self,
        chain_id: int,
        ledger: LedgerClient,
        start_block: int,
        morpho_address: str,
        adaptive_curve_irm_address: str,
        pre_liquidation_factory_address: Optional[str] = None,
        vault_addresses: Sequence[str] = (),
        max_block_range: int = DEFAULT_MAX_BLOCK_RANGE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        checkpoint: Optional[CheckpointManager] = None,
    ):
        self.chain_id = chain_id
        self.ledger = ledger
        self.start_block = start_block
        self.morpho_address = morpho_address
        self.adaptive_curve_irm_address = adaptive_curve_irm_address
        self.pre_liquidation_factory_address = pre_liquidation_factory_address
        self.max_block_range = max_block_range
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.checkpoint = checkpoint or CheckpointManager(chain_id)

        self.vault_addresses: List[str] = list(vault_addresses)
        self._tracked_vaults: Set[str] = {v.lower() for v in self.vault_addresses}

        self._state = IndexerState()
        self._last_synced_block = start_block - 1
        self._status = IndexerStatus.UNINITIALIZED
        self._is_syncing = False

        # Withdraw queues backfilled while a chunk was in flight
        self._pending_vault_queues: Dict[str, List[str]] = {}
        self._backfill_tasks: Set[asyncio.Task] = set()

        self.log_tag = f"[indexer-{chain_id}]"

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def state(self) -> IndexerState:
        return self._state

    @property
    def last_synced_block(self) -> int:
        return self._last_synced_block

    @property
    def status(self) -> IndexerStatus:
        return self._status

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def init(self) -> None:
        """Restore the checkpoint (or cold start) and catch up to the head"""
        saved = self.checkpoint.load()
        if saved is not None:
            self._state, self._last_synced_block = saved
            logger.info(f"{self.log_tag} Loaded checkpoint at block {self._last_synced_block}")
        else:
            self._state = IndexerState()
            self._last_synced_block = self.start_block - 1
            logger.info(f"{self.log_tag} No checkpoint found, syncing from block {self.start_block}")

        self._status = IndexerStatus.CATCHING_UP
        await self.sync()

    async def sync(self) -> None:
        """
        Catch up to the current head.

        A call made while another sync is in flight returns immediately.

        Raises:
            SyncError: a chunk kept failing after max_retries retries
        """
        if self._is_syncing:
            return
        self._is_syncing = True
        try:
            await self._sync_to_head()
        finally:
            self._is_syncing = False

    async def _sync_to_head(self) -> None:
        latest_block = await self.ledger.get_block_number()
        if latest_block <= self._last_synced_block:
            self._status = IndexerStatus.STEADY
            return

        self._status = IndexerStatus.CATCHING_UP
        chunk_from = self._last_synced_block + 1
        while chunk_from <= latest_block:
            chunk_to = min(chunk_from + self.max_block_range - 1, latest_block)
            await self._sync_chunk_with_retry(chunk_from, chunk_to)
            chunk_from = chunk_to + 1

        self._status = IndexerStatus.STEADY

    async def _sync_chunk_with_retry(self, from_block: int, to_block: int) -> None:
        retries = 0
        while True:
            try:
                state_copy = self._state.clone()
                await sync_range(self._sync_config(), state_copy, from_block, to_block)
                self._merge_pending_vault_queues(state_copy)

                # Commit only once the checkpoint is durable
                self.checkpoint.save(state_copy, to_block, self.chain_id)
                self._state = state_copy
                self._last_synced_block = to_block
                return
            except Exception as e:
                retries += 1
                if retries > self.max_retries:
                    logger.error(
                        f"{self.log_tag} Sync chunk {from_block}->{to_block} failed "
                        f"after {self.max_retries} retries: {e}"
                    )
                    raise SyncError(
                        f"Sync chunk {from_block}->{to_block} failed after {self.max_retries} retries: {e}"
                    ) from e

                backoff = self.initial_backoff * 2 ** (retries - 1)
                MetricsServer.record_sync_retry(self.chain_id)
                logger.warning(
                    f"{self.log_tag} Sync chunk {from_block}->{to_block} error "
                    f"(retry {retries}/{self.max_retries}, backoff {backoff}s): {e}"
                )
                await asyncio.sleep(backoff)

    def _sync_config(self) -> SyncConfig:
        return SyncConfig(
            ledger=self.ledger,
            morpho_address=self.morpho_address,
            adaptive_curve_irm_address=self.adaptive_curve_irm_address,
            pre_liquidation_factory_address=self.pre_liquidation_factory_address,
            vault_addresses=list(self.vault_addresses),
        )

    # ========================================================================
    # Vault Tracking
    # ========================================================================

    def update_vault_addresses(self, vaults: Iterable[str]) -> None:
        """
        Replace the tracked vault list.

        Vaults seen for the first time get their latest withdraw queue
        backfilled from start_block in a background task.
        """
        vaults = list(vaults)
        new_vaults = [v for v in vaults if v.lower() not in self._tracked_vaults]

        self.vault_addresses = vaults
        self._tracked_vaults.update(v.lower() for v in vaults)

        if new_vaults:
            task = asyncio.create_task(self._backfill_vaults(new_vaults))
            self._backfill_tasks.add(task)
            task.add_done_callback(self._backfill_tasks.discard)

    async def wait_for_backfills(self) -> None:
        """Wait for in-flight vault backfills to finish"""
        if self._backfill_tasks:
            await asyncio.gather(*list(self._backfill_tasks))

    async def _backfill_vaults(self, vaults: List[str]) -> None:
        try:
            latest_block = await self.ledger.get_block_number()
            results = await asyncio.gather(
                *(self._fetch_latest_withdraw_queue(v, latest_block) for v in vaults)
            )

            for vault, queue in zip(vaults, results):
                if queue is None:
                    continue
                key = vault.lower()
                self._state.vault_withdraw_queues[key] = queue
                if self._is_syncing:
                    self._pending_vault_queues[key] = queue

            logger.info(f"{self.log_tag} Synced withdraw queues for {len(vaults)} new vaults")
        except Exception as e:
            logger.warning(f"{self.log_tag} Failed to sync new vault withdraw queues: {e}")

    async def _fetch_latest_withdraw_queue(self, vault: str, latest_block: int) -> Optional[List[str]]:
        queue = None
        from_block = self.start_block
        while from_block <= latest_block:
            to_block = min(from_block + self.max_block_range - 1, latest_block)
            logs = await self.ledger.get_logs(vault, VAULT_EVENTS, from_block, to_block)
            if logs:
                queue = list(logs[-1].args["new_withdraw_queue"])
            from_block = to_block + 1
        return queue

    def _merge_pending_vault_queues(self, state_copy: IndexerState) -> None:
        # Events replayed by the chunk are newer than the backfill and win
        for vault, queue in self._pending_vault_queues.items():
            state_copy.vault_withdraw_queues.setdefault(vault, queue)
        self._pending_vault_queues.clear()

    def get_markets_for_vaults(self, vaults: Iterable[str]) -> List[str]:
        """Ordered union of the indexed withdraw queues of `vaults`"""
        market_ids: Dict[str, None] = {}
        for vault in vaults:
            for market_id in self._state.vault_withdraw_queues.get(vault.lower(), []):
                market_ids[market_id] = None
        return list(market_ids)

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_liquidatable_positions(
        self, covered_market_ids: Iterable[str], now: Optional[int] = None
    ) -> LiquidationCandidates:
        """Indexed positions with a non-zero seizable amount, priced live"""
        covered = {m.lower() for m in covered_market_ids}

        pairs: List[PositionTuple] = []
        for key, position in self._state.positions.items():
            if position.borrow_shares == 0:
                continue
            market_id, user = parse_position_key(key)
            if market_id.lower() not in covered or market_id not in self._state.markets:
                continue
            pairs.append((market_id, user, position.supply_shares, position.borrow_shares, position.collateral))

        return await self._evaluate(pairs, covered, now)

    async def evaluate_positions(
        self,
        candidates: Iterable[PositionCandidate],
        covered_market_ids: Iterable[str],
        now: Optional[int] = None,
    ) -> LiquidationCandidates:
        """Evaluate externally discovered positions against indexed markets"""
        covered = {m.lower() for m in covered_market_ids}
        pairs: List[PositionTuple] = [
            (c.market_id, c.user, c.supply_shares, c.borrow_shares, c.collateral)
            for c in candidates
            if c.market_id.lower() in covered and c.market_id in self._state.markets
        ]
        return await self._evaluate(pairs, covered, now)

    async def _fetch_prices(self, oracles: List[str]) -> Dict[str, Optional[int]]:
        prices: Dict[str, Optional[int]] = {}
        if not oracles:
            return prices

        results = await self.ledger.multicall([(oracle, ORACLE_PRICE_CALL) for oracle in oracles])
        for oracle, result in zip(oracles, results):
            if result.success and len(result.return_data) >= 32:
                (prices[oracle],) = decode_output(["uint256"], result.return_data)
            else:
                prices[oracle] = None
        return prices

    async def _evaluate(
        self, pairs: List[PositionTuple], covered: Set[str], now: Optional[int]
    ) -> LiquidationCandidates:
        if not pairs:
            return LiquidationCandidates()

        market_states: Dict[str, IndexedMarketState] = {
            market_id: self._state.markets[market_id] for market_id, *_ in pairs
        }

        oracles = list(dict.fromkeys(
            m.params.oracle.lower() for m in market_states.values()
            if m.params.oracle.lower() != ZERO_ADDRESS
        ))
        prices = await self._fetch_prices(oracles)

        markets = {
            market_id: _build_market(market_id, ms, prices.get(ms.params.oracle.lower()))
            for market_id, ms in market_states.items()
        }

        timestamp = int(time.time()) if now is None else now
        positions = [
            AccrualPosition(
                user=user,
                supply_shares=supply_shares,
                borrow_shares=borrow_shares,
                collateral=collateral,
                market=markets[market_id],
            ).accrue_interest(timestamp)
            for market_id, user, supply_shares, borrow_shares, collateral in pairs
        ]

        liquidatable = [p for p in positions if p.seizable_collateral]

        contracts = [
            c for c in self._state.pre_liquidation_contracts if c.market_id.lower() in covered
        ]
        pre_liquidatable = await self._get_pre_liquidatable_positions(contracts, positions)

        return LiquidationCandidates(liquidatable=liquidatable, pre_liquidatable=pre_liquidatable)

    async def _get_pre_liquidatable_positions(
        self, contracts: List[PreLiquidationContract], positions: List[AccrualPosition]
    ) -> List[PreLiquidationPosition]:
        matched: List[Tuple[AccrualPosition, PreLiquidationContract]] = []
        for position in positions:
            contract = next((c for c in contracts if c.market_id == position.market_id), None)
            if contract is None:
                continue
            if not self._state.authorizations.get(authorization_key(position.user, contract.address), False):
                continue
            matched.append((position, contract))

        if not matched:
            return []

        extra_oracles = list(dict.fromkeys(
            contract.params.pre_liquidation_oracle.lower()
            for position, contract in matched
            if contract.params.pre_liquidation_oracle.lower() != position.market.params.oracle.lower()
        ))
        extra_prices = await self._fetch_prices(extra_oracles)

        result = []
        for position, contract in matched:
            oracle = contract.params.pre_liquidation_oracle.lower()
            if oracle == position.market.params.oracle.lower():
                price = position.market.price
            else:
                price = extra_prices.get(oracle)

            pre_position = PreLiquidationPosition(
                user=position.user,
                supply_shares=position.supply_shares,
                borrow_shares=position.borrow_shares,
                collateral=position.collateral,
                market=position.market,
                pre_liquidation=contract.address,
                pre_liquidation_params=contract.params,
                pre_liquidation_oracle_price=price,
            )
            if pre_position.seizable_collateral:
                result.append(pre_position)

        return result


def _build_market(market_id: str, ms: IndexedMarketState, price: Optional[int]) -> Market:
    if ms.params.oracle.lower() == ZERO_ADDRESS:
        price = None
    return Market(
        id=market_id,
        params=ms.params,
        total_supply_assets=ms.total_supply_assets,
        total_supply_shares=ms.total_supply_shares,
        total_borrow_assets=ms.total_borrow_assets,
        total_borrow_shares=ms.total_borrow_shares,
        last_update=ms.last_update,
        fee=ms.fee,
        price=price,
        rate_at_target=ms.rate_at_target,
    )
