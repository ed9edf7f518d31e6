"""
Event Handlers

One handler per protocol event. Each handler mutates the state it is given
(always a clone owned by the range syncer) and is a pure function of
(state, log, block_timestamp).

Handlers that need a market silently skip events for unknown markets.
"""

import logging
from typing import Callable, Dict

from .state import (
    IndexerState, IndexedMarketState, PositionState, PreLiquidationContract,
    position_key, authorization_key,
)
from .types import DecodedLog, MarketParams, PreLiquidationParams

logger = logging.getLogger(__name__)

EventHandler = Callable[[IndexerState, DecodedLog, int], None]


def _get_or_create_position(state: IndexerState, key: str) -> PositionState:
    position = state.positions.get(key)
    if position is None:
        position = PositionState()
        state.positions[key] = position
    return position


# ============================================================================
# Morpho Blue
# ============================================================================

def handle_create_market(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    loan_token, collateral_token, oracle, irm, lltv = log.args["market_params"]
    state.markets[log.args["id"]] = IndexedMarketState(
        params=MarketParams(
            loan_token=loan_token,
            collateral_token=collateral_token,
            oracle=oracle,
            irm=irm,
            lltv=lltv,
        ),
        last_update=block_timestamp,
    )


def handle_set_fee(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    market = state.markets.get(log.args["id"])
    if market is None:
        return
    market.fee = log.args["new_fee"]
    market.last_update = block_timestamp


def handle_accrue_interest(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    market = state.markets.get(log.args["id"])
    if market is None:
        return
    interest = log.args["interest"]
    market.total_supply_assets += interest
    market.total_borrow_assets += interest
    market.total_supply_shares += log.args["fee_shares"]
    market.last_update = block_timestamp


def handle_supply(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    market_id = log.args["id"]
    market = state.markets.get(market_id)
    if market is None:
        return
    shares = log.args["shares"]
    market.total_supply_assets += log.args["assets"]
    market.total_supply_shares += shares
    market.last_update = block_timestamp

    position = _get_or_create_position(state, position_key(market_id, log.args["on_behalf"]))
    position.supply_shares += shares


def handle_withdraw(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    market_id = log.args["id"]
    market = state.markets.get(market_id)
    if market is None:
        return
    shares = log.args["shares"]
    market.total_supply_assets -= log.args["assets"]
    market.total_supply_shares -= shares
    market.last_update = block_timestamp

    position = state.positions.get(position_key(market_id, log.args["on_behalf"]))
    if position is not None:
        position.supply_shares -= shares


def handle_borrow(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    market_id = log.args["id"]
    market = state.markets.get(market_id)
    if market is None:
        return
    shares = log.args["shares"]
    market.total_borrow_assets += log.args["assets"]
    market.total_borrow_shares += shares
    market.last_update = block_timestamp

    position = _get_or_create_position(state, position_key(market_id, log.args["on_behalf"]))
    position.borrow_shares += shares


def handle_repay(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    market_id = log.args["id"]
    market = state.markets.get(market_id)
    if market is None:
        return
    shares = log.args["shares"]
    market.total_borrow_assets -= log.args["assets"]
    market.total_borrow_shares -= shares
    market.last_update = block_timestamp

    position = state.positions.get(position_key(market_id, log.args["on_behalf"]))
    if position is not None:
        position.borrow_shares -= shares


def handle_supply_collateral(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    key = position_key(log.args["id"], log.args["on_behalf"])
    _get_or_create_position(state, key).collateral += log.args["assets"]


def handle_withdraw_collateral(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    position = state.positions.get(position_key(log.args["id"], log.args["on_behalf"]))
    if position is not None:
        position.collateral -= log.args["assets"]


def handle_liquidate(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    market_id = log.args["id"]
    market = state.markets.get(market_id)
    if market is None:
        return

    repaid_shares = log.args["repaid_shares"]
    bad_debt_shares = log.args["bad_debt_shares"]

    market.total_borrow_assets -= log.args["repaid_assets"]
    market.total_borrow_shares -= repaid_shares
    market.total_supply_assets -= log.args["bad_debt_assets"]
    market.total_supply_shares -= bad_debt_shares
    market.last_update = block_timestamp

    position = state.positions.get(position_key(market_id, log.args["borrower"]))
    if position is not None:
        position.collateral -= log.args["seized_assets"]
        position.borrow_shares -= repaid_shares + bad_debt_shares


def handle_set_authorization(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    key = authorization_key(log.args["authorizer"], log.args["authorized"])
    state.authorizations[key] = bool(log.args["new_is_authorized"])


# ============================================================================
# Adaptive Curve IRM / Pre-Liquidation Factory / MetaMorpho
# ============================================================================

def handle_borrow_rate_update(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    market = state.markets.get(log.args["id"])
    if market is not None:
        market.rate_at_target = log.args["rate_at_target"]


def handle_create_pre_liquidation(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    pre_lltv, pre_lcf1, pre_lcf2, pre_lif1, pre_lif2, oracle = log.args["pre_liquidation_params"]
    state.pre_liquidation_contracts.append(
        PreLiquidationContract(
            market_id=log.args["id"],
            address=log.args["pre_liquidation"],
            params=PreLiquidationParams(
                pre_lltv=pre_lltv,
                pre_lcf1=pre_lcf1,
                pre_lcf2=pre_lcf2,
                pre_lif1=pre_lif1,
                pre_lif2=pre_lif2,
                pre_liquidation_oracle=oracle,
            ),
        )
    )


def handle_set_withdraw_queue(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    vault = (log.vault_address or log.address).lower()
    state.vault_withdraw_queues[vault] = list(log.args["new_withdraw_queue"])


# ============================================================================
# Dispatch
# ============================================================================

EVENT_HANDLERS: Dict[str, EventHandler] = {
    "CreateMarket": handle_create_market,
    "SetFee": handle_set_fee,
    "AccrueInterest": handle_accrue_interest,
    "Supply": handle_supply,
    "Withdraw": handle_withdraw,
    "Borrow": handle_borrow,
    "Repay": handle_repay,
    "SupplyCollateral": handle_supply_collateral,
    "WithdrawCollateral": handle_withdraw_collateral,
    "Liquidate": handle_liquidate,
    "SetAuthorization": handle_set_authorization,
    "BorrowRateUpdate": handle_borrow_rate_update,
    "CreatePreLiquidation": handle_create_pre_liquidation,
    "SetWithdrawQueue": handle_set_withdraw_queue,
}


def apply_event(state: IndexerState, log: DecodedLog, block_timestamp: int) -> None:
    """Dispatch a decoded log to its handler; unknown events are ignored"""
    handler = EVENT_HANDLERS.get(log.event_name)
    if handler is None:
        logger.debug(f"No handler for event {log.event_name}")
        return
    handler(state, log, block_timestamp)
