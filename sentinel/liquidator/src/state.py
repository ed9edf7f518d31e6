"""
Indexer State Model

In-memory view of every market, position, authorization, pre-liquidation
contract and vault withdraw queue, rebuilt from protocol events.

The state is only mutated through handlers acting on a clone; the indexer
swaps the clone in once a whole chunk succeeded. Serialization produces the
checkpoint payload with every integer written as a decimal string.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .types import MarketParams, PreLiquidationParams


CHECKPOINT_VERSION = 1


# ============================================================================
# State Records
# ============================================================================

@dataclass
class IndexedMarketState:
    """Market totals as reconstructed from events"""
    params: MarketParams
    total_supply_assets: int = 0
    total_supply_shares: int = 0
    total_borrow_assets: int = 0
    total_borrow_shares: int = 0
    last_update: int = 0
    fee: int = 0
    rate_at_target: Optional[int] = None

    def copy(self) -> "IndexedMarketState":
        return IndexedMarketState(
            params=self.params,
            total_supply_assets=self.total_supply_assets,
            total_supply_shares=self.total_supply_shares,
            total_borrow_assets=self.total_borrow_assets,
            total_borrow_shares=self.total_borrow_shares,
            last_update=self.last_update,
            fee=self.fee,
            rate_at_target=self.rate_at_target,
        )


@dataclass
class PositionState:
    """Per (market, user) balances"""
    supply_shares: int = 0
    borrow_shares: int = 0
    collateral: int = 0

    def copy(self) -> "PositionState":
        return PositionState(self.supply_shares, self.borrow_shares, self.collateral)


@dataclass(frozen=True)
class PreLiquidationContract:
    """Pre-liquidation contract deployed by the factory for one market"""
    market_id: str
    address: str
    params: PreLiquidationParams


@dataclass
class IndexerState:
    """Aggregate indexed state for one chain"""
    markets: Dict[str, IndexedMarketState] = field(default_factory=dict)
    positions: Dict[str, PositionState] = field(default_factory=dict)
    authorizations: Dict[str, bool] = field(default_factory=dict)
    pre_liquidation_contracts: List[PreLiquidationContract] = field(default_factory=list)
    vault_withdraw_queues: Dict[str, List[str]] = field(default_factory=dict)

    def clone(self) -> "IndexerState":
        """Deep copy; mutating the clone never affects this instance"""
        return IndexerState(
            markets={k: v.copy() for k, v in self.markets.items()},
            positions={k: v.copy() for k, v in self.positions.items()},
            authorizations=dict(self.authorizations),
            pre_liquidation_contracts=list(self.pre_liquidation_contracts),
            vault_withdraw_queues={k: list(v) for k, v in self.vault_withdraw_queues.items()},
        )


# ============================================================================
# Keys
# ============================================================================

def position_key(market_id: str, user: str) -> str:
    return f"{market_id}-{user.lower()}"


def parse_position_key(key: str) -> tuple:
    """Split a position key into (market_id, user)"""
    market_id, user = key.split("-", 1)
    return market_id, user


def authorization_key(authorizer: str, authorized: str) -> str:
    return f"{authorizer.lower()}-{authorized.lower()}"


# ============================================================================
# Serialization
# ============================================================================

def _opt_int(value: Optional[str]) -> Optional[int]:
    return None if value is None else int(value)


def serialize_state(
    state: IndexerState, chain_id: int, last_synced_block: int, timestamp_ms: int
) -> Dict[str, Any]:
    """Build the checkpoint payload"""
    return {
        "version": CHECKPOINT_VERSION,
        "chainId": chain_id,
        "lastSyncedBlock": str(last_synced_block),
        "timestamp": timestamp_ms,
        "markets": [
            [
                market_id,
                {
                    "params": {
                        "loanToken": m.params.loan_token,
                        "collateralToken": m.params.collateral_token,
                        "oracle": m.params.oracle,
                        "irm": m.params.irm,
                        "lltv": str(m.params.lltv),
                    },
                    "totalSupplyAssets": str(m.total_supply_assets),
                    "totalSupplyShares": str(m.total_supply_shares),
                    "totalBorrowAssets": str(m.total_borrow_assets),
                    "totalBorrowShares": str(m.total_borrow_shares),
                    "lastUpdate": str(m.last_update),
                    "fee": str(m.fee),
                    "rateAtTarget": None if m.rate_at_target is None else str(m.rate_at_target),
                },
            ]
            for market_id, m in state.markets.items()
        ],
        "positions": [
            [
                key,
                {
                    "supplyShares": str(p.supply_shares),
                    "borrowShares": str(p.borrow_shares),
                    "collateral": str(p.collateral),
                },
            ]
            for key, p in state.positions.items()
        ],
        "authorizations": [[key, value] for key, value in state.authorizations.items()],
        "preLiquidationContracts": [
            {
                "marketId": c.market_id,
                "address": c.address,
                "preLiquidationParams": {
                    "preLltv": str(c.params.pre_lltv),
                    "preLCF1": str(c.params.pre_lcf1),
                    "preLCF2": str(c.params.pre_lcf2),
                    "preLIF1": str(c.params.pre_lif1),
                    "preLIF2": str(c.params.pre_lif2),
                    "preLiquidationOracle": c.params.pre_liquidation_oracle,
                },
            }
            for c in state.pre_liquidation_contracts
        ],
        "vaultWithdrawQueues": [
            [vault, list(queue)] for vault, queue in state.vault_withdraw_queues.items()
        ],
    }


def deserialize_state(data: Dict[str, Any]) -> IndexerState:
    """
    Rebuild state from a checkpoint payload.

    Raises:
        KeyError, TypeError, ValueError: malformed payload
    """
    state = IndexerState()

    for market_id, m in data["markets"]:
        p = m["params"]
        state.markets[market_id] = IndexedMarketState(
            params=MarketParams(
                loan_token=p["loanToken"],
                collateral_token=p["collateralToken"],
                oracle=p["oracle"],
                irm=p["irm"],
                lltv=int(p["lltv"]),
            ),
            total_supply_assets=int(m["totalSupplyAssets"]),
            total_supply_shares=int(m["totalSupplyShares"]),
            total_borrow_assets=int(m["totalBorrowAssets"]),
            total_borrow_shares=int(m["totalBorrowShares"]),
            last_update=int(m["lastUpdate"]),
            fee=int(m["fee"]),
            rate_at_target=_opt_int(m.get("rateAtTarget")),
        )

    for key, p in data["positions"]:
        state.positions[key] = PositionState(
            supply_shares=int(p["supplyShares"]),
            borrow_shares=int(p["borrowShares"]),
            collateral=int(p["collateral"]),
        )

    for key, value in data["authorizations"]:
        state.authorizations[key] = bool(value)

    for c in data["preLiquidationContracts"]:
        p = c["preLiquidationParams"]
        state.pre_liquidation_contracts.append(
            PreLiquidationContract(
                market_id=c["marketId"],
                address=c["address"],
                params=PreLiquidationParams(
                    pre_lltv=int(p["preLltv"]),
                    pre_lcf1=int(p["preLCF1"]),
                    pre_lcf2=int(p["preLCF2"]),
                    pre_lif1=int(p["preLIF1"]),
                    pre_lif2=int(p["preLIF2"]),
                    pre_liquidation_oracle=p["preLiquidationOracle"],
                ),
            )
        )

    for vault, queue in data["vaultWithdrawQueues"]:
        state.vault_withdraw_queues[vault] = list(queue)

    return state
