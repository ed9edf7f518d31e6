"""
Pytest configuration and shared fixtures for Sentinel

This module provides shared fixtures for:
- Mock ledger clients
- Decoded protocol events
- Market / position builders
- Configuration objects
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
from eth_abi import decode

# Make `liquidator` importable when running from a source checkout
project_path = str(Path(__file__).parent)
if project_path not in sys.path:
    sys.path.insert(0, project_path)

from liquidator.src.abis import MARKET_PARAMS_TYPE, market_id as compute_market_id
from liquidator.src.config import ChainConfig
from liquidator.src.ledger import LedgerClient
from liquidator.src.market import AccrualPosition, Market
from liquidator.src.maths import WAD
from liquidator.src.types import DecodedLog, LogSource, MarketParams


MORPHO = "0xbbbbbbbbbb9cc5e90e3b3af64bdaf62c37eeffcb"
IRM = "0x870ac11d48b15db9a138cf899d20f13f79ba00bc"
PRE_LIQUIDATION_FACTORY = "0x6ff33615e792e35ed1026ea7caccf42d9bf83476"
LOAN_TOKEN = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
COLLATERAL_TOKEN = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
ORACLE = "0x1111111111111111111111111111111111111111"
EXECUTOR = "0x2222222222222222222222222222222222222222"
TREASURY = "0x3333333333333333333333333333333333333333"
BORROWER = "0x4444444444444444444444444444444444444444"
LIQUIDATOR = "0x5555555555555555555555555555555555555555"
VAULT = "0x6666666666666666666666666666666666666666"

LLTV = 86 * WAD // 100


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    os.environ['ENVIRONMENT'] = 'test'


def pytest_collection_modifyitems(config, items):
    """Add markers automatically based on test location"""
    for item in items:
        if "test_indexer" in item.nodeid or "test_sync" in item.nodeid or "test_checkpoint" in item.nodeid:
            item.add_marker(pytest.mark.indexer)
        elif "test_liquidation_bot" in item.nodeid or "test_execution_planner" in item.nodeid:
            item.add_marker(pytest.mark.engine)

        if "/tests/" in item.nodeid.replace("\\", "/"):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# ============================================================================
# Factories
# ============================================================================

def create_market_params(
    loan_token: str = LOAN_TOKEN,
    collateral_token: str = COLLATERAL_TOKEN,
    oracle: str = ORACLE,
    lltv: int = LLTV,
) -> MarketParams:
    return MarketParams(
        loan_token=loan_token,
        collateral_token=collateral_token,
        oracle=oracle,
        irm=IRM,
        lltv=lltv,
    )


def create_mock_market(
    borrow_assets: int = 900 * WAD,
    supply_assets: int = 1_000 * WAD,
    price: Optional[int] = 10**36,
    params: Optional[MarketParams] = None,
    rate_at_target: Optional[int] = None,
    last_update: int = 1_700_000_000,
    fee: int = 0,
) -> Market:
    """
    Market whose single borrower holds every borrow share.

    With total_borrow_shares = borrow_assets * 1e6 the virtual shares cancel
    out, so the borrower's debt is exactly `borrow_assets`.
    """
    params = params or create_market_params()
    return Market(
        id=compute_market_id(params),
        params=params,
        total_supply_assets=supply_assets,
        total_supply_shares=supply_assets * 10**6,
        total_borrow_assets=borrow_assets,
        total_borrow_shares=borrow_assets * 10**6,
        last_update=last_update,
        fee=fee,
        price=price,
        rate_at_target=rate_at_target,
    )


def create_mock_position(
    collateral: int = 1_000 * WAD,
    borrow_assets: int = 900 * WAD,
    price: Optional[int] = 10**36,
    user: str = BORROWER,
    market: Optional[Market] = None,
) -> AccrualPosition:
    market = market or create_mock_market(borrow_assets=borrow_assets, price=price)
    return AccrualPosition(
        user=user,
        supply_shares=0,
        borrow_shares=market.total_borrow_shares,
        collateral=collateral,
        market=market,
    )


def create_mock_ledger(block_number: int = 100) -> AsyncMock:
    """AsyncMock LedgerClient with a fixed head and empty logs"""
    ledger = AsyncMock(spec=LedgerClient)
    ledger.chain_id = 1
    ledger.account_address = LIQUIDATOR
    ledger.get_block_number.return_value = block_number
    ledger.get_block_timestamp.side_effect = lambda n: 1_700_000_000 + n * 12
    ledger.get_logs.return_value = []
    ledger.multicall.return_value = []
    ledger.get_gas_price.return_value = 1
    ledger.get_decimals.return_value = 18
    ledger.sign_transaction = Mock(return_value=b"\x02signed")
    return ledger


def make_log(
    event_name: str,
    args: Dict[str, Any],
    block_number: int = 1,
    log_index: int = 0,
    address: str = MORPHO,
    source: Optional[LogSource] = None,
    vault_address: Optional[str] = None,
) -> DecodedLog:
    return DecodedLog(
        event_name=event_name,
        args=args,
        address=address,
        block_number=block_number,
        log_index=log_index,
        source=source,
        vault_address=vault_address,
    )


def create_market_lifecycle_logs(params: Optional[MarketParams] = None) -> List[DecodedLog]:
    """CreateMarket, supply, collateral and borrow for one borrower"""
    params = params or create_market_params()
    mid = compute_market_id(params)
    return [
        make_log("CreateMarket", {"id": mid, "market_params": params.as_tuple()}, 1, 0),
        make_log("Supply", {"id": mid, "caller": LIQUIDATOR, "on_behalf": LIQUIDATOR,
                            "assets": 1_000 * WAD, "shares": 1_000 * WAD * 10**6}, 2, 0),
        make_log("SupplyCollateral", {"id": mid, "caller": BORROWER, "on_behalf": BORROWER,
                                      "assets": 1_000 * WAD}, 2, 1),
        make_log("Borrow", {"id": mid, "caller": BORROWER, "on_behalf": BORROWER, "receiver": BORROWER,
                            "assets": 900 * WAD, "shares": 900 * WAD * 10**6}, 3, 0),
    ]


def create_chain_config(**overrides) -> ChainConfig:
    values = dict(
        chain_id=1,
        name="mainnet",
        rpc_url="http://localhost:8545",
        morpho_address=MORPHO,
        adaptive_curve_irm_address=IRM,
        pre_liquidation_factory_address=PRE_LIQUIDATION_FACTORY,
        start_block=1,
        w_native=COLLATERAL_TOKEN,
        vault_whitelist=[VAULT],
        executor_address=EXECUTOR,
        treasury_address=TREASURY,
    )
    values.update(overrides)
    return ChainConfig(**values)


def unpack_calls(calls: List[bytes]) -> List[tuple]:
    """Executor calls as (lowercase target, selector, argument bytes)"""
    unpacked = []
    for call in calls:
        target, _, data = decode(["address", "uint256", "bytes"], call)
        unpacked.append((target.lower(), data[:4], data[4:]))
    return unpacked


def callback_calls(call_args: bytes, pre_liquidation: bool = False) -> List[bytes]:
    """Calls nested in the callback data of a liquidate/preLiquidate call"""
    head = ["address"] if pre_liquidation else [MARKET_PARAMS_TYPE, "address"]
    *_, callback = decode(head + ["uint256", "uint256", "bytes"], call_args)
    (calls,) = decode(["bytes[]"], callback)
    return list(calls)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def market_params():
    return create_market_params()


@pytest.fixture
def mock_ledger():
    return create_mock_ledger()


@pytest.fixture
def chain_config():
    return create_chain_config()


@pytest.fixture(autouse=True)
def isolated_checkpoint_dir(tmp_path, monkeypatch):
    """Keep checkpoints written by tests out of the working directory"""
    monkeypatch.setenv("INDEXER_CHECKPOINT_PATH", str(tmp_path / "checkpoints"))
    return tmp_path / "checkpoints"
