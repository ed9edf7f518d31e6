"""
End-to-end tests: indexed events to submitted liquidations

Verifies that:
1. A borrower pushed past the LLTV by indexed events is liquidated
2. Healthy and unpriced markets produce no attempts
3. Vault withdraw queues select the covered markets
4. A restarted indexer resumes from its checkpoint and agrees
"""

import pytest
from eth_abi import decode, encode

from conftest import (
    BORROWER, COLLATERAL_TOKEN, EXECUTOR, IRM, LOAN_TOKEN, MORPHO, ORACLE, TREASURY, VAULT,
    callback_calls, create_chain_config, create_market_lifecycle_logs, create_mock_ledger, make_log,
    unpack_calls,
)
from liquidator.src.abis import function_selector
from liquidator.src.checkpoint import CheckpointManager
from liquidator.src.cooldown import MarketsFetchingCooldown, PositionLiquidationCooldown
from liquidator.src.execution_planner import ExecutionPlanner
from liquidator.src.indexer import Indexer
from liquidator.src.liquidation_bot import LiquidationBot
from liquidator.src.state import serialize_state
from liquidator.src.types import CallResult, LiquidationOutcome, SimulatedCall, SubmissionPath
from liquidator.src.venues import Erc20WrapperVenue


NOW = 1_700_000_100


def create_chain_ledger(logs_by_address, price=10**36):
    ledger = create_mock_ledger(block_number=3)

    async def get_logs(address, events, from_block, to_block):
        return [
            log for log in logs_by_address.get(address, [])
            if from_block <= log.block_number <= to_block
        ]

    async def multicall(calls):
        return [
            CallResult(success=price is not None and target.lower() == ORACLE,
                       return_data=encode(["uint256"], [price or 0]))
            for target, _ in calls
        ]

    ledger.get_logs.side_effect = get_logs
    ledger.multicall.side_effect = multicall
    ledger.simulate_calls.return_value = [
        SimulatedCall(success=True, return_data=encode(["uint256"], [0])),
        SimulatedCall(success=True, gas_used=400_000),
        SimulatedCall(success=True, return_data=encode(["uint256"], [25 * 10**18])),
    ]
    ledger.send_transaction.return_value = "0x" + "ab" * 32
    return ledger


def create_stack(ledger, tmp_path, **config):
    chain_config = create_chain_config(**config)
    indexer = Indexer(
        chain_id=1,
        ledger=ledger,
        start_block=1,
        morpho_address=MORPHO,
        adaptive_curve_irm_address=IRM,
        pre_liquidation_factory_address=None,
        max_block_range=2,
        initial_backoff=0,
        checkpoint=CheckpointManager(1, tmp_path),
    )
    planner = ExecutionPlanner(
        ledger=ledger,
        executor_address=EXECUTOR,
        treasury_address=TREASURY,
        w_native=COLLATERAL_TOKEN,
    )
    bot = LiquidationBot(
        chain_config=chain_config,
        indexer=indexer,
        planner=planner,
        # Collateral unwraps straight into the loan asset
        liquidity_venues=[Erc20WrapperVenue(ledger, {COLLATERAL_TOKEN: LOAN_TOKEN})],
        markets_cooldown=MarketsFetchingCooldown(period=3600),
        position_cooldown=PositionLiquidationCooldown(period=60),
    )
    return indexer, bot


@pytest.fixture
def lifecycle_logs():
    return create_market_lifecycle_logs()


@pytest.fixture
def mid(lifecycle_logs):
    return lifecycle_logs[0].args["id"]


class TestEndToEnd:
    """Indexer + engine against a mocked chain"""

    @pytest.mark.asyncio
    async def test_unhealthy_borrower_is_liquidated(self, tmp_path, lifecycle_logs, mid):
        ledger = create_chain_ledger({MORPHO: lifecycle_logs})
        indexer, bot = create_stack(ledger, tmp_path, vault_whitelist=[], additional_markets_whitelist=[mid])
        await indexer.init()

        (report,) = await bot.run(now=NOW)

        assert report.outcome == LiquidationOutcome.LIQUIDATED
        assert report.user.lower() == BORROWER
        assert report.market_id == mid
        assert report.bad_debt is False
        assert report.submission_path == SubmissionPath.PUBLIC
        assert report.tx_hash == "0x" + "ab" * 32

        to, calldata = ledger.send_transaction.call_args.args
        assert to == EXECUTOR
        (calls,) = decode(["bytes[]"], calldata[4:])
        (liquidate_call, skim_call) = unpack_calls(list(calls))
        assert (liquidate_call[0], skim_call[0]) == (MORPHO, EXECUTOR)

        # Unwrap then approve, both inside the liquidation callback
        callback = unpack_calls(callback_calls(liquidate_call[2]))
        assert [target for target, _, _ in callback] == [COLLATERAL_TOKEN, LOAN_TOKEN]
        assert callback[1][1] == function_selector("approve", ["address", "uint256"])

    @pytest.mark.asyncio
    async def test_second_run_is_cooled_down(self, tmp_path, lifecycle_logs, mid):
        ledger = create_chain_ledger({MORPHO: lifecycle_logs})
        indexer, bot = create_stack(ledger, tmp_path, vault_whitelist=[], additional_markets_whitelist=[mid])
        await indexer.init()

        assert len(await bot.run(now=NOW)) == 1
        assert await bot.run(now=NOW + 1) == []
        ledger.send_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_healthy_market_is_left_alone(self, tmp_path, lifecycle_logs, mid):
        ledger = create_chain_ledger({MORPHO: lifecycle_logs}, price=2 * 10**36)
        indexer, bot = create_stack(ledger, tmp_path, vault_whitelist=[], additional_markets_whitelist=[mid])
        await indexer.init()

        assert await bot.run(now=NOW) == []
        ledger.simulate_calls.assert_not_called()

    @pytest.mark.asyncio
    async def test_unpriced_market_is_skipped(self, tmp_path, lifecycle_logs, mid):
        ledger = create_chain_ledger({MORPHO: lifecycle_logs}, price=None)
        indexer, bot = create_stack(ledger, tmp_path, vault_whitelist=[], additional_markets_whitelist=[mid])
        await indexer.init()

        assert await bot.run(now=NOW) == []

    @pytest.mark.asyncio
    async def test_uncovered_market_is_ignored(self, tmp_path, lifecycle_logs):
        ledger = create_chain_ledger({MORPHO: lifecycle_logs})
        indexer, bot = create_stack(ledger, tmp_path, vault_whitelist=[])
        await indexer.init()

        assert await bot.run(now=NOW) == []

    @pytest.mark.asyncio
    async def test_vault_queue_selects_markets(self, tmp_path, lifecycle_logs, mid):
        ledger = create_chain_ledger({
            MORPHO: lifecycle_logs,
            VAULT: [make_log("SetWithdrawQueue", {"caller": VAULT, "new_withdraw_queue": [mid]}, 2, address=VAULT)],
        })
        indexer, bot = create_stack(ledger, tmp_path, vault_whitelist=[VAULT])
        await indexer.init()

        await bot.fetch_markets(NOW)
        await indexer.wait_for_backfills()

        assert bot.covered_markets == [mid]
        (report,) = await bot.run(now=NOW)
        assert report.outcome == LiquidationOutcome.LIQUIDATED

    @pytest.mark.asyncio
    async def test_restart_from_checkpoint(self, tmp_path, lifecycle_logs, mid):
        ledger = create_chain_ledger({MORPHO: lifecycle_logs})
        first, _ = create_stack(ledger, tmp_path, vault_whitelist=[], additional_markets_whitelist=[mid])
        await first.init()

        ledger.get_logs.reset_mock()
        restarted, bot = create_stack(ledger, tmp_path, vault_whitelist=[], additional_markets_whitelist=[mid])
        await restarted.init()

        assert restarted.last_synced_block == 3
        ledger.get_logs.assert_not_called()
        assert serialize_state(restarted.state, 1, 3, 0) == serialize_state(first.state, 1, 3, 0)
        (report,) = await bot.run(now=NOW)
        assert report.outcome == LiquidationOutcome.LIQUIDATED
