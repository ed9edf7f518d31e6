"""
Unit tests for event handlers and the state model

Tests:
- Market lifecycle replay (create, supply, collateral, borrow, repay, liquidate)
- Unknown markets and unknown events are ignored
- Authorizations, rate updates, pre-liquidation contracts, withdraw queues
- Copy-on-write clone isolation
- Checkpoint serialization with decimal-string integers
"""

import pytest

from conftest import (
    BORROWER, LIQUIDATOR, VAULT,
    create_market_lifecycle_logs, create_market_params, make_log,
)
from liquidator.src.abis import market_id as compute_market_id
from liquidator.src.handlers import apply_event
from liquidator.src.maths import WAD
from liquidator.src.state import (
    IndexerState, authorization_key, deserialize_state, parse_position_key,
    position_key, serialize_state,
)


MIXED_CASE_USER = "0xAbCdEf0000000000000000000000000000000002"


def replay(logs, state=None, timestamp=1_700_000_000):
    state = state or IndexerState()
    for log in logs:
        apply_event(state, log, timestamp + log.block_number)
    return state


@pytest.fixture
def lifecycle_state():
    return replay(create_market_lifecycle_logs())


@pytest.fixture
def mid():
    return compute_market_id(create_market_params())


class TestMorphoHandlers:
    """Morpho Blue events"""

    def test_market_lifecycle(self, lifecycle_state, mid):
        market = lifecycle_state.markets[mid]
        assert market.params == create_market_params()
        assert market.total_supply_assets == 1_000 * WAD
        assert market.total_borrow_assets == 900 * WAD
        assert market.total_borrow_shares == 900 * WAD * 10**6
        assert market.last_update == 1_700_000_003

        borrower = lifecycle_state.positions[position_key(mid, BORROWER)]
        assert borrower.collateral == 1_000 * WAD
        assert borrower.borrow_shares == 900 * WAD * 10**6

        lender = lifecycle_state.positions[position_key(mid, LIQUIDATOR)]
        assert lender.supply_shares == 1_000 * WAD * 10**6

    def test_events_for_unknown_market_are_skipped(self):
        state = replay([
            make_log("Supply", {"id": "0xdead", "caller": LIQUIDATOR, "on_behalf": LIQUIDATOR,
                                "assets": 1, "shares": 1}),
        ])
        assert state.markets == {}
        assert state.positions == {}

    def test_unknown_event_is_ignored(self, lifecycle_state):
        before = serialize_state(lifecycle_state, 1, 0, 0)
        replay([make_log("Transfer", {"from": BORROWER})], lifecycle_state)
        assert serialize_state(lifecycle_state, 1, 0, 0) == before

    def test_repay_and_withdraw_collateral(self, lifecycle_state, mid):
        replay([
            make_log("Repay", {"id": mid, "caller": BORROWER, "on_behalf": BORROWER,
                               "assets": 400 * WAD, "shares": 400 * WAD * 10**6}, 4),
            make_log("WithdrawCollateral", {"id": mid, "caller": BORROWER, "on_behalf": BORROWER,
                                            "receiver": BORROWER, "assets": 100 * WAD}, 5),
        ], lifecycle_state)

        position = lifecycle_state.positions[position_key(mid, BORROWER)]
        assert position.borrow_shares == 500 * WAD * 10**6
        assert position.collateral == 900 * WAD
        assert lifecycle_state.markets[mid].total_borrow_assets == 500 * WAD

    def test_accrue_interest_and_fee(self, lifecycle_state, mid):
        replay([
            make_log("SetFee", {"id": mid, "new_fee": WAD // 10}, 4),
            make_log("AccrueInterest", {"id": mid, "prev_borrow_rate": 1, "interest": 10 * WAD,
                                        "fee_shares": 5}, 5),
        ], lifecycle_state)

        market = lifecycle_state.markets[mid]
        assert market.fee == WAD // 10
        assert market.total_borrow_assets == 910 * WAD
        assert market.total_supply_assets == 1_010 * WAD
        assert market.total_supply_shares == 1_000 * WAD * 10**6 + 5
        assert market.last_update == 1_700_000_005

    def test_liquidate_realizes_bad_debt(self, lifecycle_state, mid):
        replay([
            make_log("Liquidate", {
                "id": mid, "caller": LIQUIDATOR, "borrower": BORROWER,
                "repaid_assets": 800 * WAD, "repaid_shares": 800 * WAD * 10**6,
                "seized_assets": 1_000 * WAD,
                "bad_debt_assets": 100 * WAD, "bad_debt_shares": 100 * WAD * 10**6,
            }, 4),
        ], lifecycle_state)

        market = lifecycle_state.markets[mid]
        position = lifecycle_state.positions[position_key(mid, BORROWER)]
        assert position.collateral == 0
        assert position.borrow_shares == 0
        assert market.total_borrow_assets == 100 * WAD
        assert market.total_supply_assets == 900 * WAD

    def test_authorization_is_case_insensitive(self):
        state = replay([
            make_log("SetAuthorization", {
                "caller": BORROWER, "authorizer": MIXED_CASE_USER,
                "authorized": LIQUIDATOR, "new_is_authorized": True,
            }),
        ])
        assert state.authorizations[authorization_key(MIXED_CASE_USER, LIQUIDATOR)] is True

        replay([
            make_log("SetAuthorization", {
                "caller": BORROWER, "authorizer": MIXED_CASE_USER.lower(),
                "authorized": LIQUIDATOR, "new_is_authorized": False,
            }, 2),
        ], state)
        assert state.authorizations[authorization_key(MIXED_CASE_USER, LIQUIDATOR)] is False


class TestPeripheryHandlers:
    """IRM, pre-liquidation factory and vault events"""

    def test_borrow_rate_update(self, lifecycle_state, mid):
        replay([make_log("BorrowRateUpdate", {"id": mid, "avg_borrow_rate": 7, "rate_at_target": 42}, 4)],
               lifecycle_state)
        assert lifecycle_state.markets[mid].rate_at_target == 42

    def test_create_pre_liquidation(self, mid):
        oracle = "0x8888888888888888888888888888888888888888"
        state = replay([
            make_log("CreatePreLiquidation", {
                "pre_liquidation": "0x7777777777777777777777777777777777777777",
                "id": mid,
                "pre_liquidation_params": (8 * WAD // 10, 1, 2, 3, 4, oracle),
            }),
        ])
        (contract,) = state.pre_liquidation_contracts
        assert contract.market_id == mid
        assert contract.params.pre_lltv == 8 * WAD // 10
        assert contract.params.pre_liquidation_oracle == oracle

    def test_set_withdraw_queue_keyed_by_lowercase_vault(self, mid):
        vault = "0xAbCdEf0000000000000000000000000000000001"
        state = replay([
            make_log("SetWithdrawQueue", {"caller": BORROWER, "new_withdraw_queue": [mid]},
                     address=vault, vault_address=vault),
        ])
        assert state.vault_withdraw_queues == {vault.lower(): [mid]}

    def test_latest_withdraw_queue_wins(self, mid):
        state = replay([
            make_log("SetWithdrawQueue", {"caller": BORROWER, "new_withdraw_queue": [mid]}, 1, address=VAULT),
            make_log("SetWithdrawQueue", {"caller": BORROWER, "new_withdraw_queue": []}, 2, address=VAULT),
        ])
        assert state.vault_withdraw_queues[VAULT] == []


class TestIndexerState:
    """Clone isolation and serialization"""

    def test_clone_is_isolated(self, lifecycle_state, mid):
        clone = lifecycle_state.clone()
        replay([
            make_log("Borrow", {"id": mid, "caller": BORROWER, "on_behalf": BORROWER, "receiver": BORROWER,
                                "assets": WAD, "shares": WAD * 10**6}, 4),
            make_log("SetWithdrawQueue", {"caller": BORROWER, "new_withdraw_queue": [mid]}, 5, address=VAULT),
        ], clone)

        assert clone.markets[mid].total_borrow_assets == 901 * WAD
        assert lifecycle_state.markets[mid].total_borrow_assets == 900 * WAD
        assert lifecycle_state.positions[position_key(mid, BORROWER)].borrow_shares == 900 * WAD * 10**6
        assert lifecycle_state.vault_withdraw_queues == {}

    def test_position_key_round_trip(self, mid):
        assert parse_position_key(position_key(mid, MIXED_CASE_USER)) == (mid, MIXED_CASE_USER.lower())

    def test_serialized_integers_are_strings(self, lifecycle_state, mid):
        payload = serialize_state(lifecycle_state, 1, 123, 456)
        assert payload["version"] == 1
        assert payload["chainId"] == 1
        assert payload["lastSyncedBlock"] == "123"

        market_id, market = payload["markets"][0]
        assert market_id == mid
        assert market["totalBorrowAssets"] == str(900 * WAD)
        assert market["params"]["lltv"] == str(86 * WAD // 100)
        assert market["rateAtTarget"] is None

    def test_deserialize_restores_state(self, lifecycle_state):
        lifecycle_state.authorizations[authorization_key(BORROWER, LIQUIDATOR)] = True
        restored = deserialize_state(serialize_state(lifecycle_state, 1, 3, 0))

        assert restored.markets == lifecycle_state.markets
        assert restored.positions == lifecycle_state.positions
        assert restored.authorizations == lifecycle_state.authorizations

    def test_deserialize_rejects_malformed_payload(self):
        with pytest.raises(KeyError):
            deserialize_state({"markets": []})
