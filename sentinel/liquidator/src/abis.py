"""
Contract ABIs and Codec

Event definitions for Morpho Blue, the adaptive curve IRM, the
pre-liquidation factory and MetaMorpho vaults, plus helpers to decode raw
logs and encode function calls with eth_abi.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import keccak

from .types import DecodedLog, MarketParams


MARKET_PARAMS_TYPE = "(address,address,address,address,uint256)"
PRE_LIQUIDATION_PARAMS_TYPE = "(uint256,uint256,uint256,uint256,uint256,address)"


def to_hex(value: bytes) -> str:
    """0x-prefixed lowercase hex of raw bytes"""
    return "0x" + bytes(value).hex()


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


# ============================================================================
# Event Definitions
# ============================================================================

@dataclass(frozen=True)
class EventParam:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventDefinition:
    """Solidity event with its parameters in declaration order"""
    name: str
    params: Tuple[EventParam, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic0(self) -> str:
        return to_hex(keccak(text=self.signature))


def _event(name: str, *params: Tuple[str, str, bool]) -> EventDefinition:
    return EventDefinition(name, tuple(EventParam(*p) for p in params))


CREATE_MARKET = _event(
    "CreateMarket",
    ("id", "bytes32", True),
    ("market_params", MARKET_PARAMS_TYPE, False),
)
SET_FEE = _event(
    "SetFee",
    ("id", "bytes32", True),
    ("new_fee", "uint256", False),
)
ACCRUE_INTEREST = _event(
    "AccrueInterest",
    ("id", "bytes32", True),
    ("prev_borrow_rate", "uint256", False),
    ("interest", "uint256", False),
    ("fee_shares", "uint256", False),
)
SUPPLY = _event(
    "Supply",
    ("id", "bytes32", True),
    ("caller", "address", True),
    ("on_behalf", "address", True),
    ("assets", "uint256", False),
    ("shares", "uint256", False),
)
WITHDRAW = _event(
    "Withdraw",
    ("id", "bytes32", True),
    ("caller", "address", False),
    ("on_behalf", "address", True),
    ("receiver", "address", True),
    ("assets", "uint256", False),
    ("shares", "uint256", False),
)
BORROW = _event(
    "Borrow",
    ("id", "bytes32", True),
    ("caller", "address", False),
    ("on_behalf", "address", True),
    ("receiver", "address", True),
    ("assets", "uint256", False),
    ("shares", "uint256", False),
)
REPAY = _event(
    "Repay",
    ("id", "bytes32", True),
    ("caller", "address", True),
    ("on_behalf", "address", True),
    ("assets", "uint256", False),
    ("shares", "uint256", False),
)
SUPPLY_COLLATERAL = _event(
    "SupplyCollateral",
    ("id", "bytes32", True),
    ("caller", "address", True),
    ("on_behalf", "address", True),
    ("assets", "uint256", False),
)
WITHDRAW_COLLATERAL = _event(
    "WithdrawCollateral",
    ("id", "bytes32", True),
    ("caller", "address", False),
    ("on_behalf", "address", True),
    ("receiver", "address", True),
    ("assets", "uint256", False),
)
LIQUIDATE = _event(
    "Liquidate",
    ("id", "bytes32", True),
    ("caller", "address", True),
    ("borrower", "address", True),
    ("repaid_assets", "uint256", False),
    ("repaid_shares", "uint256", False),
    ("seized_assets", "uint256", False),
    ("bad_debt_assets", "uint256", False),
    ("bad_debt_shares", "uint256", False),
)
SET_AUTHORIZATION = _event(
    "SetAuthorization",
    ("caller", "address", True),
    ("authorizer", "address", True),
    ("authorized", "address", True),
    ("new_is_authorized", "bool", False),
)
BORROW_RATE_UPDATE = _event(
    "BorrowRateUpdate",
    ("id", "bytes32", True),
    ("avg_borrow_rate", "uint256", False),
    ("rate_at_target", "uint256", False),
)
CREATE_PRE_LIQUIDATION = _event(
    "CreatePreLiquidation",
    ("pre_liquidation", "address", True),
    ("id", "bytes32", False),
    ("pre_liquidation_params", PRE_LIQUIDATION_PARAMS_TYPE, False),
)
SET_WITHDRAW_QUEUE = _event(
    "SetWithdrawQueue",
    ("caller", "address", True),
    ("new_withdraw_queue", "bytes32[]", False),
)

MORPHO_EVENTS: List[EventDefinition] = [
    CREATE_MARKET, SET_FEE, ACCRUE_INTEREST,
    SUPPLY, WITHDRAW, BORROW, REPAY,
    SUPPLY_COLLATERAL, WITHDRAW_COLLATERAL,
    LIQUIDATE, SET_AUTHORIZATION,
]
IRM_EVENTS: List[EventDefinition] = [BORROW_RATE_UPDATE]
PRE_LIQUIDATION_FACTORY_EVENTS: List[EventDefinition] = [CREATE_PRE_LIQUIDATION]
VAULT_EVENTS: List[EventDefinition] = [SET_WITHDRAW_QUEUE]


# ============================================================================
# Log Decoding
# ============================================================================

def _normalize(abi_type: str, value: Any) -> Any:
    if abi_type == "bytes32":
        return to_hex(value)
    if abi_type == "bytes32[]":
        return [to_hex(v) for v in value]
    return value


def decode_log(raw_log: Dict[str, Any], events: Sequence[EventDefinition]) -> Optional[DecodedLog]:
    """
    Decode a raw JSON-RPC log against a set of candidate events.

    Returns None when the log's topic0 matches none of them.
    """
    topics = [_to_bytes(t) for t in raw_log["topics"]]
    if not topics:
        return None

    topic0 = to_hex(topics[0])
    event = next((e for e in events if e.topic0 == topic0), None)
    if event is None:
        return None

    indexed = [p for p in event.params if p.indexed]
    non_indexed = [p for p in event.params if not p.indexed]

    args: Dict[str, Any] = {}
    for param, topic in zip(indexed, topics[1:]):
        (value,) = decode([param.type], topic)
        args[param.name] = _normalize(param.type, value)

    values = decode([p.type for p in non_indexed], _to_bytes(raw_log["data"]))
    for param, value in zip(non_indexed, values):
        args[param.name] = _normalize(param.type, value)

    tx_hash = raw_log.get("transactionHash")
    return DecodedLog(
        event_name=event.name,
        args=args,
        address=str(raw_log["address"]),
        block_number=int(raw_log["blockNumber"]),
        log_index=int(raw_log["logIndex"]),
        transaction_hash=to_hex(_to_bytes(tx_hash)) if tx_hash is not None else None,
    )


# ============================================================================
# Call Encoding
# ============================================================================

def function_selector(name: str, arg_types: Sequence[str]) -> bytes:
    return keccak(text=f"{name}({','.join(arg_types)})")[:4]


def encode_call(name: str, arg_types: Sequence[str], args: Sequence[Any]) -> bytes:
    """Selector followed by the ABI-encoded arguments"""
    return function_selector(name, arg_types) + encode(list(arg_types), list(args))


def decode_output(output_types: Sequence[str], data: bytes) -> tuple:
    return decode(list(output_types), _to_bytes(data))


def market_id(params: MarketParams) -> str:
    """Morpho Blue market id: keccak256 of the encoded market params"""
    return to_hex(
        keccak(encode(["address", "address", "address", "address", "uint256"], list(params.as_tuple())))
    )
