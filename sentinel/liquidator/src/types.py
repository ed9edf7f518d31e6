"""
Core Data Models and Types

Defines the data structures shared by the indexer and the liquidation engine.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, field_validator


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT256 = 2**256 - 1


# ============================================================================
# Enums
# ============================================================================

class IndexerStatus(str, Enum):
    """Indexer lifecycle state"""
    UNINITIALIZED = "uninitialized"  # init() not called yet
    CATCHING_UP = "catching_up"      # Processing chunks towards the head
    STEADY = "steady"                # Caught up, waiting for the next trigger


class LogSource(str, Enum):
    """Contract family a raw log was fetched from"""
    MORPHO = "morpho"
    IRM = "irm"
    PRE_LIQUIDATION = "pre_liquidation"
    VAULT = "vault"


class LiquidationKind(str, Enum):
    """Kind of liquidation attempt"""
    LIQUIDATION = "liquidation"
    PRE_LIQUIDATION = "pre_liquidation"


class LiquidationOutcome(str, Enum):
    """Result of a single liquidation attempt"""
    LIQUIDATED = "liquidated"                      # Submitted and accepted
    SKIPPED_UNPROFITABLE = "skipped_unprofitable"  # Profit gate rejected
    FAILED = "failed"                              # Routing, simulation or submission failed


class SubmissionPath(str, Enum):
    """Transaction submission path"""
    PUBLIC = "public"          # Public mempool
    FLASHBOTS = "flashbots"    # Private bundle relay


# ============================================================================
# Error Types
# ============================================================================

class SentinelError(Exception):
    """Base exception for all Sentinel errors"""
    pass


class ConfigurationError(SentinelError):
    """Configuration validation or loading error"""
    pass


class StateError(SentinelError):
    """Indexed state could not be built or queried"""
    pass


class SyncError(StateError):
    """Chunk synchronization failed after exhausting retries"""
    pass


class CheckpointError(SentinelError):
    """Checkpoint could not be written"""
    pass


class RPCError(SentinelError):
    """RPC provider connection or response error"""
    pass


class SimulationError(SentinelError):
    """Transaction simulation error"""
    pass


class ConversionError(SentinelError):
    """No venue could convert collateral into the loan asset"""
    pass


class ExecutionError(SentinelError):
    """Transaction execution error"""
    pass


class PricingError(SentinelError):
    """Price adapter could not produce a price"""
    pass


class DiscoveryApiError(SentinelError):
    """Off-chain discovery API transport or query error"""
    pass


class DatabaseError(SentinelError):
    """Database connection or query error"""
    pass


# ============================================================================
# Protocol Parameters
# ============================================================================

@dataclass(frozen=True)
class MarketParams:
    """Immutable parameters identifying a Morpho Blue market"""
    loan_token: str
    collateral_token: str
    oracle: str
    irm: str
    lltv: int

    def as_tuple(self) -> tuple:
        return (self.loan_token, self.collateral_token, self.oracle, self.irm, self.lltv)


@dataclass(frozen=True)
class PreLiquidationParams:
    """Linear pre-liquidation curve between pre_lltv and the market lltv"""
    pre_lltv: int
    pre_lcf1: int
    pre_lcf2: int
    pre_lif1: int
    pre_lif2: int
    pre_liquidation_oracle: str


# ============================================================================
# Ledger Data
# ============================================================================

@dataclass
class DecodedLog:
    """Protocol event decoded from a raw log"""
    event_name: str
    args: Dict[str, Any]
    address: str
    block_number: int
    log_index: int
    transaction_hash: Optional[str] = None
    source: Optional[LogSource] = None
    vault_address: Optional[str] = None


@dataclass
class CallResult:
    """Result of one call inside a multicall batch"""
    success: bool
    return_data: bytes = b""


@dataclass
class SimulatedCall:
    """Result of one call inside a simulated bundle"""
    success: bool
    return_data: bytes = b""
    gas_used: int = 0
    error: Optional[str] = None


@dataclass
class ToConvert:
    """Amount of an asset still to be converted into the loan asset"""
    src: str
    dst: str
    src_amount: int


# ============================================================================
# Engine Models
# ============================================================================

class PositionCandidate(BaseModel):
    """Borrower position supplied by an external discovery source"""
    market_id: str = Field(..., description="Market id (bytes32 hex)")
    user: str = Field(..., description="Borrower address")
    supply_shares: int = Field(default=0)
    borrow_shares: int = Field(default=0)
    collateral: int = Field(default=0)

    @field_validator('user')
    @classmethod
    def validate_address(cls, v):
        """Validate Ethereum address format"""
        if not v.startswith('0x') or len(v) != 42:
            raise ValueError(f"Invalid Ethereum address: {v}")
        return v


class LiquidationReport(BaseModel):
    """Outcome of a single liquidation attempt"""
    chain_id: int
    kind: LiquidationKind
    outcome: LiquidationOutcome
    market_id: str
    user: str
    seized_assets: int = Field(default=0, description="Collateral passed to the seize call")
    bad_debt: bool = Field(default=False)
    tx_hash: Optional[str] = None
    submission_path: Optional[SubmissionPath] = None
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary"""
        data = self.model_dump(mode="json")
        data['seized_assets'] = str(self.seized_assets)
        return data


@dataclass
class LiquidationCandidates:
    """Positions eligible for liquidation or pre-liquidation"""
    liquidatable: List[Any] = field(default_factory=list)
    pre_liquidatable: List[Any] = field(default_factory=list)
