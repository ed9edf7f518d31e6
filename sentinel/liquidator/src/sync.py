"""
Range Syncer

Fetches every tracked event for one block range, orders the logs
deterministically and replays them into a state copy.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional

from .abis import MORPHO_EVENTS, IRM_EVENTS, PRE_LIQUIDATION_FACTORY_EVENTS, VAULT_EVENTS
from .handlers import apply_event
from .ledger import LedgerClient
from .state import IndexerState
from .types import DecodedLog, LogSource, SyncError

logger = logging.getLogger(__name__)

TIMESTAMP_BATCH_SIZE = 50


@dataclass
class SyncConfig:
    """Contracts whose events feed the indexed state"""
    ledger: LedgerClient
    morpho_address: str
    adaptive_curve_irm_address: str
    pre_liquidation_factory_address: Optional[str] = None
    vault_addresses: List[str] = field(default_factory=list)


def _tag(logs: Iterable[DecodedLog], source: LogSource, vault: Optional[str] = None) -> List[DecodedLog]:
    return [replace(log, source=source, vault_address=vault) for log in logs]


async def fetch_tagged_logs(config: SyncConfig, from_block: int, to_block: int) -> List[DecodedLog]:
    """Fetch all tracked events concurrently, sorted by (block, log index)"""
    ledger = config.ledger

    async def fetch(address, events, source, vault=None):
        logs = await ledger.get_logs(address, events, from_block, to_block)
        return _tag(logs, source, vault)

    fetches = [
        fetch(config.morpho_address, MORPHO_EVENTS, LogSource.MORPHO),
        fetch(config.adaptive_curve_irm_address, IRM_EVENTS, LogSource.IRM),
    ]
    if config.pre_liquidation_factory_address:
        fetches.append(
            fetch(config.pre_liquidation_factory_address, PRE_LIQUIDATION_FACTORY_EVENTS, LogSource.PRE_LIQUIDATION)
        )
    for vault in config.vault_addresses:
        fetches.append(fetch(vault, VAULT_EVENTS, LogSource.VAULT, vault))

    results = await asyncio.gather(*fetches)
    logs = [log for batch in results for log in batch]
    logs.sort(key=lambda log: (log.block_number, log.log_index))
    return logs


async def resolve_block_timestamps(ledger: LedgerClient, block_numbers: List[int]) -> Dict[int, int]:
    """Look up timestamps in concurrent batches of TIMESTAMP_BATCH_SIZE"""
    timestamps: Dict[int, int] = {}
    for i in range(0, len(block_numbers), TIMESTAMP_BATCH_SIZE):
        batch = block_numbers[i:i + TIMESTAMP_BATCH_SIZE]
        values = await asyncio.gather(*(ledger.get_block_timestamp(n) for n in batch))
        timestamps.update(zip(batch, values))
    return timestamps


async def sync_range(config: SyncConfig, state: IndexerState, from_block: int, to_block: int) -> None:
    """
    Replay every tracked event in [from_block, to_block] into `state`.

    `state` must be a copy owned by the caller: any exception leaves it
    partially mutated and the caller is expected to discard it.

    Raises:
        SyncError: a block timestamp could not be resolved
    """
    if from_block > to_block:
        return

    logs = await fetch_tagged_logs(config, from_block, to_block)
    if not logs:
        return

    block_numbers = list(dict.fromkeys(log.block_number for log in logs))
    timestamps = await resolve_block_timestamps(config.ledger, block_numbers)

    for log in logs:
        timestamp = timestamps.get(log.block_number)
        if timestamp is None:
            raise SyncError(f"No timestamp for block {log.block_number}")
        apply_event(state, log, timestamp)

    logger.debug(f"Applied {len(logs)} events from blocks {from_block}-{to_block}")
