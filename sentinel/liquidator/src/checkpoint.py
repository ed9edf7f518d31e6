"""
Checkpoint Store

Durable per-chain snapshot of the indexer state. Writes go to a temporary
file in the destination directory followed by an atomic rename, so a crash
never leaves a half-written checkpoint behind.
"""

import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Optional, Tuple, Union

from .state import IndexerState, CHECKPOINT_VERSION, serialize_state, deserialize_state
from .types import CheckpointError

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_PATH = ".indexer"


class CheckpointManager:
    """Saves and restores indexer state for one chain"""

    def __init__(self, chain_id: int, base_path: Optional[Union[str, Path]] = None):
        base = base_path or os.getenv("INDEXER_CHECKPOINT_PATH") or DEFAULT_CHECKPOINT_PATH
        self.chain_id = chain_id
        self.file_path = Path(base) / f"checkpoint-{chain_id}.json"

    def save(self, state: IndexerState, last_synced_block: int, chain_id: int) -> None:
        """
        Persist state atomically.

        Raises:
            CheckpointError: directory creation, write or rename failed
        """
        payload = serialize_state(state, chain_id, last_synced_block, int(time.time() * 1000))
        directory = self.file_path.parent
        temp_path = directory / f".tmp-{uuid.uuid4()}"

        try:
            directory.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(temp_path, self.file_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise CheckpointError(f"Failed to write checkpoint {self.file_path}: {e}") from e

        logger.debug(f"Checkpoint saved at block {last_synced_block} ({self.file_path})")

    def load(self) -> Optional[Tuple[IndexerState, int]]:
        """
        Restore the last checkpoint.

        Returns:
            (state, last_synced_block), or None when the file is missing,
            unreadable, malformed or written by another checkpoint version
        """
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable checkpoint {self.file_path}: {e}")
            return None

        if not isinstance(data, dict) or data.get("version") != CHECKPOINT_VERSION:
            logger.warning(f"Ignoring checkpoint {self.file_path} with unsupported version")
            return None

        try:
            state = deserialize_state(data)
            last_synced_block = int(data["lastSyncedBlock"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed checkpoint {self.file_path}: {e}")
            return None

        return state, last_synced_block
