"""
Flashbots Relay Client

Signs executor transactions with the liquidation account and submits them
as a private bundle through `eth_sendBundle`.
"""

import json
import logging
from typing import List, Sequence, Tuple

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from .abis import to_hex
from .ledger import LedgerClient
from .types import ExecutionError

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "https://relay.flashbots.net"


class FlashbotsRelay:
    """Bundle submission to a Flashbots-compatible relay"""

    def __init__(
        self,
        ledger: LedgerClient,
        auth_private_key: str,
        relay_url: str = DEFAULT_RELAY_URL,
        timeout: float = 10.0,
    ):
        self.ledger = ledger
        self.auth_account = Account.from_key(auth_private_key)
        self.relay_url = relay_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def sign_bundle(self, transactions: Sequence[Tuple[str, bytes]]) -> List[str]:
        """Fill and sign each (to, data) transaction; returns raw hex txs"""
        signed = []
        for to, data in transactions:
            tx = await self.ledger.build_transaction(to, data)
            signed.append(to_hex(self.ledger.sign_transaction(tx)))
        return signed

    def _signature_header(self, body: str) -> str:
        message = encode_defunct(text=to_hex(keccak(text=body)))
        signature = self.auth_account.sign_message(message).signature
        return f"{self.auth_account.address}:{to_hex(signature)}"

    async def _post(self, body: str, headers: dict) -> dict:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.relay_url, data=body, headers=headers) as response:
                return await response.json(content_type=None)

    async def send_raw_bundle(self, signed_transactions: List[str], target_block: int) -> bool:
        """
        Submit a signed bundle for inclusion in `target_block`.

        Returns:
            True when the relay accepted the bundle
        """
        body = json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_sendBundle",
            "params": [{"txs": signed_transactions, "blockNumber": hex(target_block)}],
        })
        headers = {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": self._signature_header(body),
        }

        try:
            response = await self._post(body, headers)
        except (aiohttp.ClientError, ValueError) as e:
            raise ExecutionError(f"Flashbots relay request failed: {e}") from e

        if response.get("error"):
            logger.warning(f"Flashbots bundle rejected for block {target_block}: {response['error']}")
            return False

        logger.info(f"Flashbots bundle submitted for block {target_block}")
        return True
