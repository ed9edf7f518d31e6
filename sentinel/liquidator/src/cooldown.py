"""
Cooldown Mechanisms

Throttle repeated liquidation attempts on the same position and repeated
market discovery. Both take the current time explicitly; a slot claimed at
`now` becomes ready again at `now + period`.
"""

import logging
from typing import Dict, Optional

from .database import RedisManager

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "sentinel:cooldown"


class PositionLiquidationCooldown:
    """
    Per-position cooldown.

    try_claim() reads and reserves the slot without awaiting in between, so
    concurrent attempts on the same event loop cannot both claim it. With a
    RedisManager the claim is a single compare-and-set script shared by
    every process using the same Redis.
    """

    def __init__(self, period: int, redis: Optional[RedisManager] = None):
        self.period = period
        self.redis = redis
        self._ready_at: Dict[str, int] = {}

    @staticmethod
    def _key(market_id: str, user: str) -> str:
        return f"{market_id.lower()}-{user.lower()}"

    def try_claim(self, market_id: str, user: str, now: int) -> bool:
        """Return True and reserve the slot when the position is ready"""
        key = self._key(market_id, user)

        if self.redis is not None:
            return self.redis.claim_slot(f"{REDIS_KEY_PREFIX}:{key}", now, self.period)

        ready_at = self._ready_at.get(key)
        if ready_at is not None and ready_at > now:
            return False

        self._ready_at[key] = now + self.period
        return True


class MarketsFetchingCooldown:
    """Single global slot gating market discovery"""

    def __init__(self, period: int):
        self.period = period
        self._ready_at = 0

    def is_ready(self, now: int) -> bool:
        if self._ready_at > now:
            return False

        self._ready_at = now + self.period
        return True
