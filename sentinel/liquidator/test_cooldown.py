"""
Unit tests for cooldown mechanisms

Tests:
- Per-position claim and release at now + period
- Keys are case-insensitive
- Redis-backed claims delegate to the shared slot
- Market discovery gate
"""

from unittest.mock import Mock

from liquidator.src.cooldown import MarketsFetchingCooldown, PositionLiquidationCooldown
from liquidator.src.database import RedisManager


MARKET = "0x" + "aa" * 32
USER = "0xAbCdEf0000000000000000000000000000000002"


class TestPositionLiquidationCooldown:
    """In-memory and shared slots"""

    def test_first_claim_succeeds(self):
        cooldown = PositionLiquidationCooldown(period=60)
        assert cooldown.try_claim(MARKET, USER, 1_000) is True

    def test_claim_blocked_until_period_elapses(self):
        cooldown = PositionLiquidationCooldown(period=60)
        cooldown.try_claim(MARKET, USER, 1_000)

        assert cooldown.try_claim(MARKET, USER, 1_059) is False
        assert cooldown.try_claim(MARKET, USER, 1_060) is True
        assert cooldown.try_claim(MARKET, USER, 1_061) is False

    def test_keys_ignore_case(self):
        cooldown = PositionLiquidationCooldown(period=60)
        cooldown.try_claim(MARKET.upper().replace("0X", "0x"), USER, 1_000)
        assert cooldown.try_claim(MARKET, USER.lower(), 1_001) is False

    def test_positions_are_independent(self):
        cooldown = PositionLiquidationCooldown(period=60)
        cooldown.try_claim(MARKET, USER, 1_000)
        assert cooldown.try_claim(MARKET, "0x" + "12" * 20, 1_000) is True

    def test_redis_backed_claim(self):
        redis = Mock(spec=RedisManager)
        redis.claim_slot.return_value = False
        cooldown = PositionLiquidationCooldown(period=60, redis=redis)

        assert cooldown.try_claim(MARKET, USER, 1_000) is False
        redis.claim_slot.assert_called_once_with(
            f"sentinel:cooldown:{MARKET}-{USER.lower()}", 1_000, 60
        )


class TestMarketsFetchingCooldown:
    """Global discovery gate"""

    def test_ready_on_first_call(self):
        assert MarketsFetchingCooldown(period=3600).is_ready(0) is True

    def test_gate(self):
        cooldown = MarketsFetchingCooldown(period=3600)
        assert cooldown.is_ready(100) is True
        assert cooldown.is_ready(3_699) is False
        assert cooldown.is_ready(3_700) is True
