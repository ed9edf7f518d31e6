"""
Market Model

Ephemeral views built from indexed totals plus a freshly fetched oracle price:
- AdaptiveCurveIrm: borrow rate and rate-at-target evolution
- Market: utilization, interest accrual, health checks
- AccrualPosition: seizable collateral for a standard liquidation
- PreLiquidationPosition: seizable collateral along a pre-liquidation curve

Instances are never mutated; accrual returns new objects.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from .maths import (
    WAD, ORACLE_PRICE_SCALE, SECONDS_PER_YEAR,
    mul_div_down, w_mul_down, w_div_down, w_div_up, w_taylor_compounded,
    w_mul_to_zero, w_div_to_zero, w_exp, bound,
    to_assets_down, to_assets_up, to_shares_down,
    liquidation_incentive_factor,
)
from .types import MarketParams, PreLiquidationParams


# ============================================================================
# Adaptive Curve IRM
# ============================================================================

class AdaptiveCurveIrm:
    """Borrow rate model whose rate at target utilization drifts over time"""

    CURVE_STEEPNESS = 4 * WAD
    ADJUSTMENT_SPEED = 50 * WAD // SECONDS_PER_YEAR
    TARGET_UTILIZATION = 9 * WAD // 10
    INITIAL_RATE_AT_TARGET = 4 * WAD // 100 // SECONDS_PER_YEAR
    MIN_RATE_AT_TARGET = WAD // 1000 // SECONDS_PER_YEAR
    MAX_RATE_AT_TARGET = 2 * WAD // SECONDS_PER_YEAR

    @classmethod
    def curve(cls, rate_at_target: int, err: int) -> int:
        if err < 0:
            coeff = WAD - w_div_to_zero(WAD, cls.CURVE_STEEPNESS)
        else:
            coeff = cls.CURVE_STEEPNESS - WAD
        return w_mul_to_zero(w_mul_to_zero(coeff, err) + WAD, rate_at_target)

    @classmethod
    def new_rate_at_target(cls, start_rate_at_target: int, linear_adaptation: int) -> int:
        return bound(
            w_mul_to_zero(start_rate_at_target, w_exp(linear_adaptation)),
            cls.MIN_RATE_AT_TARGET,
            cls.MAX_RATE_AT_TARGET,
        )

    @classmethod
    def get_borrow_rate(
        cls, utilization: int, start_rate_at_target: int, elapsed: int
    ) -> Tuple[int, int]:
        """
        Compute the average borrow rate over `elapsed` seconds.

        Returns:
            (avg_borrow_rate, end_rate_at_target), both per-second WAD rates
        """
        if utilization > cls.TARGET_UTILIZATION:
            err_norm_factor = WAD - cls.TARGET_UTILIZATION
        else:
            err_norm_factor = cls.TARGET_UTILIZATION
        err = w_div_to_zero(utilization - cls.TARGET_UTILIZATION, err_norm_factor)

        if start_rate_at_target == 0:
            avg_rate_at_target = cls.INITIAL_RATE_AT_TARGET
            end_rate_at_target = cls.INITIAL_RATE_AT_TARGET
        else:
            speed = w_mul_to_zero(cls.ADJUSTMENT_SPEED, err)
            linear_adaptation = speed * elapsed

            if linear_adaptation == 0:
                avg_rate_at_target = start_rate_at_target
                end_rate_at_target = start_rate_at_target
            else:
                end_rate_at_target = cls.new_rate_at_target(start_rate_at_target, linear_adaptation)
                mid_rate_at_target = cls.new_rate_at_target(
                    start_rate_at_target, _half(linear_adaptation)
                )
                avg_rate_at_target = (
                    start_rate_at_target + end_rate_at_target + 2 * mid_rate_at_target
                ) // 4

        return cls.curve(avg_rate_at_target, err), end_rate_at_target


def _half(x: int) -> int:
    # int256 division by two truncates toward zero
    return -((-x) // 2) if x < 0 else x // 2


# ============================================================================
# Market
# ============================================================================

@dataclass(frozen=True)
class Market:
    """Snapshot of a market's totals with an optional oracle price"""
    id: str
    params: MarketParams
    total_supply_assets: int = 0
    total_supply_shares: int = 0
    total_borrow_assets: int = 0
    total_borrow_shares: int = 0
    last_update: int = 0
    fee: int = 0
    price: Optional[int] = None
    rate_at_target: Optional[int] = None

    @property
    def utilization(self) -> int:
        if self.total_supply_assets == 0:
            return 0
        return w_div_down(self.total_borrow_assets, self.total_supply_assets)

    @property
    def liquidation_incentive_factor(self) -> int:
        return liquidation_incentive_factor(self.params.lltv)

    def get_accrual_borrow_rate(self, timestamp: int) -> Tuple[int, Optional[int]]:
        """Average borrow rate and end rate at target up to `timestamp`"""
        elapsed = timestamp - self.last_update
        if self.rate_at_target is None or elapsed <= 0:
            return 0, self.rate_at_target
        return AdaptiveCurveIrm.get_borrow_rate(self.utilization, self.rate_at_target, elapsed)

    def accrue_interest(self, timestamp: int) -> "Market":
        """Return a copy of the market with interest accrued up to `timestamp`"""
        elapsed = timestamp - self.last_update
        if self.rate_at_target is None or elapsed <= 0:
            return self

        avg_borrow_rate, end_rate_at_target = self.get_accrual_borrow_rate(timestamp)
        interest = w_mul_down(self.total_borrow_assets, w_taylor_compounded(avg_borrow_rate, elapsed))

        fee_shares = 0
        if self.fee != 0:
            fee_amount = w_mul_down(interest, self.fee)
            fee_shares = to_shares_down(
                fee_amount,
                self.total_supply_assets + interest - fee_amount,
                self.total_supply_shares,
            )

        return replace(
            self,
            total_supply_assets=self.total_supply_assets + interest,
            total_supply_shares=self.total_supply_shares + fee_shares,
            total_borrow_assets=self.total_borrow_assets + interest,
            last_update=timestamp,
            rate_at_target=end_rate_at_target,
        )

    def to_borrow_assets_up(self, shares: int) -> int:
        return to_assets_up(shares, self.total_borrow_assets, self.total_borrow_shares)

    def to_borrow_assets_down(self, shares: int) -> int:
        return to_assets_down(shares, self.total_borrow_assets, self.total_borrow_shares)

    def to_supply_assets_down(self, shares: int) -> int:
        return to_assets_down(shares, self.total_supply_assets, self.total_supply_shares)

    def is_healthy(self, collateral: int, borrow_shares: int) -> Optional[bool]:
        """Whether the position is within its lltv. None without a price."""
        if self.price is None:
            return None
        max_borrow = w_mul_down(
            mul_div_down(collateral, self.price, ORACLE_PRICE_SCALE), self.params.lltv
        )
        return max_borrow >= self.to_borrow_assets_up(borrow_shares)


# ============================================================================
# Positions
# ============================================================================

@dataclass(frozen=True)
class AccrualPosition:
    """Borrower position evaluated against a market snapshot"""
    user: str
    supply_shares: int
    borrow_shares: int
    collateral: int
    market: Market

    @property
    def market_id(self) -> str:
        return self.market.id

    @property
    def market_params(self) -> MarketParams:
        return self.market.params

    @property
    def borrow_assets(self) -> int:
        return self.market.to_borrow_assets_up(self.borrow_shares)

    @property
    def supply_assets(self) -> int:
        return self.market.to_supply_assets_down(self.supply_shares)

    @property
    def is_healthy(self) -> Optional[bool]:
        return self.market.is_healthy(self.collateral, self.borrow_shares)

    @property
    def seizable_collateral(self) -> Optional[int]:
        """
        Collateral a liquidator may seize by repaying the whole debt.

        None when the market price is unknown, 0 when the position is healthy.
        """
        price = self.market.price
        if price is None:
            return None
        if price == 0 or self.is_healthy:
            return 0

        repaid_assets = self.market.to_borrow_assets_down(self.borrow_shares)
        return min(
            self.collateral,
            mul_div_down(
                w_mul_down(repaid_assets, self.market.liquidation_incentive_factor),
                ORACLE_PRICE_SCALE,
                price,
            ),
        )

    def accrue_interest(self, timestamp: int) -> "AccrualPosition":
        return replace(self, market=self.market.accrue_interest(timestamp))


@dataclass(frozen=True)
class PreLiquidationPosition(AccrualPosition):
    """Position covered by a pre-liquidation contract the borrower authorized"""
    pre_liquidation: str
    pre_liquidation_params: PreLiquidationParams
    pre_liquidation_oracle_price: Optional[int]

    def _collateral_quoted(self) -> int:
        return mul_div_down(self.collateral, self.pre_liquidation_oracle_price, ORACLE_PRICE_SCALE)

    @property
    def is_pre_liquidatable(self) -> Optional[bool]:
        """Whether the ltv sits between pre_lltv (exclusive) and lltv (inclusive)"""
        if self.pre_liquidation_oracle_price is None:
            return None
        collateral_quoted = self._collateral_quoted()
        borrowed = self.borrow_assets
        return (
            borrowed > w_mul_down(collateral_quoted, self.pre_liquidation_params.pre_lltv)
            and borrowed <= w_mul_down(collateral_quoted, self.market.params.lltv)
        )

    @property
    def seizable_collateral(self) -> Optional[int]:
        price = self.pre_liquidation_oracle_price
        if price is None:
            return None
        if price == 0 or self.collateral == 0 or not self.is_pre_liquidatable:
            return 0

        params = self.pre_liquidation_params
        collateral_quoted = self._collateral_quoted()
        ltv = w_div_up(self.borrow_assets, collateral_quoted)
        quotient = w_div_down(ltv - params.pre_lltv, self.market.params.lltv - params.pre_lltv)

        pre_lif = w_mul_down(quotient, params.pre_lif2 - params.pre_lif1) + params.pre_lif1
        pre_lcf = w_mul_down(quotient, params.pre_lcf2 - params.pre_lcf1) + params.pre_lcf1

        repayable_shares = w_mul_down(self.borrow_shares, pre_lcf)
        repayable_assets = self.market.to_borrow_assets_down(repayable_shares)

        return min(
            self.collateral,
            mul_div_down(w_mul_down(repayable_assets, pre_lif), ORACLE_PRICE_SCALE, price),
        )
