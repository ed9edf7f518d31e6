"""
Fixed-Point Math

Integer arithmetic matching the Morpho Blue contracts bit for bit:
- WAD (1e18) multiplication/division with explicit rounding direction
- Shares <-> assets conversion with virtual shares and assets
- Interest compounding (Taylor expansion) and the rate model exponential
- Liquidation incentive factor and the liquidation buffer

Everything here works on Python ints. Signed helpers truncate toward zero
like Solidity's int256 division.
"""

# ============================================================================
# Constants
# ============================================================================

WAD = 10**18
ORACLE_PRICE_SCALE = 10**36
SECONDS_PER_YEAR = 365 * 24 * 3600

VIRTUAL_SHARES = 10**6
VIRTUAL_ASSETS = 1

MAX_LIQUIDATION_INCENTIVE_FACTOR = 115 * WAD // 100
LIQUIDATION_CURSOR = 3 * WAD // 10

DEFAULT_LIQUIDATION_BUFFER_BPS = 50

LN_2_INT = 693147180559945309
LN_WEI_INT = -41446531673892822312
WEXP_UPPER_BOUND = 93859467695000404319
WEXP_UPPER_VALUE = 57716089161558943949701069502944508345128422502756744429568


# ============================================================================
# Unsigned WAD Math
# ============================================================================

def mul_div_down(x: int, y: int, d: int) -> int:
    return (x * y) // d


def mul_div_up(x: int, y: int, d: int) -> int:
    return (x * y + (d - 1)) // d


def w_mul_down(x: int, y: int) -> int:
    return mul_div_down(x, y, WAD)


def w_div_down(x: int, y: int) -> int:
    return mul_div_down(x, WAD, y)


def w_div_up(x: int, y: int) -> int:
    return mul_div_up(x, WAD, y)


def w_taylor_compounded(x: int, n: int) -> int:
    """First three non-zero terms of the Taylor expansion of e^(x*n) - 1"""
    first_term = x * n
    second_term = mul_div_down(first_term, first_term, 2 * WAD)
    third_term = mul_div_down(second_term, first_term, 3 * WAD)
    return first_term + second_term + third_term


# ============================================================================
# Signed WAD Math
# ============================================================================

def _div_to_zero(x: int, y: int) -> int:
    q = abs(x) // abs(y)
    return q if (x >= 0) == (y >= 0) else -q


def w_mul_to_zero(x: int, y: int) -> int:
    return _div_to_zero(x * y, WAD)


def w_div_to_zero(x: int, y: int) -> int:
    return _div_to_zero(x * WAD, y)


def bound(x: int, low: int, high: int) -> int:
    return max(low, min(x, high))


def w_exp(x: int) -> int:
    """
    WAD exponential used by the adaptive curve rate model.

    Decomposes x = q * ln(2) + r with r in [-ln(2)/2, ln(2)/2] and
    approximates e^r with a second order expansion.
    """
    if x < LN_WEI_INT:
        return 0
    if x >= WEXP_UPPER_BOUND:
        return WEXP_UPPER_VALUE

    rounding_adjustment = -(LN_2_INT // 2) if x < 0 else LN_2_INT // 2
    q = _div_to_zero(x + rounding_adjustment, LN_2_INT)
    r = x - q * LN_2_INT
    exp_r = WAD + r + (r * r) // WAD // 2

    if q >= 0:
        return exp_r << q
    return exp_r >> -q


# ============================================================================
# Shares Math
# ============================================================================

def to_assets_down(shares: int, total_assets: int, total_shares: int) -> int:
    return mul_div_down(shares, total_assets + VIRTUAL_ASSETS, total_shares + VIRTUAL_SHARES)


def to_assets_up(shares: int, total_assets: int, total_shares: int) -> int:
    return mul_div_up(shares, total_assets + VIRTUAL_ASSETS, total_shares + VIRTUAL_SHARES)


def to_shares_down(assets: int, total_assets: int, total_shares: int) -> int:
    return mul_div_down(assets, total_shares + VIRTUAL_SHARES, total_assets + VIRTUAL_ASSETS)


def to_shares_up(assets: int, total_assets: int, total_shares: int) -> int:
    return mul_div_up(assets, total_shares + VIRTUAL_SHARES, total_assets + VIRTUAL_ASSETS)


# ============================================================================
# Liquidation
# ============================================================================

def liquidation_incentive_factor(lltv: int) -> int:
    """Bonus applied to repaid assets when computing seizable collateral"""
    return min(
        MAX_LIQUIDATION_INCENTIVE_FACTOR,
        w_div_down(WAD, WAD - w_mul_down(LIQUIDATION_CURSOR, WAD - lltv)),
    )


def decrease_seizable_collateral(
    seizable_collateral: int,
    bad_debt: bool,
    buffer_bps: int = DEFAULT_LIQUIDATION_BUFFER_BPS,
) -> int:
    """
    Shave a safety margin off the seizable amount.

    Bad debt positions are seized in full so the whole debt gets realized.
    """
    if bad_debt:
        return seizable_collateral
    return w_mul_down(seizable_collateral, WAD - buffer_bps * 10**14)
