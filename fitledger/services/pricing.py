"""
Ledger Primitives - Pure day and price arithmetic.

No I/O and no ambient configuration: the price table is always passed in
as a PricingConfig. All money values are whole currency units (int).
"""

import calendar
import math
from datetime import datetime, timedelta
from fractions import Fraction

from fitledger.config import PricingConfig
from fitledger.models.domain import UpgradeConversion, UpgradeCurrent, UpgradeTarget

ONE_DAY = timedelta(days=1)


def is_upgrade(current_tier_level: int, new_tier_level: int) -> bool:
    """True iff the new tier is strictly higher. Equal tiers and downgrades are not upgrades."""
    return new_tier_level > current_tier_level


def remaining_days(expires_at: datetime | None, now: datetime) -> int:
    """Whole days left until expiry, rounding partial days up. Never negative."""
    if expires_at is None:
        return 0
    delta = expires_at - now
    if delta <= timedelta(0):
        return 0
    return math.ceil(delta / ONE_DAY)


def convert_upgrade(
    current: UpgradeCurrent,
    target: UpgradeTarget,
    days_per_month: int = 30,
) -> UpgradeConversion:
    """
    Convert unused value of the current plan into days of the target plan.

    unused_value = paid_price * remaining_days / (duration_months * days_per_month)
    bonus_days   = floor(unused_value / (target.base_monthly_price / days_per_month))
    total_days   = target.duration_months * days_per_month + bonus_days

    Exact rational arithmetic; no float rounding.
    """
    current_period_days = current.duration_months * days_per_month
    unused_value = Fraction(current.paid_price * current.remaining_days, current_period_days)
    daily_rate = Fraction(target.base_monthly_price, days_per_month)

    bonus_days = math.floor(unused_value / daily_rate)
    total_days = target.duration_months * days_per_month + bonus_days
    return UpgradeConversion(bonus_days=bonus_days, total_days=total_days)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month addition, clamping the day to the end of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def base_price(price: int, discount_percent: int) -> int:
    """
    Reconstruct the pre-discount anchor price: price / (1 - discount_percent / 100).

    Rounded half up to a whole unit.
    """
    if discount_percent <= 0:
        return price
    anchor = Fraction(price * 100, 100 - discount_percent)
    return math.floor(anchor + Fraction(1, 2))


def max_redeemable(price_after_discounts: int, balance: int, pricing: PricingConfig) -> int:
    """Largest bonus amount usable on a price: capped by policy percent and by balance."""
    if price_after_discounts <= 0 or balance <= 0:
        return 0
    cap = price_after_discounts * pricing.max_bonus_redeem_percent // 100
    return min(cap, balance)


def cashback_amount(final_price: int, cashback_level: int, pricing: PricingConfig) -> int:
    """Cashback credited on a completed purchase at the given level."""
    if final_price <= 0:
        return 0
    return final_price * pricing.cashback_percent(cashback_level) // 100
