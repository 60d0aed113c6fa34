"""Commission computation — the platform's fixed share of escrowed funds.

    commission = round_half_up(amount × rate, 2)
    payout = amount − commission

Because payout is derived by subtraction, commission + payout == amount
holds exactly for every amount, not just approximately.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from marketplace.defaults import CENT, to_money
from marketplace.models.escrow import CommissionBreakdown

DEFAULT_COMMISSION_RATE = Decimal("0.15")


def compute_commission(
    amount: Decimal,
    rate: Decimal = DEFAULT_COMMISSION_RATE,
) -> CommissionBreakdown:
    """Split ``amount`` into platform commission and specialist payout.

    Raises ValueError for negative amounts or a rate outside [0, 1].
    """
    amount = to_money(amount)
    if amount < Decimal("0"):
        raise ValueError(f"Amount must be non-negative, got {amount}")
    if not (Decimal("0") <= rate <= Decimal("1")):
        raise ValueError(f"Commission rate must be in [0, 1], got {rate}")
    commission = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return CommissionBreakdown(
        amount=amount,
        rate=rate,
        commission=commission,
        payout=amount - commission,
    )
