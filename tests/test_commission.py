"""Tests for commission computation — proves the split is exact to the cent."""

import pytest
from decimal import Decimal

from marketplace.compensation.commission import compute_commission


class TestCommissionSplit:
    def test_scenario_180(self) -> None:
        breakdown = compute_commission(Decimal("180"))
        assert breakdown.commission == Decimal("27.00")
        assert breakdown.payout == Decimal("153.00")
        assert breakdown.amount == Decimal("180.00")
        assert breakdown.rate == Decimal("0.15")

    def test_half_cent_rounds_up(self) -> None:
        # 100.10 * 0.15 = 15.015
        breakdown = compute_commission(Decimal("100.10"))
        assert breakdown.commission == Decimal("15.02")
        assert breakdown.payout == Decimal("85.08")

    def test_below_half_cent_rounds_down(self) -> None:
        # 0.01 * 0.15 = 0.0015
        breakdown = compute_commission(Decimal("0.01"))
        assert breakdown.commission == Decimal("0.00")
        assert breakdown.payout == Decimal("0.01")

    def test_zero_amount(self) -> None:
        breakdown = compute_commission(Decimal("0"))
        assert breakdown.commission == Decimal("0.00")
        assert breakdown.payout == Decimal("0.00")

    def test_float_input_goes_through_str(self) -> None:
        breakdown = compute_commission(99.99)
        assert breakdown.amount == Decimal("99.99")
        assert breakdown.commission == Decimal("15.00")
        assert breakdown.payout == Decimal("84.99")

    @pytest.mark.parametrize("amount", ["0.07", "1", "33.33", "999.99", "10000.01", "123456.78"])
    def test_commission_plus_payout_equals_amount(self, amount: str) -> None:
        breakdown = compute_commission(Decimal(amount))
        assert breakdown.commission + breakdown.payout == breakdown.amount
        expected = (Decimal(amount) * Decimal("0.15")).quantize(Decimal("0.01"), rounding="ROUND_HALF_UP")
        assert breakdown.commission == expected

    def test_custom_rate(self) -> None:
        breakdown = compute_commission(Decimal("200"), Decimal("0.10"))
        assert breakdown.commission == Decimal("20.00")
        assert breakdown.payout == Decimal("180.00")


class TestCommissionValidation:
    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            compute_commission(Decimal("-1"))

    def test_rate_above_one_rejected(self) -> None:
        with pytest.raises(ValueError, match="rate"):
            compute_commission(Decimal("100"), Decimal("1.5"))

    def test_negative_rate_rejected(self) -> None:
        with pytest.raises(ValueError, match="rate"):
            compute_commission(Decimal("100"), Decimal("-0.1"))
