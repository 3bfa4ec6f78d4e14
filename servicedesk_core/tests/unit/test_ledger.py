"""Unit tests for servicedesk_core.ledger (balances and document numbers)."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest
from servicedesk_core.errors import ValidationError
from servicedesk_core.ledger.balances import (
    apply_payment,
    is_consistent,
    opening_position,
    settle_in_full,
    to_money,
)
from servicedesk_core.ledger.numbering import (
    batch_prefix,
    format_batch_number,
    format_subscription_invoice_number,
    parse_batch_number,
)

# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------


class TestToMoney:
    def test_rounds_half_up(self):
        assert to_money("10.005") == Decimal("10.01")

    def test_float_uses_repr(self):
        assert to_money(0.1 + 0.2) == Decimal("0.30")

    def test_int(self):
        assert to_money(5) == Decimal("5.00")


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


class TestOpeningPosition:
    def test_nothing_paid(self):
        position = opening_position("250")
        assert position.amount == Decimal("250.00")
        assert position.paid_amount == Decimal("0.00")
        assert position.balance == Decimal("250.00")
        assert not position.is_paid

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_non_positive_amount(self, amount):
        with pytest.raises(ValidationError):
            opening_position(amount)


class TestApplyPayment:
    def test_partial_then_full(self):
        position = opening_position("100")
        position = apply_payment(position, "40")
        assert position.paid_amount == Decimal("40.00")
        assert position.balance == Decimal("60.00")
        assert not position.is_paid
        assert position.amount == position.paid_amount + position.balance

        position = apply_payment(position, "60")
        assert position.balance == Decimal("0.00")
        assert position.is_paid

    def test_overpayment_rejected(self):
        position = opening_position("100")
        with pytest.raises(ValidationError) as exc_info:
            apply_payment(position, "100.01")
        assert exc_info.value.details == {"balance": "100.00"}

    def test_zero_payment_rejected(self):
        with pytest.raises(ValidationError):
            apply_payment(opening_position("100"), 0)


class TestSettleInFull:
    def test_zero_balance(self):
        position = settle_in_full(Decimal("99.99"))
        assert position.paid_amount == Decimal("99.99")
        assert position.balance == Decimal("0.00")
        assert position.is_paid


class TestIsConsistent:
    def test_consistent_unpaid(self):
        assert is_consistent(Decimal("10"), Decimal("4"), Decimal("6"), is_paid_status=False)

    def test_paid_status_requires_zero_balance(self):
        assert not is_consistent(Decimal("10"), Decimal("4"), Decimal("6"), is_paid_status=True)

    def test_sum_mismatch(self):
        assert not is_consistent(Decimal("10"), Decimal("4"), Decimal("5"), is_paid_status=False)


# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------


class TestBatchNumbers:
    def test_format(self):
        assert format_batch_number(date(2026, 1, 15), 7) == "PB20260115007"

    def test_prefix(self):
        assert batch_prefix(date(2026, 12, 31)) == "PB20261231"

    def test_sequence_beyond_three_digits(self):
        assert format_batch_number(date(2026, 1, 15), 1234) == "PB202601151234"

    def test_sequence_must_be_positive(self):
        with pytest.raises(ValueError):
            format_batch_number(date(2026, 1, 15), 0)

    def test_parse(self):
        assert parse_batch_number("PB20260115007") == (date(2026, 1, 15), 7)

    @pytest.mark.parametrize("value", ["PB2026011507", "XX20260115007", "PB20261315001"])
    def test_parse_malformed(self, value):
        with pytest.raises(ValueError):
            parse_batch_number(value)


class TestSubscriptionInvoiceNumbers:
    def test_format(self):
        when = datetime(2026, 3, 4, tzinfo=UTC)
        assert format_subscription_invoice_number("acme", when, 12) == "INV-ACME-202603-012"
