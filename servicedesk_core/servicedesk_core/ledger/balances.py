"""Invoice balance arithmetic.

An invoice's position is always ``amount == paid_amount + balance`` and it
counts as paid exactly when ``balance <= 0``.  All functions here are pure;
the ledger service persists the returned position in one conditional
update.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from servicedesk_core.errors import ValidationError

_CENT = Decimal("0.01")


def to_money(value: Decimal | float | int | str) -> Decimal:
    """Quantize *value* to cents, rounding half up."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LedgerPosition:
    amount: Decimal
    paid_amount: Decimal
    balance: Decimal

    @property
    def is_paid(self) -> bool:
        return self.balance <= 0


def opening_position(amount: Decimal | float | int | str) -> LedgerPosition:
    """Position of a freshly submitted invoice: nothing paid yet."""
    total = to_money(amount)
    if total <= 0:
        raise ValidationError("Invoice amount must be greater than zero")
    return LedgerPosition(amount=total, paid_amount=to_money(0), balance=total)


def apply_payment(position: LedgerPosition, payment: Decimal | float | int | str) -> LedgerPosition:
    """Apply a partial or full *payment* to *position*.

    Raises
    ------
    ValidationError
        If the payment is not positive or exceeds the outstanding balance.
    """
    paid = to_money(payment)
    if paid <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    if paid > position.balance:
        raise ValidationError(
            f"Payment amount ({paid}) exceeds outstanding balance ({position.balance})",
            details={"balance": str(position.balance)},
        )
    new_paid = position.paid_amount + paid
    return LedgerPosition(amount=position.amount, paid_amount=new_paid, balance=position.amount - new_paid)


def settle_in_full(amount: Decimal | float | int | str) -> LedgerPosition:
    """Position of an invoice settled by a payment batch."""
    total = to_money(amount)
    return LedgerPosition(amount=total, paid_amount=total, balance=to_money(0))


def is_consistent(amount: Decimal, paid_amount: Decimal, balance: Decimal, *, is_paid_status: bool) -> bool:
    """Check both ledger invariants for a stored invoice row."""
    return amount == paid_amount + balance and is_paid_status == (balance <= 0)
