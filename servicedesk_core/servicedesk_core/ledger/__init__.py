"""Invoice ledger rules: balance arithmetic and document numbering."""

from servicedesk_core.ledger.balances import (
    LedgerPosition,
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
    invoice_prefix,
    parse_batch_number,
)

__all__ = [
    "LedgerPosition",
    "apply_payment",
    "batch_prefix",
    "format_batch_number",
    "format_subscription_invoice_number",
    "invoice_prefix",
    "is_consistent",
    "opening_position",
    "parse_batch_number",
    "settle_in_full",
    "to_money",
]
