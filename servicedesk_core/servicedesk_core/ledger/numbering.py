"""Document number formats.

* Payment batches: ``PB`` + ``YYYYMMDD`` + three-digit daily sequence,
  e.g. ``PB20260115007``.
* Subscription invoices: ``INV-{SLUG}-{YYYYMM}-{seq:03}``.

Sequence allocation itself is a storage concern (serialised in the
repository); these helpers only format and parse.
"""

from __future__ import annotations

import re
from datetime import date, datetime

_BATCH_RE = re.compile(r"^PB(\d{8})(\d{3,})$")


def batch_prefix(day: date) -> str:
    return f"PB{day.strftime('%Y%m%d')}"


def format_batch_number(day: date, sequence: int) -> str:
    """Return the batch number for the *sequence*-th batch on *day* (1-based)."""
    if sequence < 1:
        raise ValueError(f"Batch sequence must be >= 1, got {sequence}")
    return f"{batch_prefix(day)}{sequence:03d}"


def parse_batch_number(batch_number: str) -> tuple[date, int]:
    """Split a batch number into its date and sequence.

    Raises :class:`ValueError` if *batch_number* is malformed.
    """
    match = _BATCH_RE.match(batch_number)
    if not match:
        raise ValueError(f"Malformed batch number: {batch_number!r}")
    day = datetime.strptime(match.group(1), "%Y%m%d").date()
    return day, int(match.group(2))


def invoice_prefix(tenant_slug: str, when: datetime) -> str:
    return f"INV-{tenant_slug.upper()}-{when.strftime('%Y%m')}-"


def format_subscription_invoice_number(tenant_slug: str, when: datetime, sequence: int) -> str:
    return f"{invoice_prefix(tenant_slug, when)}{sequence:03d}"
