"""Repository classes providing access to the service-desk state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Every correctness-critical write is a conditional ``UPDATE`` whose
``WHERE`` clause restates the precondition; methods report whether a row
matched and leave the reaction (usually a conflict error) to the caller.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from servicedesk_core.ledger.numbering import batch_prefix, format_batch_number, invoice_prefix, parse_batch_number
from servicedesk_core.models.billing import PaymentProvider, PaymentStatus, SubscriptionStatus
from servicedesk_core.models.invoice import InvoiceStatus, QuoteRequestStatus
from servicedesk_core.models.ticket import TicketStatus
from servicedesk_core.state.tables import (
    InvoiceTable,
    NotificationOutboxTable,
    PaymentBatchTable,
    PaymentTable,
    QuoteRequestTable,
    RatingTable,
    StatusHistoryTable,
    SubscriptionTable,
    TenantTable,
    TicketTable,
    UserTable,
    WebhookReceiptTable,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 500


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


def _advisory_lock_id(key: str) -> int:
    """Stable 63-bit lock id for ``pg_advisory_xact_lock``."""
    return int.from_bytes(hashlib.sha256(key.encode("utf-8")).digest()[:8], "big") & 0x7FFFFFFFFFFFFFFF


async def _advisory_xact_lock(session: AsyncSession, key: str) -> None:
    """Serialise the rest of the transaction on *key* (PostgreSQL only).

    SQLite has single-writer semantics, so no lock is taken there.
    """
    if "postgresql" in _dialect_name(session):
        await session.execute(text("SELECT pg_advisory_xact_lock(:id)"), {"id": _advisory_lock_id(key)})


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``; ``rowcount`` is 0 when
    the row already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(limit, _MAX_PAGE_SIZE)), max(offset, 0)


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


class TenantRepository:
    """Minimal tenant directory; rows are seeded, not managed here."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, name: str, slug: str, *, tenant_id: str | None = None) -> TenantTable:
        row = TenantTable(id=tenant_id or _new_id(), name=name, slug=slug.lower())
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, tenant_id: str) -> TenantTable | None:
        result = await self._session.execute(select(TenantTable).where(TenantTable.id == tenant_id))
        return result.scalar_one_or_none()

    async def get_by_slug(self, slug: str) -> TenantTable | None:
        result = await self._session.execute(select(TenantTable).where(TenantTable.slug == slug.lower()))
        return result.scalar_one_or_none()

    async def list_all(self) -> list[TenantTable]:
        result = await self._session.execute(select(TenantTable).order_by(TenantTable.name))
        return list(result.scalars().all())


class UserRepository:
    """Tenant-scoped user directory."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(
        self,
        *,
        email: str,
        name: str,
        role: str,
        department: str | None = None,
        user_id: str | None = None,
    ) -> UserTable:
        row = UserTable(
            id=user_id or _new_id(),
            tenant_id=self._tenant_id,
            email=email.lower(),
            name=name,
            role=role,
            department=department,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, user_id: str) -> UserTable | None:
        stmt = select(UserTable).where(UserTable.tenant_id == self._tenant_id, UserTable.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, user_ids: list[str]) -> dict[str, UserTable]:
        if not user_ids:
            return {}
        stmt = select(UserTable).where(UserTable.tenant_id == self._tenant_id, UserTable.id.in_(user_ids))
        result = await self._session.execute(stmt)
        return {row.id: row for row in result.scalars().all()}

    async def list_by_roles(self, roles: list[str], *, active_only: bool = True) -> list[UserTable]:
        stmt = select(UserTable).where(UserTable.tenant_id == self._tenant_id, UserTable.role.in_(roles))
        if active_only:
            stmt = stmt.where(UserTable.is_active.is_(True))
        result = await self._session.execute(stmt.order_by(UserTable.name))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


class TicketRepository:
    """Tickets and their append-only status history.

    :meth:`transition` is the only way a ticket's status changes: a
    compare-and-swap on the current status plus exactly one history row.
    History rows are never updated or deleted; no method here does so.
    """

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def next_ticket_number(self, now: datetime) -> str:
        """Return ``TK<epoch ms>``, bumped past the tenant's latest number."""
        candidate = int(now.timestamp() * 1000)
        stmt = select(func.max(TicketTable.ticket_number)).where(
            TicketTable.tenant_id == self._tenant_id,
            TicketTable.ticket_number.startswith("TK"),
        )
        latest = (await self._session.execute(stmt)).scalar_one_or_none()
        if latest and latest[2:].isdigit():
            candidate = max(candidate, int(latest[2:]) + 1)
        return f"TK{candidate}"

    async def create(self, **fields: Any) -> TicketTable:
        """Insert a new ``OPEN`` ticket.  Creation records no history row."""
        now = _utcnow()
        row = TicketTable(
            id=fields.pop("id", None) or _new_id(),
            tenant_id=self._tenant_id,
            status=TicketStatus.OPEN.value,
            ticket_number=fields.pop("ticket_number", None) or await self.next_ticket_number(now),
            created_at=now,
            **fields,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, ticket_id: str) -> TicketTable | None:
        """Fetch a ticket, refreshing any stale copy in the identity map."""
        stmt = (
            select(TicketTable)
            .where(TicketTable.tenant_id == self._tenant_id, TicketTable.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_tickets(
        self,
        *,
        user_id: str | None = None,
        assigned_to_id: str | None = None,
        departments: list[str] | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TicketTable]:
        """Return tickets visible under the given filters, newest first."""
        limit, offset = _page(limit, offset)
        stmt = select(TicketTable).where(TicketTable.tenant_id == self._tenant_id)
        if user_id is not None:
            stmt = stmt.where(TicketTable.user_id == user_id)
        if assigned_to_id is not None:
            stmt = stmt.where(TicketTable.assigned_to_id == assigned_to_id)
        if departments is not None:
            stmt = stmt.where(TicketTable.department.in_(departments))
        if status is not None:
            stmt = stmt.where(TicketTable.status == status)
        stmt = stmt.order_by(TicketTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        ticket_id: str,
        *,
        from_status: TicketStatus,
        to_status: TicketStatus,
        changed_by: str,
        reason: str | None = None,
        values: dict[str, Any] | None = None,
        require_unassigned: bool = False,
        assigned_to: str | None = None,
    ) -> bool:
        """Atomically move a ticket from *from_status* to *to_status*.

        Parameters
        ----------
        ticket_id:
            Ticket to move.
        from_status:
            Status the caller observed; the update matches only if the row
            still has it.
        to_status:
            New status.
        changed_by:
            User id recorded on the history row.
        reason:
            Optional free-text reason recorded on the history row.
        values:
            Additional column values written in the same ``UPDATE``.
        require_unassigned:
            Also require ``assigned_to_id IS NULL`` (assignment race guard).
        assigned_to:
            Also require the ticket to be assigned to this user.

        Returns
        -------
        bool
            ``True`` if the row matched and one history row was appended;
            ``False`` if a concurrent writer got there first (nothing written).
        """
        stmt = update(TicketTable).where(
            TicketTable.tenant_id == self._tenant_id,
            TicketTable.id == ticket_id,
            TicketTable.status == from_status.value,
        )
        if require_unassigned:
            stmt = stmt.where(TicketTable.assigned_to_id.is_(None))
        if assigned_to is not None:
            stmt = stmt.where(TicketTable.assigned_to_id == assigned_to)
        stmt = stmt.values(status=to_status.value, **(values or {}))

        result = await self._session.execute(stmt)
        if (result.rowcount or 0) == 0:  # type: ignore[attr-defined]
            return False

        self._session.add(
            StatusHistoryTable(
                id=_new_id(),
                tenant_id=self._tenant_id,
                ticket_id=ticket_id,
                from_status=from_status.value,
                to_status=to_status.value,
                changed_by_id=changed_by,
                reason=reason,
                created_at=_utcnow(),
            )
        )
        await self._session.flush()
        return True

    async def update_fields(self, ticket_id: str, *, expected_status: TicketStatus, **values: Any) -> bool:
        """Write non-status fields, guarded on the current status."""
        stmt = (
            update(TicketTable)
            .where(
                TicketTable.tenant_id == self._tenant_id,
                TicketTable.id == ticket_id,
                TicketTable.status == expected_status.value,
            )
            .values(**values)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_history(self, ticket_id: str) -> list[StatusHistoryTable]:
        """Return the ticket's history, oldest first."""
        stmt = (
            select(StatusHistoryTable)
            .where(StatusHistoryTable.tenant_id == self._tenant_id, StatusHistoryTable.ticket_id == ticket_id)
            .order_by(StatusHistoryTable.created_at, StatusHistoryTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_history(self, ticket_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(StatusHistoryTable)
            .where(StatusHistoryTable.tenant_id == self._tenant_id, StatusHistoryTable.ticket_id == ticket_id)
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


class QuoteRequestRepository:
    """Per-contractor quote requests for a ticket."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def request(self, ticket_id: str, contractor_id: str, *, requested_by: str, notes: str | None) -> None:
        """Create the request, or reset an existing one back to ``pending``."""
        inserted = await _dialect_upsert_nothing(
            self._session,
            QuoteRequestTable,
            values={
                "id": _new_id(),
                "tenant_id": self._tenant_id,
                "ticket_id": ticket_id,
                "contractor_id": contractor_id,
                "status": QuoteRequestStatus.PENDING.value,
                "notes": notes,
                "requested_by_id": requested_by,
                "created_at": _utcnow(),
            },
            index_elements=["ticket_id", "contractor_id"],
        )
        if (inserted.rowcount or 0) == 0:
            await self._session.execute(
                update(QuoteRequestTable)
                .where(
                    QuoteRequestTable.tenant_id == self._tenant_id,
                    QuoteRequestTable.ticket_id == ticket_id,
                    QuoteRequestTable.contractor_id == contractor_id,
                )
                .values(
                    status=QuoteRequestStatus.PENDING.value,
                    notes=notes,
                    requested_by_id=requested_by,
                    amount=None,
                    description=None,
                    file_url=None,
                    submitted_at=None,
                    responded_at=None,
                )
            )
        await self._session.flush()

    async def get(self, quote_request_id: str) -> QuoteRequestTable | None:
        stmt = (
            select(QuoteRequestTable)
            .where(QuoteRequestTable.tenant_id == self._tenant_id, QuoteRequestTable.id == quote_request_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_contractor(self, ticket_id: str, contractor_id: str) -> QuoteRequestTable | None:
        stmt = (
            select(QuoteRequestTable)
            .where(
                QuoteRequestTable.tenant_id == self._tenant_id,
                QuoteRequestTable.ticket_id == ticket_id,
                QuoteRequestTable.contractor_id == contractor_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_ticket(self, ticket_id: str) -> list[QuoteRequestTable]:
        stmt = (
            select(QuoteRequestTable)
            .where(QuoteRequestTable.tenant_id == self._tenant_id, QuoteRequestTable.ticket_id == ticket_id)
            .order_by(QuoteRequestTable.created_at)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def submit(
        self,
        quote_request_id: str,
        *,
        amount: Decimal,
        description: str,
        file_url: str | None,
    ) -> bool:
        """``pending`` → ``submitted``.  Returns ``False`` if not pending."""
        stmt = (
            update(QuoteRequestTable)
            .where(
                QuoteRequestTable.tenant_id == self._tenant_id,
                QuoteRequestTable.id == quote_request_id,
                QuoteRequestTable.status == QuoteRequestStatus.PENDING.value,
            )
            .values(
                status=QuoteRequestStatus.SUBMITTED.value,
                amount=amount,
                description=description,
                file_url=file_url,
                submitted_at=_utcnow(),
            )
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def award(self, ticket_id: str, quote_request_id: str) -> None:
        """Award one submitted request and reject every other open one."""
        now = _utcnow()
        await self._session.execute(
            update(QuoteRequestTable)
            .where(
                QuoteRequestTable.tenant_id == self._tenant_id,
                QuoteRequestTable.id == quote_request_id,
            )
            .values(status=QuoteRequestStatus.AWARDED.value, responded_at=now)
        )
        await self._session.execute(
            update(QuoteRequestTable)
            .where(
                QuoteRequestTable.tenant_id == self._tenant_id,
                QuoteRequestTable.ticket_id == ticket_id,
                QuoteRequestTable.id != quote_request_id,
                QuoteRequestTable.status.in_([QuoteRequestStatus.PENDING.value, QuoteRequestStatus.SUBMITTED.value]),
            )
            .values(status=QuoteRequestStatus.REJECTED.value, responded_at=now)
        )
        await self._session.flush()

    async def reopen_submitted(self, ticket_id: str) -> int:
        """Return submitted requests to ``pending`` so contractors can resubmit."""
        stmt = (
            update(QuoteRequestTable)
            .where(
                QuoteRequestTable.tenant_id == self._tenant_id,
                QuoteRequestTable.ticket_id == ticket_id,
                QuoteRequestTable.status == QuoteRequestStatus.SUBMITTED.value,
            )
            .values(status=QuoteRequestStatus.PENDING.value, responded_at=_utcnow())
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


class RatingRepository:
    """Contractor ratings; one per ticket and rating user."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(self, ticket_id: str, user_id: str, contractor_id: str | None, **scores: Any) -> bool:
        """Insert a rating.  Returns ``False`` if this user already rated the ticket."""
        result = await _dialect_upsert_nothing(
            self._session,
            RatingTable,
            values={
                "id": _new_id(),
                "tenant_id": self._tenant_id,
                "ticket_id": ticket_id,
                "user_id": user_id,
                "contractor_id": contractor_id,
                "created_at": _utcnow(),
                **scores,
            },
            index_elements=["ticket_id", "user_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def get_for_ticket(self, ticket_id: str) -> RatingTable | None:
        stmt = select(RatingTable).where(RatingTable.tenant_id == self._tenant_id, RatingTable.ticket_id == ticket_id)
        result = await self._session.execute(stmt)
        return result.scalars().first()


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """Contractor invoices and their revision chains."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(self, **fields: Any) -> InvoiceTable:
        row = InvoiceTable(id=_new_id(), tenant_id=self._tenant_id, created_at=_utcnow(), **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, invoice_id: str, *, for_update: bool = False) -> InvoiceTable | None:
        """Fetch an invoice; *for_update* row-locks it on PostgreSQL."""
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, invoice_ids: list[str]) -> list[InvoiceTable]:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.id.in_(invoice_ids))
            .execution_options(populate_existing=True)
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_active_for_ticket(self, ticket_id: str) -> InvoiceTable | None:
        stmt = (
            select(InvoiceTable)
            .where(
                InvoiceTable.tenant_id == self._tenant_id,
                InvoiceTable.ticket_id == ticket_id,
                InvoiceTable.is_active.is_(True),
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_invoices(
        self,
        *,
        contractor_id: str | None = None,
        status: str | None = None,
        active_only: bool = True,
        limit: int = 100,
        offset: int = 0,
    ) -> list[InvoiceTable]:
        limit, offset = _page(limit, offset)
        stmt = select(InvoiceTable).where(InvoiceTable.tenant_id == self._tenant_id)
        if contractor_id is not None:
            stmt = stmt.where(InvoiceTable.contractor_id == contractor_id)
        if status is not None:
            stmt = stmt.where(InvoiceTable.status == status)
        if active_only:
            stmt = stmt.where(InvoiceTable.is_active.is_(True))
        stmt = stmt.order_by(InvoiceTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def deactivate_rejected(self, invoice_id: str) -> bool:
        """Retire a rejected head revision.  ``False`` if it is no longer one."""
        stmt = (
            update(InvoiceTable)
            .where(
                InvoiceTable.tenant_id == self._tenant_id,
                InvoiceTable.id == invoice_id,
                InvoiceTable.is_active.is_(True),
                InvoiceTable.status == InvoiceStatus.REJECTED.value,
            )
            .values(is_active=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def change_status(
        self,
        invoice_id: str,
        *,
        from_statuses: list[InvoiceStatus],
        to_status: InvoiceStatus,
        unpaid_only: bool = False,
        **values: Any,
    ) -> bool:
        """Conditional status change on the active revision.

        ``False`` if the status moved meanwhile, the revision was superseded,
        or (with *unpaid_only*) a payment was recorded against it.
        """
        conditions = [
            InvoiceTable.tenant_id == self._tenant_id,
            InvoiceTable.id == invoice_id,
            InvoiceTable.is_active.is_(True),
            InvoiceTable.status.in_([s.value for s in from_statuses]),
        ]
        if unpaid_only:
            conditions.append(InvoiceTable.paid_amount == 0)
        stmt = update(InvoiceTable).where(*conditions).values(status=to_status.value, **values)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def update_fields(self, invoice_id: str, **values: Any) -> None:
        await self._session.execute(
            update(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.id == invoice_id)
            .values(**values)
        )
        await self._session.flush()

    async def revision_chain(self, invoice_id: str) -> list[InvoiceTable]:
        """Return every revision of the chain containing *invoice_id*, oldest first."""
        start = await self.get(invoice_id)
        if start is None:
            return []
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.ticket_id == start.ticket_id)
            .order_by(InvoiceTable.revision_number)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_batch(self, batch_id: str) -> list[InvoiceTable]:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.payment_batch_id == batch_id)
            .order_by(InvoiceTable.invoice_number)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class PaymentBatchRepository:
    """Payment batches and their daily sequence numbers."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def next_batch_number(self, day: date) -> str:
        """Allocate the next ``PB{YYYYMMDD}{seq}`` number for *day*.

        Takes a transaction-scoped advisory lock (PostgreSQL) keyed on the
        day before reading the highest existing sequence, so concurrent
        allocations serialise.  The unique constraint on ``batch_number``
        backs this up; see :meth:`create`.
        """
        prefix = batch_prefix(day)
        await _advisory_xact_lock(self._session, f"payment_batch:{prefix}")
        stmt = select(PaymentBatchTable.batch_number).where(
            PaymentBatchTable.batch_number.startswith(prefix, autoescape=True)
        )
        result = await self._session.execute(stmt)
        highest = 0
        for number in result.scalars().all():
            try:
                highest = max(highest, parse_batch_number(number)[1])
            except ValueError:
                logger.warning("Ignoring malformed batch number %s", number)
        return format_batch_number(day, highest + 1)

    async def create(self, day: date, *, max_attempts: int = 3, **fields: Any) -> PaymentBatchTable:
        """Insert a batch with a freshly allocated number.

        The insert runs in a savepoint; if another writer took the same
        number the savepoint is rolled back and a new number allocated, up
        to *max_attempts* times before the ``IntegrityError`` propagates.
        """
        for attempt in range(1, max_attempts + 1):
            number = await self.next_batch_number(day)
            row = PaymentBatchTable(
                id=_new_id(),
                tenant_id=self._tenant_id,
                batch_number=number,
                created_at=_utcnow(),
                **fields,
            )
            try:
                async with self._session.begin_nested():
                    self._session.add(row)
                    await self._session.flush()
            except IntegrityError:
                logger.warning("Batch number %s taken (attempt %d/%d)", number, attempt, max_attempts)
                if attempt == max_attempts:
                    raise
                continue
            return row
        raise RuntimeError("unreachable")

    async def get(self, batch_id: str) -> PaymentBatchTable | None:
        stmt = select(PaymentBatchTable).where(
            PaymentBatchTable.tenant_id == self._tenant_id, PaymentBatchTable.id == batch_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_batches(self, *, limit: int = 50, offset: int = 0) -> list[PaymentBatchTable]:
        limit, offset = _page(limit, offset)
        stmt = (
            select(PaymentBatchTable)
            .where(PaymentBatchTable.tenant_id == self._tenant_id)
            .order_by(PaymentBatchTable.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Subscriptions and payments
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Tenant subscriptions.

    Status changes are compare-and-swap on the current status so that
    the daily check and payment recovery can run repeatedly and
    concurrently without double-applying.
    """

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> SubscriptionTable | None:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.tenant_id == self._tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **fields: Any) -> bool:
        """Insert the tenant's subscription.  ``False`` if one already exists."""
        result = await _dialect_upsert_nothing(
            self._session,
            SubscriptionTable,
            values={
                "id": _new_id(),
                "tenant_id": self._tenant_id,
                "created_at": _utcnow(),
                "updated_at": _utcnow(),
                **fields,
            },
            index_elements=["tenant_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def change_status(
        self,
        subscription_id: str,
        *,
        from_status: SubscriptionStatus,
        to_status: SubscriptionStatus,
        **values: Any,
    ) -> bool:
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription_id,
                SubscriptionTable.status == from_status.value,
            )
            .values(status=to_status.value, **values)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_status(self, statuses: list[SubscriptionStatus]) -> list[SubscriptionTable]:
        """All subscriptions in *statuses*, across tenants (daily check)."""
        stmt = select(SubscriptionTable).where(SubscriptionTable.status.in_([s.value for s in statuses]))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class PaymentRepository:
    """Subscription payments keyed by merchant reference."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(self, **fields: Any) -> PaymentTable:
        row = PaymentTable(id=_new_id(), tenant_id=self._tenant_id, created_at=_utcnow(), **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def ensure(self, reference: str, **fields: Any) -> bool:
        """Insert a pending payment for *reference* unless one exists.

        Returns ``True`` if this call created the row.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            PaymentTable,
            values={
                "id": _new_id(),
                "tenant_id": self._tenant_id,
                "provider_payment_id": reference,
                "status": PaymentStatus.PENDING.value,
                "created_at": _utcnow(),
                "updated_at": _utcnow(),
                **fields,
            },
            index_elements=["provider_payment_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def get(self, payment_id: str) -> PaymentTable | None:
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.tenant_id == self._tenant_id, PaymentTable.id == payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> PaymentTable | None:
        """Look up by merchant reference, which is unique platform-wide."""
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.provider_payment_id == reference)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_any_tenant(self, payment_id: str) -> PaymentTable | None:
        """Platform-scope lookup used by super-admin confirmation."""
        stmt = select(PaymentTable).where(PaymentTable.id == payment_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_success(self, payment_id: str, **values: Any) -> bool:
        """Move a payment to ``success`` at most once.

        Returns ``False`` if it was already successful; the caller must then
        skip every downstream effect.
        """
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.id == payment_id, PaymentTable.status != PaymentStatus.SUCCESS.value)
            .values(status=PaymentStatus.SUCCESS.value, **values)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def mark_failed(self, payment_id: str, reason: str, **values: Any) -> bool:
        """``pending`` → ``failed``.  A successful payment is never downgraded."""
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.id == payment_id, PaymentTable.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.FAILED.value, failure_reason=reason, **values)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def mark_overdue(self, now: datetime) -> int:
        """Fail every pending payment past its due date, across tenants."""
        stmt = (
            update(PaymentTable)
            .where(
                PaymentTable.status == PaymentStatus.PENDING.value,
                PaymentTable.due_date.is_not(None),
                PaymentTable.due_date < now,
            )
            .values(status=PaymentStatus.FAILED.value, failure_reason="overdue")
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def list_payments(self, *, limit: int = 50, offset: int = 0) -> list[PaymentTable]:
        limit, offset = _page(limit, offset)
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.tenant_id == self._tenant_id)
            .order_by(PaymentTable.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_pending_bank_transfers(self) -> list[PaymentTable]:
        """Pending bank transfers across tenants, oldest first."""
        stmt = (
            select(PaymentTable)
            .where(
                PaymentTable.provider == PaymentProvider.BANK_TRANSFER.value,
                PaymentTable.status == PaymentStatus.PENDING.value,
            )
            .order_by(PaymentTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def next_invoice_number(self, tenant_slug: str, when: datetime) -> str:
        """Next ``INV-{SLUG}-{YYYYMM}-{seq}`` number for this tenant's month."""
        prefix = invoice_prefix(tenant_slug, when)
        await _advisory_xact_lock(self._session, f"payment_invoice:{self._tenant_id}:{prefix}")
        stmt = (
            select(func.count())
            .select_from(PaymentTable)
            .where(
                PaymentTable.tenant_id == self._tenant_id,
                PaymentTable.invoice_number.startswith(prefix, autoescape=True),
            )
        )
        result = await self._session.execute(stmt)
        return f"{prefix}{int(result.scalar_one()) + 1:03d}"


class WebhookReceiptRepository:
    """Durable dedupe index for gateway notifications."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, provider: str, dedupe_key: str, payment_id: str | None) -> bool:
        """Record a receipt.  ``False`` means this exact payload was seen before."""
        result = await _dialect_upsert_nothing(
            self._session,
            WebhookReceiptTable,
            values={
                "id": _new_id(),
                "provider": provider,
                "dedupe_key": dedupe_key,
                "payment_id": payment_id,
                "received_at": _utcnow(),
            },
            index_elements=["dedupe_key"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationOutboxRepository:
    """Notification outbox rows, one per recipient."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def add(
        self,
        *,
        recipient_id: str,
        event_type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> NotificationOutboxTable:
        row = NotificationOutboxTable(
            id=_new_id(),
            tenant_id=self._tenant_id,
            recipient_id=recipient_id,
            event_type=event_type,
            title=title,
            message=message,
            data=data,
            status="pending",
            attempts=0,
            created_at=_utcnow(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_recipient(
        self,
        recipient_id: str,
        *,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationOutboxTable]:
        limit, offset = _page(limit, offset)
        stmt = select(NotificationOutboxTable).where(
            NotificationOutboxTable.tenant_id == self._tenant_id,
            NotificationOutboxTable.recipient_id == recipient_id,
        )
        if unread_only:
            stmt = stmt.where(NotificationOutboxTable.read_at.is_(None))
        stmt = stmt.order_by(NotificationOutboxTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_read(self, notification_id: str, recipient_id: str) -> bool:
        stmt = (
            update(NotificationOutboxTable)
            .where(
                NotificationOutboxTable.tenant_id == self._tenant_id,
                NotificationOutboxTable.id == notification_id,
                NotificationOutboxTable.recipient_id == recipient_id,
            )
            .values(read_at=func.coalesce(NotificationOutboxTable.read_at, _utcnow()))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_undelivered(self, *, max_attempts: int, limit: int = 100) -> list[NotificationOutboxTable]:
        """Pending rows across tenants that still have delivery attempts left."""
        stmt = (
            select(NotificationOutboxTable)
            .where(
                NotificationOutboxTable.status == "pending",
                NotificationOutboxTable.attempts < max_attempts,
            )
            .order_by(NotificationOutboxTable.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def record_attempt(self, notification_id: str, *, error: str | None, give_up: bool) -> None:
        """Record one delivery attempt outcome."""
        values: dict[str, Any] = {"attempts": NotificationOutboxTable.attempts + 1, "last_error": error}
        if error is None:
            values.update(status="delivered", delivered_at=_utcnow())
        elif give_up:
            values["status"] = "failed"
        await self._session.execute(
            update(NotificationOutboxTable)
            .where(NotificationOutboxTable.id == notification_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
