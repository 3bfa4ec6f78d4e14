"""Contractor invoice ledger.

Keeps two invariants on every invoice row:

* ``amount == paid_amount + balance`` and ``status == PAID`` exactly when
  ``balance <= 0`` (arithmetic in :mod:`servicedesk_core.ledger.balances`);
* at most one ``is_active`` invoice per ticket.  A rejected invoice is
  replaced by a new revision: the rejected head is deactivated with a
  conditional update and the new row links back to it through
  ``previous_invoice_id``.  Revisions are never deleted, and only the
  active one can change status.

Once a payment is recorded against an invoice it cannot be reopened for
review.  Payment batches settle the outstanding balance of several
approved invoices at once under a daily ``PB{YYYYMMDD}{seq:03}`` number
allocated by :class:`~servicedesk_core.state.repository.PaymentBatchRepository`.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from servicedesk_core.errors import (
    AuthzError,
    ConflictError,
    NotFoundError,
    PreconditionFailed,
    StateError,
    ValidationError,
)
from servicedesk_core.ledger.balances import LedgerPosition, apply_payment, opening_position, settle_in_full, to_money
from servicedesk_core.models.invoice import InvoiceStatus
from servicedesk_core.models.ticket import BILLABLE_STATUSES, TicketStatus
from servicedesk_core.state.repository import (
    InvoiceRepository,
    PaymentBatchRepository,
    TicketRepository,
    UserRepository,
)
from servicedesk_core.state.tables import InvoiceTable, PaymentBatchTable
from servicedesk_core.workflow.roles import Actor, PlatformRole
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notification_dispatcher import EventType, Notifier

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _money(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def invoice_to_dict(invoice: InvoiceTable) -> dict[str, Any]:
    return {
        "id": invoice.id,
        "ticket_id": invoice.ticket_id,
        "contractor_id": invoice.contractor_id,
        "invoice_number": invoice.invoice_number,
        "amount": _money(invoice.amount),
        "paid_amount": _money(invoice.paid_amount),
        "balance": _money(invoice.balance),
        "quoted_amount": _money(invoice.quoted_amount),
        "status": invoice.status,
        "is_active": invoice.is_active,
        "revision_number": invoice.revision_number,
        "previous_invoice_id": invoice.previous_invoice_id,
        "invoice_file_url": invoice.invoice_file_url,
        "work_description": invoice.work_description,
        "hours_worked": _money(invoice.hours_worked),
        "hourly_rate": _money(invoice.hourly_rate),
        "variation_description": invoice.variation_description,
        "notes": invoice.notes,
        "rejection_reason": invoice.rejection_reason,
        "clarification_request": invoice.clarification_request,
        "clarification_requested_at": _iso(invoice.clarification_requested_at),
        "clarification_response": invoice.clarification_response,
        "clarification_responded_at": _iso(invoice.clarification_responded_at),
        "payment_batch_id": invoice.payment_batch_id,
        "proof_of_payment_url": invoice.proof_of_payment_url,
        "paid_date": _iso(invoice.paid_date),
        "created_at": _iso(invoice.created_at),
        "updated_at": _iso(invoice.updated_at),
    }


def batch_to_dict(batch: PaymentBatchTable, invoices: list[InvoiceTable] | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "id": batch.id,
        "batch_number": batch.batch_number,
        "total_amount": _money(batch.total_amount),
        "invoice_count": batch.invoice_count,
        "pop_file_url": batch.pop_file_url,
        "pop_reference": batch.pop_reference,
        "payment_date": _iso(batch.payment_date),
        "notes": batch.notes,
        "processed_by_id": batch.processed_by_id,
        "created_at": _iso(batch.created_at),
    }
    if invoices is not None:
        result["invoices"] = [invoice_to_dict(inv) for inv in invoices]
    return result


def _optional_money(value: Decimal | float | str | None, name: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{name} must be a number")


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise AuthzError("Only administrators can manage invoices")


class InvoiceLedgerService:
    """Invoice submission, review, payment and batching for one tenant.

    Parameters
    ----------
    session:
        Active database session with RLS tenant context.
    tenant_id:
        The tenant whose ledger is managed.
    notifier:
        Staging buffer for notifications sent after commit.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str, notifier: Notifier | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._notifier = notifier or Notifier()
        self._invoices = InvoiceRepository(session, tenant_id=tenant_id)
        self._batches = PaymentBatchRepository(session, tenant_id=tenant_id)
        self._tickets = TicketRepository(session, tenant_id=tenant_id)
        self._users = UserRepository(session, tenant_id=tenant_id)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_invoice(
        self,
        ticket_id: str,
        actor: Actor,
        *,
        invoice_number: str,
        amount: Decimal | float | str,
        work_description: str | None = None,
        file_url: str | None = None,
        hours_worked: Decimal | float | str | None = None,
        hourly_rate: Decimal | float | str | None = None,
        variation_description: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Submit an invoice (or the next revision of a rejected one).

        Raises
        ------
        AuthzError
            If *actor* is not a contractor.
        NotFoundError
            If the ticket is missing, not completed, or not assigned to *actor*.
        ConflictError
            If the ticket already has an active invoice that is not rejected.
        ValidationError
            If the amount is not positive or the invoice number is blank.
        """
        if actor.role != PlatformRole.CONTRACTOR:
            raise AuthzError("Only contractors can submit invoices")
        invoice_number = (invoice_number or "").strip()
        if not invoice_number:
            raise ValidationError("Invoice number is required")
        try:
            position = opening_position(amount)
        except (InvalidOperation, TypeError):
            raise ValidationError("Invoice amount must be a number")

        ticket = await self._tickets.get(ticket_id)
        if (
            ticket is None
            or TicketStatus(ticket.status) not in BILLABLE_STATUSES
            or ticket.assigned_to_id != actor.user_id
        ):
            raise NotFoundError("Ticket not found or not eligible for invoicing")

        revision = 1
        previous_id: str | None = None
        active = await self._invoices.get_active_for_ticket(ticket.id)
        if active is not None:
            if active.status != InvoiceStatus.REJECTED.value:
                raise ConflictError(
                    "An invoice for this ticket is already active",
                    details={"invoice_id": active.id, "status": active.status},
                )
            if not await self._invoices.deactivate_rejected(active.id):
                raise ConflictError("The rejected invoice was replaced concurrently; reload and retry")
            revision = active.revision_number + 1
            previous_id = active.id

        quoted_amount = ticket.quote_amount if ticket.quote_approved else None
        try:
            invoice = await self._invoices.create(
                ticket_id=ticket.id,
                contractor_id=actor.user_id,
                invoice_number=invoice_number,
                amount=position.amount,
                paid_amount=position.paid_amount,
                balance=position.balance,
                quoted_amount=quoted_amount,
                status=InvoiceStatus.PENDING.value,
                is_active=True,
                revision_number=revision,
                previous_invoice_id=previous_id,
                invoice_file_url=file_url,
                work_description=work_description or ticket.work_description,
                hours_worked=_optional_money(hours_worked, "hours_worked"),
                hourly_rate=_optional_money(hourly_rate, "hourly_rate"),
                variation_description=variation_description,
                notes=notes,
            )
        except IntegrityError:
            raise ConflictError("Another invoice for this ticket was submitted concurrently")

        logger.info(
            "Invoice %s (rev %d) submitted for ticket %s by %s amount=%s",
            invoice.id,
            revision,
            ticket.id,
            actor.user_id,
            position.amount,
        )
        admins = await self._users.list_by_roles([PlatformRole.TENANT_ADMIN.value])
        self._notifier.notify(
            EventType.INVOICE_SUBMITTED,
            tenant_id=self._tenant_id,
            recipient_ids=[a.id for a in admins],
            title="Invoice submitted" if revision == 1 else "Invoice resubmitted",
            message=f"Invoice {invoice_number} for ticket {ticket.ticket_number} awaits review.",
            data={"invoice_id": invoice.id, "ticket_id": ticket.id, "revision_number": revision},
        )
        return invoice_to_dict(invoice)

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def approve(self, invoice_id: str, actor: Actor) -> dict[str, Any]:
        _require_admin(actor)
        invoice = await self._load(invoice_id)
        self._require_status(invoice, InvoiceStatus.PENDING, "approved")
        changed = await self._invoices.change_status(
            invoice.id,
            from_statuses=[InvoiceStatus.PENDING],
            to_status=InvoiceStatus.APPROVED,
            rejection_reason=None,
        )
        if not changed:
            raise ConflictError("Invoice was modified concurrently; reload and retry")
        logger.info("Invoice %s approved by %s", invoice.id, actor.user_id)
        self._notify_contractor(
            invoice,
            EventType.INVOICE_APPROVED,
            "Invoice approved",
            f"Invoice {invoice.invoice_number} was approved for payment.",
        )
        return invoice_to_dict(await self._load(invoice.id))

    async def reject(self, invoice_id: str, actor: Actor, reason: str) -> dict[str, Any]:
        _require_admin(actor)
        reason = (reason or "").strip()
        if not reason:
            raise PreconditionFailed("A rejection reason is required")
        invoice = await self._load(invoice_id)
        self._require_status(invoice, InvoiceStatus.PENDING, "rejected")
        changed = await self._invoices.change_status(
            invoice.id,
            from_statuses=[InvoiceStatus.PENDING],
            to_status=InvoiceStatus.REJECTED,
            rejection_reason=reason,
        )
        if not changed:
            raise ConflictError("Invoice was modified concurrently; reload and retry")
        logger.info("Invoice %s rejected by %s", invoice.id, actor.user_id)
        self._notify_contractor(
            invoice,
            EventType.INVOICE_REJECTED,
            "Invoice rejected",
            f"Invoice {invoice.invoice_number} was rejected: {reason}. Please submit a revised invoice.",
        )
        return invoice_to_dict(await self._load(invoice.id))

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def record_payment(
        self,
        invoice_id: str,
        actor: Actor,
        amount: Decimal | float | str,
        proof_url: str | None = None,
    ) -> dict[str, Any]:
        """Apply a partial or full payment to an approved invoice."""
        _require_admin(actor)
        invoice = await self._load(invoice_id, for_update=True)
        self._require_status(invoice, InvoiceStatus.APPROVED, "paid")
        position = LedgerPosition(amount=invoice.amount, paid_amount=invoice.paid_amount, balance=invoice.balance)
        try:
            updated = apply_payment(position, amount)
        except (InvalidOperation, TypeError):
            raise ValidationError("Payment amount must be a number")

        values: dict[str, Any] = {
            "paid_amount": updated.paid_amount,
            "balance": updated.balance,
        }
        if proof_url:
            values["proof_of_payment_url"] = proof_url
        target = InvoiceStatus.APPROVED
        if updated.is_paid:
            target = InvoiceStatus.PAID
            values["paid_date"] = datetime.now(UTC)

        changed = await self._invoices.change_status(
            invoice.id,
            from_statuses=[InvoiceStatus.APPROVED],
            to_status=target,
            **values,
        )
        if not changed:
            raise ConflictError("Invoice was modified concurrently; reload and retry")

        logger.info(
            "Payment of %s recorded on invoice %s (balance %s -> %s)",
            to_money(amount),
            invoice.id,
            position.balance,
            updated.balance,
        )
        if updated.is_paid:
            self._notify_contractor(
                invoice,
                EventType.INVOICE_PAID,
                "Invoice paid",
                f"Invoice {invoice.invoice_number} has been paid in full.",
            )
        return invoice_to_dict(await self._load(invoice.id))

    async def create_batch(
        self,
        actor: Actor,
        invoice_ids: list[str],
        pop_file_url: str,
        *,
        pop_reference: str | None = None,
        payment_date: datetime | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Settle several approved invoices in one numbered payment batch."""
        _require_admin(actor)
        invoice_ids = list(dict.fromkeys(i for i in invoice_ids if i))
        if not invoice_ids:
            raise PreconditionFailed("Invoice IDs are required")
        if not (pop_file_url or "").strip():
            raise PreconditionFailed("Proof of payment file is required")

        invoices = await self._invoices.get_many(invoice_ids)
        found = {inv.id: inv for inv in invoices}
        unpayable = [
            iid
            for iid in invoice_ids
            if iid not in found or not found[iid].is_active or found[iid].status != InvoiceStatus.APPROVED.value
        ]
        if unpayable:
            raise StateError(
                f"Some invoices are not approved, superseded or not found: {', '.join(unpayable)}",
                details={"invoice_ids": unpayable},
            )

        # Partial payments recorded earlier are not paid out again.
        due = {inv.id: inv.balance for inv in invoices}
        now = datetime.now(UTC)
        total = sum(due.values(), Decimal("0.00"))
        batch = await self._batches.create(
            now.date(),
            total_amount=total,
            invoice_count=len(invoices),
            pop_file_url=pop_file_url,
            pop_reference=pop_reference,
            payment_date=payment_date or now,
            notes=notes,
            processed_by_id=actor.user_id,
        )

        for inv in invoices:
            settled = settle_in_full(inv.amount)
            changed = await self._invoices.change_status(
                inv.id,
                from_statuses=[InvoiceStatus.APPROVED],
                to_status=InvoiceStatus.PAID,
                paid_amount=settled.paid_amount,
                balance=settled.balance,
                payment_batch_id=batch.id,
                paid_date=now,
                proof_of_payment_url=pop_file_url,
            )
            if not changed:
                raise ConflictError(f"Invoice {inv.id} was modified concurrently; reload and retry")

        logger.info(
            "Payment batch %s created by %s: %d invoice(s), total %s",
            batch.batch_number,
            actor.user_id,
            len(invoices),
            total,
        )
        per_contractor: dict[str, list[InvoiceTable]] = defaultdict(list)
        for inv in invoices:
            per_contractor[inv.contractor_id].append(inv)
        for contractor_id, paid in per_contractor.items():
            contractor_total = sum((due[inv.id] for inv in paid), Decimal("0.00"))
            self._notifier.notify(
                EventType.INVOICE_PAID,
                tenant_id=self._tenant_id,
                recipient_ids=[contractor_id],
                title="Payment received",
                message=(
                    f"Payment of {contractor_total} has been processed for "
                    f"{len(paid)} invoice(s). Batch reference: {batch.batch_number}"
                ),
                data={
                    "payment_batch_id": batch.id,
                    "invoice_ids": [inv.id for inv in paid],
                    "amount": str(contractor_total),
                },
            )
        return batch_to_dict(batch, await self._invoices.list_for_batch(batch.id))

    async def list_batches(self, actor: Actor, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        _require_admin(actor)
        return [batch_to_dict(b) for b in await self._batches.list_batches(limit=limit, offset=offset)]

    async def get_batch(self, actor: Actor, batch_id: str) -> dict[str, Any]:
        _require_admin(actor)
        batch = await self._batches.get(batch_id)
        if batch is None:
            raise NotFoundError(f"Payment batch {batch_id} not found")
        return batch_to_dict(batch, await self._invoices.list_for_batch(batch.id))

    # ------------------------------------------------------------------
    # Clarification
    # ------------------------------------------------------------------

    async def request_clarification(self, invoice_id: str, actor: Actor, text: str) -> dict[str, Any]:
        """Ask the contractor a question about an invoice; status is unchanged."""
        _require_admin(actor)
        text = (text or "").strip()
        if not text:
            raise PreconditionFailed("Clarification request text is required")
        invoice = await self._load(invoice_id)
        self._require_active(invoice)
        if invoice.status in (InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value):
            raise StateError(f"Invoice {invoice.invoice_number} is {invoice.status} and can no longer be queried")
        self._require_unpaid(invoice)
        await self._invoices.update_fields(
            invoice.id,
            clarification_request=text,
            clarification_requested_at=datetime.now(UTC),
            clarification_response=None,
            clarification_responded_at=None,
        )
        logger.info("Clarification requested on invoice %s by %s", invoice.id, actor.user_id)
        self._notify_contractor(
            invoice,
            EventType.INVOICE_CLARIFICATION_REQUESTED,
            "Invoice clarification requested",
            f"Clarification requested on invoice {invoice.invoice_number}: {text}",
        )
        return invoice_to_dict(await self._load(invoice.id))

    async def respond_clarification(self, invoice_id: str, actor: Actor, text: str) -> dict[str, Any]:
        """Answer an open clarification request; the invoice returns to ``PENDING``."""
        if actor.role != PlatformRole.CONTRACTOR:
            raise AuthzError("Only the invoicing contractor can respond")
        text = (text or "").strip()
        if not text:
            raise PreconditionFailed("Clarification response text is required")
        invoice = await self._load(invoice_id)
        if invoice.contractor_id != actor.user_id:
            raise AuthzError("This invoice does not belong to you")
        if invoice.clarification_request is None or invoice.clarification_response is not None:
            raise StateError("There is no open clarification request on this invoice")
        self._require_active(invoice)
        self._require_unpaid(invoice)

        changed = await self._invoices.change_status(
            invoice.id,
            from_statuses=[InvoiceStatus.PENDING, InvoiceStatus.APPROVED, InvoiceStatus.REJECTED],
            to_status=InvoiceStatus.PENDING,
            unpaid_only=True,
            clarification_response=text,
            clarification_responded_at=datetime.now(UTC),
        )
        if not changed:
            raise StateError(f"Invoice {invoice.invoice_number} is {invoice.status} and can no longer be changed")

        logger.info("Clarification answered on invoice %s", invoice.id)
        admins = await self._users.list_by_roles([PlatformRole.TENANT_ADMIN.value])
        self._notifier.notify(
            EventType.INVOICE_CLARIFICATION_RESPONDED,
            tenant_id=self._tenant_id,
            recipient_ids=[a.id for a in admins],
            title="Invoice clarification received",
            message=f"The contractor responded on invoice {invoice.invoice_number}.",
            data={"invoice_id": invoice.id},
        )
        return invoice_to_dict(await self._load(invoice.id))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_invoices(
        self,
        actor: Actor,
        *,
        status: InvoiceStatus | None = None,
        active_only: bool = True,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Contractors see their own invoices; admins the whole tenant's."""
        contractor_id: str | None = None
        if actor.role == PlatformRole.CONTRACTOR:
            contractor_id = actor.user_id
        elif not actor.is_admin:
            raise AuthzError("Only contractors and administrators can view invoices")
        rows = await self._invoices.list_invoices(
            contractor_id=contractor_id,
            status=status.value if status is not None else None,
            active_only=active_only,
            limit=limit,
            offset=offset,
        )
        return [invoice_to_dict(inv) for inv in rows]

    async def get_invoice(self, actor: Actor, invoice_id: str) -> dict[str, Any]:
        invoice = await self._load(invoice_id)
        self._check_reader(actor, invoice)
        return invoice_to_dict(invoice)

    async def get_revision_chain(self, actor: Actor, invoice_id: str) -> list[dict[str, Any]]:
        """Every revision submitted for the invoice's ticket, oldest first."""
        invoice = await self._load(invoice_id)
        self._check_reader(actor, invoice)
        return [invoice_to_dict(inv) for inv in await self._invoices.revision_chain(invoice.id)]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, invoice_id: str, *, for_update: bool = False) -> InvoiceTable:
        invoice = await self._invoices.get(invoice_id, for_update=for_update)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    @staticmethod
    def _check_reader(actor: Actor, invoice: InvoiceTable) -> None:
        if actor.is_admin:
            return
        if actor.role == PlatformRole.CONTRACTOR and invoice.contractor_id == actor.user_id:
            return
        raise AuthzError("You cannot view this invoice")

    @staticmethod
    def _require_active(invoice: InvoiceTable) -> None:
        if not invoice.is_active:
            raise StateError(
                f"Invoice {invoice.invoice_number} (rev {invoice.revision_number}) has been superseded by a newer revision",
                details={"status": invoice.status, "is_active": False},
            )

    @staticmethod
    def _require_unpaid(invoice: InvoiceTable) -> None:
        if invoice.paid_amount > 0:
            raise StateError(
                f"Invoice {invoice.invoice_number} already has {invoice.paid_amount} paid against it and cannot be reopened",
                details={"status": invoice.status, "paid_amount": str(invoice.paid_amount)},
            )

    @classmethod
    def _require_status(cls, invoice: InvoiceTable, expected: InvoiceStatus, verb: str) -> None:
        cls._require_active(invoice)
        if invoice.status != expected.value:
            raise StateError(
                f"Only {expected.value} invoices can be {verb}; invoice {invoice.invoice_number} is {invoice.status}",
                details={"status": invoice.status},
            )

    def _notify_contractor(self, invoice: InvoiceTable, event: EventType, title: str, message: str) -> None:
        self._notifier.notify(
            event,
            tenant_id=self._tenant_id,
            recipient_ids=[invoice.contractor_id],
            title=title,
            message=message,
            data={"invoice_id": invoice.id, "ticket_id": invoice.ticket_id},
        )
