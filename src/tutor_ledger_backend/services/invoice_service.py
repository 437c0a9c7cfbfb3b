'''
Invoice Lifecycle Manager.

draft -> sent -> partially_paid -> paid -> {refunded, adjusted}, with
sent/partially_paid -> overdue once the due date passes. Payment
application and item mutation are serialized per invoice.
'''
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.engine import get_db_session
from ..database import models as db_models
from ..database.models import utcnow
from ..database.db_enums import (
    AuditActionEnum,
    AuditEntityEnum,
    ClassStatusEnum,
    InvoiceActivityEnum,
    InvoiceStatusEnum,
    NON_CREDITING_METHODS,
    OverpaymentPolicyEnum,
)
from ..models.invoice import GenerateInvoiceInput, ItemsUpdateInput, PaymentInput
from ..models.guardians import GuardianFinancialSettings
from ..models.token import Actor
from ..core.ledger import ZERO, round_currency, round_hours, to_decimal
from ..core.invoice_math import (
    amount_due,
    compute_totals,
    derive_paid_hours,
    hours_for,
    item_amount,
    select_coverage,
    status_after_payment,
)
from ..common.config import settings
from ..common.exceptions import (
    EmptyInvoiceError,
    InvalidPaymentError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ..common.locks import invoice_locks
from ..common.logger import log
from .audit_service import AuditService, to_jsonable
from .balance_service import BalanceService
from .settings_service import SettingsService

# statuses that still accept payments
PAYABLE_STATUSES = (InvoiceStatusEnum.SENT, InvoiceStatusEnum.PARTIALLY_PAID, InvoiceStatusEnum.OVERDUE)


def is_billable_class(class_obj: db_models.Classes, include_scheduled: bool = False) -> bool:
    status = ClassStatusEnum(class_obj.status)
    if status.is_countable(class_obj.count_absent_for_billing):
        return True
    return include_scheduled and status.is_upcoming()


class InvoiceService:
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        balance_service: Annotated[BalanceService, Depends(BalanceService)],
        audit_service: Annotated[AuditService, Depends(AuditService)],
        settings_service: Annotated[SettingsService, Depends(SettingsService)],
    ):
        self.db = db
        self.balance_service = balance_service
        self.audit_service = audit_service
        self.settings_service = settings_service

    # --- 1. Lookups ---

    async def get_invoice(self, invoice_id: UUID, for_update: bool = False) -> db_models.Invoices:
        stmt = select(db_models.Invoices).filter(
            db_models.Invoices.id == invoice_id,
            db_models.Invoices.deleted.is_(False)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        invoice = result.scalars().first()
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found.", {"invoice_id": str(invoice_id)})
        return invoice

    async def list_invoices(
        self,
        guardian_id: Optional[UUID] = None,
        status: Optional[InvoiceStatusEnum] = None,
    ) -> list[db_models.Invoices]:
        stmt = select(db_models.Invoices).filter(db_models.Invoices.deleted.is_(False))
        if guardian_id:
            stmt = stmt.filter(db_models.Invoices.guardian_id == guardian_id)
        if status:
            stmt = stmt.filter(db_models.Invoices.status == status.value)
        stmt = stmt.order_by(db_models.Invoices.created_at.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_class(self, class_id: UUID) -> db_models.Classes:
        class_obj = await self.db.get(db_models.Classes, class_id)
        if not class_obj:
            raise NotFoundError(f"Class {class_id} not found.", {"class_id": str(class_id)})
        return class_obj

    # --- 2. Internal helpers ---

    def add_activity(
        self,
        invoice: db_models.Invoices,
        action: InvoiceActivityEnum,
        actor: Actor,
        note: Optional[str] = None,
        diff: Optional[dict] = None,
    ) -> db_models.InvoiceActivity:
        entry = db_models.InvoiceActivity(
            id=uuid.uuid4(),
            invoice_id=invoice.id,
            actor=actor.id,
            action=action.value,
            at=utcnow(),
            note=note,
            diff=to_jsonable(diff) if diff else None,
        )
        invoice.activity_log.append(entry)
        return entry

    def recalculate_totals(self, invoice: db_models.Invoices) -> None:
        """Recomputes money totals from the items, using the invoice's own rate/fee fields."""
        frozen_fee = invoice.transfer_fee_amount if invoice.financials_frozen_at else None
        totals = compute_totals(
            [item.amount for item in invoice.items],
            invoice.tax_rate,
            invoice.discount,
            invoice.late_fee,
            invoice.transfer_fee_mode,
            invoice.transfer_fee_value,
            invoice.transfer_fee_waived,
            frozen_fee=frozen_fee,
        )
        invoice.subtotal = totals.subtotal
        invoice.tax = totals.tax
        invoice.transfer_fee_amount = totals.transfer_fee
        invoice.total = totals.total
        invoice.hours_covered = hours_for(item.duration for item in invoice.items)

    def _build_item(self, invoice_id: UUID, class_obj: db_models.Classes, rate: Decimal) -> db_models.InvoiceItems:
        name = class_obj.student_name or "Student"
        return db_models.InvoiceItems(
            id=uuid.uuid4(),
            invoice_id=invoice_id,
            class_id=class_obj.id,
            student_id=class_obj.student_id,
            student_name=class_obj.student_name,
            description=f"{class_obj.subject or 'Lesson'} - {name} ({class_obj.duration} min)",
            date=class_obj.scheduled_at,
            duration=class_obj.duration,
            rate=round_currency(rate),
            amount=item_amount(class_obj.duration, rate),
            class_status=class_obj.status,
        )

    def _apply_financials(self, invoice: db_models.Invoices, financials: GuardianFinancialSettings) -> None:
        """Copies live settings into a draft and re-prices its items."""
        invoice.hourly_rate = financials.hourly_rate
        invoice.transfer_fee_mode = financials.transfer_fee_mode.value
        invoice.transfer_fee_value = financials.transfer_fee_value
        for item in invoice.items:
            item.rate = financials.hourly_rate
            item.amount = item_amount(item.duration, financials.hourly_rate)
        self.recalculate_totals(invoice)

    @staticmethod
    def _new_invoice_number(now: datetime) -> str:
        return f"INV-{now:%Y%m}-{uuid.uuid4().hex[:8].upper()}"

    async def _candidate_classes(
        self,
        guardian_id: UUID,
        period_start: datetime,
        period_end: datetime,
        include_scheduled: bool,
    ) -> list[db_models.Classes]:
        """Unbilled classes of the guardian in the window that can be billed."""
        stmt = select(db_models.Classes).filter(
            db_models.Classes.guardian_id == guardian_id,
            db_models.Classes.deleted.is_(False),
            db_models.Classes.billed_in_invoice_id.is_(None),
            db_models.Classes.excluded_from_billing.is_(False),
            db_models.Classes.exempt_from_guardian.is_(False),
            db_models.Classes.scheduled_at >= period_start,
            db_models.Classes.scheduled_at <= period_end,
        ).order_by(db_models.Classes.scheduled_at)
        result = await self.db.execute(stmt)
        return [c for c in result.scalars().all() if is_billable_class(c, include_scheduled)]

    # --- 3. Lifecycle operations ---

    async def generate_invoice(self, data: GenerateInvoiceInput, actor: Actor) -> db_models.Invoices:
        """Creates a draft invoice from the guardian's unbilled classes in the period."""
        guardian = await self.balance_service.get_guardian(data.guardian_id)
        if not guardian.is_active:
            raise StateConflictError(
                f"Guardian {guardian.id} is inactive; invoices cannot be generated.",
                {"guardian_id": str(guardian.id)}
            )

        financials = self.settings_service.resolve(guardian)
        candidates = await self._candidate_classes(
            guardian.id, data.period_start, data.period_end, data.coverage.include_scheduled
        )
        included, excluded = select_coverage(candidates, data.coverage)

        now = utcnow()
        invoice_id = uuid.uuid4()
        coverage = data.coverage.model_dump(mode='json')
        coverage["excluded_class_ids"] = [str(c.id) for c in excluded]

        invoice = db_models.Invoices(
            id=invoice_id,
            invoice_number=self._new_invoice_number(now),
            guardian_id=guardian.id,
            status=InvoiceStatusEnum.DRAFT.value,
            period_start=data.period_start,
            period_end=data.period_end,
            due_date=data.due_date,
            hourly_rate=financials.hourly_rate,
            transfer_fee_mode=financials.transfer_fee_mode.value,
            transfer_fee_value=financials.transfer_fee_value,
            transfer_fee_amount=ZERO,
            transfer_fee_waived=data.coverage.waive_transfer_fee,
            coverage=coverage,
            tax_rate=to_decimal(data.tax_rate),
            discount=round_currency(data.discount),
            late_fee=round_currency(data.late_fee),
            paid_amount=ZERO,
            adjustment_total=ZERO,
            refunded_amount=ZERO,
            deleted=False,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
            items=[self._build_item(invoice_id, c, financials.hourly_rate) for c in included],
            payment_logs=[],
            activity_log=[],
        )
        for class_obj in included:
            class_obj.billed_in_invoice_id = invoice_id

        self.recalculate_totals(invoice)
        self.add_activity(
            invoice, InvoiceActivityEnum.CREATE, actor,
            note=data.note or f"Generated with {len(included)} item(s); {len(excluded)} excluded by coverage.",
        )
        self.db.add(invoice)
        await self.db.flush()
        log.info(f"Generated draft invoice {invoice.invoice_number} for guardian {guardian.id}: {len(included)} items, total {invoice.total}.")
        return invoice

    async def refresh_draft_financials(self, invoice_id: UUID, actor: Actor) -> db_models.Invoices:
        async with invoice_locks.hold(invoice_id):
            invoice = await self.get_invoice(invoice_id, for_update=True)
            if invoice.status != InvoiceStatusEnum.DRAFT.value or invoice.financials_frozen_at:
                raise StateConflictError(
                    "Financial settings are frozen once an invoice is published.",
                    {"invoice_id": str(invoice.id), "status": invoice.status}
                )
            before = {"hourly_rate": invoice.hourly_rate, "total": invoice.total}
            financials = await self.settings_service.get_guardian_financials(invoice.guardian_id)
            self._apply_financials(invoice, financials)
            self.add_activity(
                invoice, InvoiceActivityEnum.NOTE, actor, note="Draft financials refreshed from guardian settings.",
                diff={"before": before, "after": {"hourly_rate": invoice.hourly_rate, "total": invoice.total}},
            )
            await self.db.flush()
            return invoice

    async def publish_invoice(self, invoice_id: UUID, actor: Actor) -> db_models.Invoices:
        """Freezes the financial snapshot and sends the invoice."""
        async with invoice_locks.hold(invoice_id):
            invoice = await self.get_invoice(invoice_id, for_update=True)
            if invoice.status != InvoiceStatusEnum.DRAFT.value:
                raise StateConflictError(
                    f"Only draft invoices can be published (status: {invoice.status}).",
                    {"invoice_id": str(invoice.id), "status": invoice.status}
                )
            if not invoice.items:
                raise EmptyInvoiceError("Cannot publish an invoice with no items.", {"invoice_id": str(invoice.id)})

            financials = await self.settings_service.get_guardian_financials(invoice.guardian_id)
            self._apply_financials(invoice, financials)

            now = utcnow()
            invoice.financials_frozen_at = now
            invoice.published_at = now
            invoice.status = InvoiceStatusEnum.SENT.value
            if invoice.due_date is None:
                invoice.due_date = now.date() + timedelta(days=settings.INVOICE_DUE_DAYS)

            self.add_activity(
                invoice, InvoiceActivityEnum.STATUS_CHANGE, actor, note="Invoice published.",
                diff={"status": {"from": InvoiceStatusEnum.DRAFT.value, "to": InvoiceStatusEnum.SENT.value},
                      "hourly_rate": invoice.hourly_rate, "transfer_fee_amount": invoice.transfer_fee_amount},
            )
            await self.db.flush()
            log.info(f"Published invoice {invoice.invoice_number} (total {invoice.total}, rate {invoice.hourly_rate}).")
            return invoice

    async def apply_payment(self, invoice_id: UUID, data: PaymentInput, actor: Actor) -> db_models.Invoices:
        """
        Records a payment and credits the guardian's hours.

        The credited hours are `paid_hours` when given, else the share of the
        invoice's covered hours the payment represents. The balance snapshot
        on the log entry comes from the same atomic update that credits it.
        """
        amount = round_currency(data.amount)
        if amount <= 0:
            raise InvalidPaymentError("Payment amount must be greater than zero.", {"amount": str(data.amount)})
        if data.method.value in NON_CREDITING_METHODS:
            raise InvalidPaymentError(
                f"'{data.method.value}' entries cannot be applied as payments; use an adjustment.",
                {"method": data.method.value}
            )

        async with invoice_locks.hold(invoice_id):
            invoice = await self.get_invoice(invoice_id, for_update=True)
            status = InvoiceStatusEnum(invoice.status)
            if status not in PAYABLE_STATUSES:
                raise StateConflictError(
                    f"Invoice in status '{status.value}' cannot accept payments.",
                    {"invoice_id": str(invoice.id), "status": status.value}
                )

            due_before = amount_due(invoice.total, invoice.adjustment_total, invoice.paid_amount)
            excess = round_currency(amount - due_before)
            if excess > 0 and data.overpayment_policy == OverpaymentPolicyEnum.REJECT:
                raise InvalidPaymentError(
                    f"Payment of {amount} exceeds the outstanding balance of {due_before}.",
                    {"amount": str(amount), "amount_due": str(due_before)}
                )
            applied = min(amount, due_before)

            if data.paid_hours is not None:
                paid_hours = round_hours(data.paid_hours)
            else:
                paid_hours = derive_paid_hours(applied, invoice.total, invoice.hours_covered, invoice.hourly_rate)
                if excess > 0 and paid_hours is not None and to_decimal(invoice.hourly_rate) > 0:
                    # overpayment credited as prepaid hours at the frozen rate
                    paid_hours = round_hours(paid_hours + excess / to_decimal(invoice.hourly_rate))
            if paid_hours is None:
                log.warning(f"Invoice {invoice.id} has no usable rate; payment of {amount} credits no hours.")

            if paid_hours is not None and paid_hours != 0:
                # credited hours are billing-mode values
                change = await self.balance_service.apply_delta(
                    invoice.guardian_id, paid_hours, auto_total_hours=False
                )
                balance_before, balance_after = change.before, change.after
            else:
                guardian = await self.balance_service.get_guardian(invoice.guardian_id)
                balance_before = balance_after = round_hours(guardian.total_hours)

            invoice.paid_amount = round_currency(to_decimal(invoice.paid_amount) + amount)
            due_after = amount_due(invoice.total, invoice.adjustment_total, invoice.paid_amount)
            now = utcnow()
            invoice.payment_logs.append(db_models.InvoicePaymentLogs(
                id=uuid.uuid4(),
                invoice_id=invoice.id,
                amount=amount,
                method=data.method.value,
                paid_hours=paid_hours,
                transaction_id=data.transaction_id,
                note=data.note,
                processed_at=now,
                processed_by=actor.id,
                guardian_balance_before=balance_before,
                guardian_balance_after=balance_after,
                invoice_remaining_before=due_before,
                invoice_remaining_after=due_after,
            ))

            new_status = status_after_payment(invoice.paid_amount, invoice.total, invoice.adjustment_total)
            invoice.status = new_status.value
            if new_status == InvoiceStatusEnum.PAID:
                invoice.paid_at = now

            self.add_activity(
                invoice, InvoiceActivityEnum.PAYMENT, actor,
                note=f"Payment of {amount} via {data.method.value}.",
                diff={"status": {"from": status.value, "to": new_status.value},
                      "paid_amount": invoice.paid_amount, "paid_hours": paid_hours},
            )
            await self.audit_service.log_action(
                AuditActionEnum.PAYMENT_APPLIED, AuditEntityEnum.INVOICE, invoice.id, actor,
                before={"total_hours": balance_before, "amount_due": due_before},
                after={"total_hours": balance_after, "amount_due": due_after},
                guardian_id=invoice.guardian_id,
                metadata={"amount": amount, "method": data.method.value, "paid_hours": paid_hours, "excess": max(excess, ZERO)},
            )
            await self.db.flush()
            log.info(f"Applied payment {amount} to invoice {invoice.invoice_number}; guardian balance {balance_before} -> {balance_after}.")
            return invoice

    async def update_invoice_items(self, invoice_id: UUID, data: ItemsUpdateInput, actor: Actor) -> db_models.Invoices:
        """Adds/removes items on a draft, or on a sent invoice with no payment yet."""
        async with invoice_locks.hold(invoice_id):
            invoice = await self.get_invoice(invoice_id, for_update=True)
            editable = invoice.status == InvoiceStatusEnum.DRAFT.value or (
                invoice.status == InvoiceStatusEnum.SENT.value and to_decimal(invoice.paid_amount) == 0
            )
            if not editable:
                raise StateConflictError(
                    "Items can only be edited on a draft, or a sent invoice with no payments.",
                    {"invoice_id": str(invoice.id), "status": invoice.status}
                )

            removed, added = [], []
            for item_id in data.remove_item_ids:
                item = next((i for i in invoice.items if i.id == item_id), None)
                if not item:
                    raise NotFoundError(f"Item {item_id} not found on invoice {invoice.id}.", {"item_id": str(item_id)})
                if item.class_id:
                    class_obj = await self.db.get(db_models.Classes, item.class_id)
                    if class_obj and class_obj.billed_in_invoice_id == invoice.id:
                        class_obj.billed_in_invoice_id = None
                invoice.items.remove(item)
                removed.append(item_id)

            for class_id in data.add_class_ids:
                class_obj = await self.get_class(class_id)
                if class_obj.guardian_id != invoice.guardian_id:
                    raise ValidationError("Class belongs to a different guardian.", {"class_id": str(class_id)})
                if class_obj.deleted:
                    raise ValidationError("Deleted classes cannot be billed.", {"class_id": str(class_id)})
                if class_obj.billed_in_invoice_id is not None:
                    raise StateConflictError(
                        "Class is already billed on an invoice.",
                        {"class_id": str(class_id), "invoice_id": str(class_obj.billed_in_invoice_id)}
                    )
                if not is_billable_class(class_obj, include_scheduled=True):
                    raise ValidationError(
                        f"Class in status '{class_obj.status}' is not billable.", {"class_id": str(class_id)}
                    )
                invoice.items.append(self._build_item(invoice.id, class_obj, invoice.hourly_rate))
                class_obj.billed_in_invoice_id = invoice.id
                class_obj.excluded_from_billing = False
                added.append(class_id)

            before_total = invoice.total
            self.recalculate_totals(invoice)
            self.add_activity(
                invoice, InvoiceActivityEnum.ITEM_UPDATE, actor,
                note=f"{len(added)} item(s) added, {len(removed)} removed.",
                diff={"added_class_ids": added, "removed_item_ids": removed,
                      "total": {"from": before_total, "to": invoice.total}},
            )
            await self.db.flush()
            return invoice

    async def recalculate_items_for_class(self, class_obj: db_models.Classes, actor: Actor) -> Optional[db_models.Invoices]:
        """
        Brings the invoice item of a billed class in line with the class.

        Open invoices are re-priced until payment starts (a cancelled or
        deleted class drops off a draft or unpaid invoice). Once money has been
        received, the invoice only records the new class status; money on it
        moves through the adjustment engine.
        """
        invoice_id = class_obj.billed_in_invoice_id
        if invoice_id is None:
            return None

        async with invoice_locks.hold(invoice_id):
            try:
                invoice = await self.get_invoice(invoice_id, for_update=True)
            except NotFoundError:
                log.warning(f"Class {class_obj.id} points at missing invoice {invoice_id}; unlinking.")
                class_obj.billed_in_invoice_id = None
                return None

            item = next((i for i in invoice.items if i.class_id == class_obj.id), None)
            if item is None:
                return invoice

            status = InvoiceStatusEnum(invoice.status)
            still_billable = not class_obj.deleted and is_billable_class(class_obj, include_scheduled=True)
            payment_started = to_decimal(invoice.paid_amount) > 0
            open_for_edit = status == InvoiceStatusEnum.DRAFT or status in PAYABLE_STATUSES

            if status.is_settled() or status == InvoiceStatusEnum.CANCELLED or payment_started:
                item.class_status = class_obj.status
                self.add_activity(
                    invoice, InvoiceActivityEnum.NOTE, actor,
                    note=f"Class {class_obj.id} is now '{class_obj.status}'"
                         f"{' (deleted)' if class_obj.deleted else ''}; use an adjustment to change amounts.",
                )
            elif not still_billable and open_for_edit:
                invoice.items.remove(item)
                class_obj.billed_in_invoice_id = None
                self.recalculate_totals(invoice)
                self.add_activity(
                    invoice, InvoiceActivityEnum.ITEM_UPDATE, actor,
                    note=f"Item for class {class_obj.id} removed ({class_obj.status}).",
                    diff={"removed_item_ids": [item.id], "total": invoice.total},
                )
            else:
                item.class_status = class_obj.status
                item.duration = class_obj.duration
                item.amount = item_amount(class_obj.duration, item.rate)
                self.recalculate_totals(invoice)
                self.add_activity(
                    invoice, InvoiceActivityEnum.ITEM_UPDATE, actor,
                    note=f"Item for class {class_obj.id} recalculated.",
                    diff={"item_id": item.id, "duration": item.duration, "amount": item.amount, "total": invoice.total},
                )
            await self.db.flush()
            return invoice

    async def mark_overdue_invoices(self, today: Optional[date] = None) -> list[db_models.Invoices]:
        today = today or utcnow().date()
        stmt = select(db_models.Invoices).filter(
            db_models.Invoices.deleted.is_(False),
            db_models.Invoices.status.in_([InvoiceStatusEnum.SENT.value, InvoiceStatusEnum.PARTIALLY_PAID.value]),
            db_models.Invoices.due_date.is_not(None),
            db_models.Invoices.due_date < today,
        )
        result = await self.db.execute(stmt)
        overdue = list(result.scalars().all())
        system = Actor.system()
        for invoice in overdue:
            previous = invoice.status
            invoice.status = InvoiceStatusEnum.OVERDUE.value
            self.add_activity(
                invoice, InvoiceActivityEnum.STATUS_CHANGE, system, note="Marked overdue.",
                diff={"status": {"from": previous, "to": InvoiceStatusEnum.OVERDUE.value}},
            )
        await self.db.flush()
        if overdue:
            log.info(f"Marked {len(overdue)} invoice(s) overdue as of {today}.")
        return overdue

    async def cancel_invoice(self, invoice_id: UUID, actor: Actor, reason: Optional[str] = None) -> db_models.Invoices:
        async with invoice_locks.hold(invoice_id):
            invoice = await self.get_invoice(invoice_id, for_update=True)
            status = InvoiceStatusEnum(invoice.status)
            if status not in (InvoiceStatusEnum.DRAFT, InvoiceStatusEnum.SENT, InvoiceStatusEnum.OVERDUE) \
                    or to_decimal(invoice.paid_amount) > 0:
                raise StateConflictError(
                    "Only unpaid invoices can be cancelled; paid invoices are corrected with adjustments.",
                    {"invoice_id": str(invoice.id), "status": status.value}
                )
            await self.db.execute(
                update(db_models.Classes)
                .where(db_models.Classes.billed_in_invoice_id == invoice.id)
                .values(billed_in_invoice_id=None)
            )
            invoice.status = InvoiceStatusEnum.CANCELLED.value
            self.add_activity(
                invoice, InvoiceActivityEnum.STATUS_CHANGE, actor, note=reason or "Invoice cancelled.",
                diff={"status": {"from": status.value, "to": InvoiceStatusEnum.CANCELLED.value}},
            )
            await self.db.flush()
            log.info(f"Cancelled invoice {invoice.invoice_number}.")
            return invoice
