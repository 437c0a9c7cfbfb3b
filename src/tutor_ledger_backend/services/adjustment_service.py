'''
Adjustment Engine: post-payment corrections to settled invoices.

Adjustments never touch the frozen financial snapshot. Money leaving the
invoice is written as a `refund` payment-log entry with a negative amount;
hours clawed back ride on that entry's `paid_hours` so reconciliation sees
them.
'''
import uuid
from decimal import Decimal
from typing import Annotated, Optional, Union
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.engine import get_db_session
from ..database import models as db_models
from ..database.models import utcnow
from ..database.db_enums import (
    AuditActionEnum,
    AuditEntityEnum,
    InvoiceActivityEnum,
    InvoiceStatusEnum,
    PaymentMethodEnum,
    RemoveLessonsModeEnum,
)
from ..models.classes import ClassSnapshot
from ..models.invoice import ReductionAdjustment, RemoveLessonsAdjustment
from ..models.ledger import BalanceChange
from ..models.token import Actor
from ..core.ledger import ZERO, round_currency, round_hours, to_decimal
from ..core.invoice_math import MONEY_EPSILON, amount_due
from ..common.exceptions import NotFoundError, StateConflictError, ValidationError
from ..common.locks import invoice_locks
from ..common.logger import log
from .audit_service import AuditService
from .balance_service import BalanceService
from .class_service import ClassService
from .invoice_service import InvoiceService
from .notification_service import NotificationService, guardian_recipient


class AdjustmentService:
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)],
        class_service: Annotated[ClassService, Depends(ClassService)],
        balance_service: Annotated[BalanceService, Depends(BalanceService)],
        audit_service: Annotated[AuditService, Depends(AuditService)],
        notification_service: Annotated[NotificationService, Depends(NotificationService)],
    ):
        self.db = db
        self.invoice_service = invoice_service
        self.class_service = class_service
        self.balance_service = balance_service
        self.audit_service = audit_service
        self.notification_service = notification_service

    async def apply_post_payment_adjustment(
        self,
        invoice_id: UUID,
        adjustment: Union[ReductionAdjustment, RemoveLessonsAdjustment],
        actor: Actor,
    ) -> db_models.Invoices:
        async with invoice_locks.hold(invoice_id):
            invoice = await self.invoice_service.get_invoice(invoice_id, for_update=True)
            status = InvoiceStatusEnum(invoice.status)
            if not status.is_settled():
                raise StateConflictError(
                    f"Adjustments apply only to paid invoices (status: {status.value}).",
                    {"invoice_id": str(invoice.id), "status": status.value}
                )

            before = {
                "status": status,
                "total": invoice.total,
                "paid_amount": invoice.paid_amount,
                "adjustment_total": invoice.adjustment_total,
                "items": len(invoice.items),
            }
            if isinstance(adjustment, ReductionAdjustment):
                summary = await self._apply_reduction(invoice, adjustment, actor)
            else:
                summary = await self._remove_lessons(invoice, adjustment, actor)

            new_status = InvoiceStatusEnum.REFUNDED if to_decimal(invoice.paid_amount) <= MONEY_EPSILON \
                else InvoiceStatusEnum.ADJUSTED
            invoice.status = new_status.value
            after = {
                "status": new_status,
                "total": invoice.total,
                "paid_amount": invoice.paid_amount,
                "adjustment_total": invoice.adjustment_total,
                "items": len(invoice.items),
            }

            self.invoice_service.add_activity(
                invoice, InvoiceActivityEnum.ADJUSTMENT, actor,
                note=adjustment.reason or f"{adjustment.type} adjustment",
                diff={"before": before, "after": after, **summary},
            )
            await self.audit_service.log_action(
                AuditActionEnum.INVOICE_ADJUSTMENT, AuditEntityEnum.INVOICE, invoice.id, actor,
                before=before,
                after=after,
                reason=adjustment.reason,
                guardian_id=invoice.guardian_id,
                metadata={"type": adjustment.type, **summary},
            )
            await self._notify(invoice, summary)
            await self.db.flush()
            log.info(f"Applied {adjustment.type} adjustment to invoice {invoice.invoice_number}: {summary}.")
            return invoice

    # --- 1. Reduction ---

    async def _apply_reduction(self, invoice: db_models.Invoices, adjustment: ReductionAdjustment, actor: Actor) -> dict:
        amount = round_currency(adjustment.amount)
        if amount <= 0:
            raise ValidationError("Reduction amount must be greater than zero.", {"amount": str(adjustment.amount)})
        if amount > round_currency(invoice.paid_amount):
            raise ValidationError(
                f"Reduction of {amount} exceeds the amount paid ({invoice.paid_amount}).",
                {"amount": str(amount), "paid_amount": str(invoice.paid_amount)}
            )
        refund_hours = round_hours(adjustment.refund_hours)

        change = None
        if refund_hours > 0:
            change = await self.balance_service.apply_delta(
                invoice.guardian_id, -refund_hours, auto_total_hours=False
            )

        self._write_refund(invoice, amount, refund_hours, change, actor, adjustment.reason, adjustment_delta=amount)

        return {
            "refund_amount": amount,
            "refund_hours": refund_hours,
            "hours_delta": -refund_hours,
            "balance_after": change.after if change else None,
        }

    # --- 2. Remove lessons ---

    async def _remove_lessons(self, invoice: db_models.Invoices, adjustment: RemoveLessonsAdjustment, actor: Actor) -> dict:
        items = []
        for item_id in dict.fromkeys(adjustment.item_ids):
            item = next((i for i in invoice.items if i.id == item_id), None)
            if item is None:
                raise NotFoundError(f"Item {item_id} not found on invoice {invoice.id}.", {"item_id": str(item_id)})
            items.append(item)

        refund = adjustment.mode in (RemoveLessonsModeEnum.REFUND, RemoveLessonsModeEnum.BOTH)
        compensate = adjustment.mode in (RemoveLessonsModeEnum.COMPENSATE, RemoveLessonsModeEnum.BOTH)

        removed_amount = round_currency(sum((to_decimal(i.amount) for i in items), ZERO))
        # the rows are deleted with the items; the diff keeps what they were
        removed_items = [
            {"item_id": i.id, "class_id": i.class_id, "description": i.description, "date": i.date,
             "duration": i.duration, "rate": i.rate, "amount": i.amount}
            for i in items
        ]
        hours_delta = ZERO
        last_change: Optional[BalanceChange] = None

        for item in items:
            class_obj = await self.db.get(db_models.Classes, item.class_id) if item.class_id else None
            invoice.items.remove(item)
            if class_obj is None:
                continue

            previous = ClassSnapshot.from_orm_class(class_obj)
            class_obj.billed_in_invoice_id = None
            class_obj.excluded_from_billing = True
            if compensate:
                class_obj.exempt_from_guardian = True
            await self.db.flush()

            if compensate:
                # the hook credits back whatever the class had charged
                new = ClassSnapshot.from_orm_class(class_obj)
                _, change = await self.class_service.apply_transition(
                    class_obj, new, previous, actor, sync_invoice=False
                )
                if change is not None:
                    hours_delta += change.delta
                    last_change = change

        self.invoice_service.recalculate_totals(invoice)

        refund_amount = ZERO
        if refund:
            refund_amount = min(removed_amount, round_currency(invoice.paid_amount))
            if refund_amount > 0:
                self._write_refund(invoice, refund_amount, None, last_change, actor, adjustment.reason)

        if compensate:
            self.invoice_service.add_activity(
                invoice, InvoiceActivityEnum.COMPENSATE_HOURS, actor,
                note=f"{round_hours(hours_delta)} hour(s) restored to the guardian.",
                diff={"item_ids": adjustment.item_ids, "hours_delta": hours_delta},
            )

        return {
            "mode": adjustment.mode.value,
            "removed_item_ids": adjustment.item_ids,
            "removed_items": removed_items,
            "removed_amount": removed_amount,
            "refund_amount": refund_amount,
            "hours_delta": round_hours(hours_delta),
            "balance_after": last_change.after if last_change else None,
        }

    # --- 3. Shared helpers ---

    def _write_refund(
        self,
        invoice: db_models.Invoices,
        amount: Decimal,
        refund_hours: Optional[Decimal],
        change: Optional[BalanceChange],
        actor: Actor,
        note: Optional[str],
        adjustment_delta: Decimal = ZERO,
    ) -> db_models.InvoicePaymentLogs:
        """
        Appends a negative `refund` entry and moves the paid/refunded counters.
        A reduction also lowers what is owed by `adjustment_delta`.
        """
        due_before = amount_due(invoice.total, invoice.adjustment_total, invoice.paid_amount)
        invoice.adjustment_total = round_currency(to_decimal(invoice.adjustment_total) + adjustment_delta)
        invoice.paid_amount = round_currency(to_decimal(invoice.paid_amount) - amount)
        invoice.refunded_amount = round_currency(to_decimal(invoice.refunded_amount) + amount)
        entry = db_models.InvoicePaymentLogs(
            id=uuid.uuid4(),
            invoice_id=invoice.id,
            amount=-amount,
            method=PaymentMethodEnum.REFUND.value,
            paid_hours=refund_hours if refund_hours else None,
            note=note,
            processed_at=utcnow(),
            processed_by=actor.id,
            guardian_balance_before=change.before if change else None,
            guardian_balance_after=change.after if change else None,
            invoice_remaining_before=due_before,
            invoice_remaining_after=amount_due(invoice.total, invoice.adjustment_total, invoice.paid_amount),
        )
        invoice.payment_logs.append(entry)
        self.invoice_service.add_activity(
            invoice, InvoiceActivityEnum.REFUND, actor,
            note=f"Refund of {amount}.",
            diff={"amount": amount, "refund_hours": refund_hours},
        )
        return entry

    async def _notify(self, invoice: db_models.Invoices, summary: dict) -> None:
        hours_delta = to_decimal(summary.get("hours_delta"))
        refund_amount = to_decimal(summary.get("refund_amount"))
        metadata = {"invoice_id": invoice.id, **summary}

        if hours_delta != 0 or refund_amount > 0:
            await self.notification_service.enqueue(
                guardian_recipient(invoice.guardian_id),
                "Invoice adjusted",
                f"Invoice {invoice.invoice_number} was adjusted: refund {refund_amount}, hours {hours_delta:+}.",
                metadata,
            )
            await self.notification_service.notify_operators(
                "Invoice adjustment applied",
                f"Invoice {invoice.invoice_number}: refund {refund_amount}, hours {hours_delta:+}.",
                metadata,
            )

        balance_after = summary.get("balance_after")
        if balance_after is not None and to_decimal(balance_after) < 0:
            await self.notification_service.notify_operators(
                "Guardian balance is negative",
                f"Guardian {invoice.guardian_id} balance is {balance_after} hours after adjusting "
                f"invoice {invoice.invoice_number}.",
                metadata,
            )
            log.warning(f"Guardian {invoice.guardian_id} balance negative ({balance_after}) after adjustment.")
