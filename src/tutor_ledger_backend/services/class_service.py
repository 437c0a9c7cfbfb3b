'''
Class-Linkage Hook.

Reacts to a class save by comparing the persisted state loaded *before* the
mutation with the state written by it (see core.class_transition) and moving
the guardian's balance by the net difference, exactly once per transition.
'''
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.engine import get_db_session
from ..database import models as db_models
from ..database.models import utcnow
from ..database.db_enums import AuditActionEnum, AuditEntityEnum, ClassStatusEnum, InvoiceStatusEnum
from ..models.classes import ClassChangeResult, ClassRead, ClassReportInput, ClassSnapshot, TransitionDecision
from ..models.ledger import BalanceChange
from ..models.token import Actor
from ..core.class_transition import evaluate_transition
from ..core.ledger import ZERO, round_hours
from ..common.exceptions import NotFoundError, StateConflictError
from ..common.locks import class_locks
from ..common.logger import log
from .audit_service import AuditService
from .balance_service import BalanceService
from .invoice_service import InvoiceService
from .notification_service import NotificationService


class ClassService:
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        balance_service: Annotated[BalanceService, Depends(BalanceService)],
        audit_service: Annotated[AuditService, Depends(AuditService)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)],
        notification_service: Annotated[NotificationService, Depends(NotificationService)],
    ):
        self.db = db
        self.balance_service = balance_service
        self.audit_service = audit_service
        self.invoice_service = invoice_service
        self.notification_service = notification_service

    async def get_class(self, class_id: UUID, for_update: bool = False) -> db_models.Classes:
        stmt = select(db_models.Classes).filter(db_models.Classes.id == class_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        class_obj = result.scalars().first()
        if not class_obj:
            raise NotFoundError(f"Class {class_id} not found.", {"class_id": str(class_id)})
        return class_obj

    def _result(self, class_obj: db_models.Classes, decision: TransitionDecision,
                change: Optional[BalanceChange]) -> ClassChangeResult:
        return ClassChangeResult(
            class_=ClassRead.model_validate(class_obj),
            decision=decision,
            balance_change=change,
        )

    # --- 1. The hook ---

    async def on_class_state_changed(
        self,
        new: ClassSnapshot,
        previous: Optional[ClassSnapshot],
        actor: Optional[Actor] = None,
    ) -> ClassChangeResult:
        """
        Entry point for the scheduling subsystem after it saved a class.

        `previous` must be the row as it was persisted before the save
        (None for a newly created class). Its `charged_hours` is ignored:
        the charge already applied is read from the locked row.
        """
        actor = actor or Actor.system()
        async with class_locks.hold(new.id):
            class_obj = await self.get_class(new.id, for_update=True)
            if previous is not None:
                charged = round_hours(class_obj.charged_hours or ZERO)
                previous = previous.model_copy(update={"charged_hours": charged})
            decision, change = await self.apply_transition(class_obj, new, previous, actor)
            return self._result(class_obj, decision, change)

    async def apply_transition(
        self,
        class_obj: db_models.Classes,
        new: ClassSnapshot,
        previous: Optional[ClassSnapshot],
        actor: Actor,
        sync_invoice: bool = True,
    ) -> tuple[TransitionDecision, Optional[BalanceChange]]:
        """
        Applies the decision for one transition. Callers hold the class lock,
        or the invoice lock when called from the adjustment engine.
        """
        decision = evaluate_transition(new, previous)
        change = None

        if decision.blocked:
            log.info(
                f"Class {new.id}: report re-submitted with unchanged countable status "
                f"'{new.status.value}'; hour adjustment skipped."
            )
        elif decision.balance_delta != 0:
            change = await self._settle_contribution(class_obj, new, previous, decision, actor)

        if sync_invoice and decision.needs_invoice_sync:
            await self.invoice_service.recalculate_items_for_class(class_obj, actor)

        return decision, change

    async def _settle_contribution(
        self,
        class_obj: db_models.Classes,
        new: ClassSnapshot,
        previous: Optional[ClassSnapshot],
        decision: TransitionDecision,
        actor: Actor,
    ) -> Optional[BalanceChange]:
        expected = previous.charged_hours if previous else ZERO

        # compare-and-set: only one save may move charged_hours away from `expected`
        stmt = (
            update(db_models.Classes)
            .where(
                db_models.Classes.id == class_obj.id,
                db_models.Classes.charged_hours == expected,
            )
            .values(charged_hours=decision.new_contribution)
            .returning(db_models.Classes.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.first() is None:
            current = (await self.db.execute(
                select(db_models.Classes.charged_hours).filter(db_models.Classes.id == class_obj.id)
            )).scalar_one_or_none()
            if current is not None and round_hours(current) == decision.new_contribution:
                # the same transition was delivered twice
                log.info(f"Class {class_obj.id}: transition already applied (charged {current}); skipping.")
                return None
            raise StateConflictError(
                f"Class {class_obj.id} was changed concurrently; reload and retry.",
                {"class_id": str(class_obj.id), "expected_charged_hours": str(expected)}
            )
        class_obj.charged_hours = decision.new_contribution

        delta = decision.balance_delta
        consumed = -delta if delta < 0 else ZERO
        change = await self.balance_service.apply_delta(class_obj.guardian_id, delta, consumed=consumed)
        await self.balance_service.apply_student_delta(class_obj.student_id, delta)

        await self.audit_service.log_action(
            AuditActionEnum.CLASS_HOURS_ADJUSTMENT, AuditEntityEnum.CLASS, class_obj.id, actor,
            before={"status": previous.status if previous else None, "charged_hours": expected,
                    "total_hours": change.before},
            after={"status": new.status, "charged_hours": decision.new_contribution,
                   "total_hours": change.after},
            guardian_id=class_obj.guardian_id,
            metadata={"delta": delta, "status_changed": decision.status_changed,
                      "duration_changed": decision.duration_changed,
                      "previous_duration": previous.duration if previous else None,
                      "duration": new.duration},
        )
        log.info(
            f"Class {class_obj.id} ({previous.status.value if previous else 'new'} -> {new.status.value}): "
            f"guardian {class_obj.guardian_id} hours {change.before} -> {change.after}."
        )
        return change

    # --- 2. Mutations that run through the hook ---

    async def submit_class_report(self, class_id: UUID, data: ClassReportInput, actor: Actor) -> ClassChangeResult:
        async with class_locks.hold(class_id):
            class_obj = await self.get_class(class_id, for_update=True)
            if class_obj.deleted:
                raise StateConflictError("Cannot report on a deleted class.", {"class_id": str(class_id)})
            previous = ClassSnapshot.from_orm_class(class_obj)

            class_obj.status = ClassStatusEnum(data.attendance.value).value
            class_obj.count_absent_for_billing = data.count_absent_for_billing
            class_obj.report_notes = data.notes
            if data.duration is not None:
                class_obj.duration = data.duration
            class_obj.report_submitted_at = utcnow()
            await self.db.flush()

            new = ClassSnapshot.from_orm_class(class_obj)
            decision, change = await self.apply_transition(class_obj, new, previous, actor)
            await self.db.flush()
            return self._result(class_obj, decision, change)

    async def set_class_status(
        self,
        class_id: UUID,
        status: ClassStatusEnum,
        actor: Actor,
        expected_status: Optional[ClassStatusEnum] = None,
    ) -> tuple[db_models.Classes, ClassStatusEnum, TransitionDecision, Optional[BalanceChange]]:
        """
        Sets a class status through the hook. With `expected_status`, fails
        with StateConflictError if the class is no longer in that status.
        """
        async with class_locks.hold(class_id):
            class_obj = await self.get_class(class_id, for_update=True)
            if class_obj.deleted:
                raise StateConflictError("Cannot change the status of a deleted class.", {"class_id": str(class_id)})
            current = ClassStatusEnum(class_obj.status)
            if expected_status is not None and current != expected_status:
                raise StateConflictError(
                    f"Class status is '{current.value}', expected '{expected_status.value}'.",
                    {"class_id": str(class_id), "status": current.value}
                )
            previous = ClassSnapshot.from_orm_class(class_obj)
            class_obj.status = status.value
            await self.db.flush()

            new = ClassSnapshot.from_orm_class(class_obj)
            decision, change = await self.apply_transition(class_obj, new, previous, actor)
            await self.db.flush()
            return class_obj, current, decision, change

    async def change_class_status(
        self,
        class_id: UUID,
        status: ClassStatusEnum,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> ClassChangeResult:
        """An admin's manual status change; audited as undoable."""
        class_obj, previous_status, decision, change = await self.set_class_status(class_id, status, actor)
        if previous_status != status:
            await self.audit_service.log_action(
                AuditActionEnum.CLASS_STATUS_CHANGE, AuditEntityEnum.CLASS, class_obj.id, actor,
                before={"status": previous_status},
                after={"status": status},
                reason=reason,
                guardian_id=class_obj.guardian_id,
                metadata={"balance_delta": decision.balance_delta},
            )
        return self._result(class_obj, decision, change)

    async def delete_class(self, class_id: UUID, actor: Actor, reason: Optional[str] = None) -> ClassChangeResult:
        """
        Controlled deletion: the linked invoice is recalculated first, then the
        class's ledger contribution is reversed and the row soft-deleted.
        """
        async with class_locks.hold(class_id):
            class_obj = await self.get_class(class_id, for_update=True)
            if class_obj.deleted:
                raise StateConflictError("Class is already deleted.", {"class_id": str(class_id)})
            previous = ClassSnapshot.from_orm_class(class_obj)

            class_obj.deleted = True
            class_obj.deleted_at = utcnow()
            await self.db.flush()

            invoice = await self.invoice_service.recalculate_items_for_class(class_obj, actor)
            if invoice is not None and InvoiceStatusEnum(invoice.status).is_settled():
                await self.notification_service.notify_operators(
                    "Deleted class on a settled invoice",
                    f"Class {class_obj.id} was deleted but is billed on settled invoice "
                    f"{invoice.invoice_number}. Apply an adjustment if money or hours must move.",
                    {"class_id": class_obj.id, "invoice_id": invoice.id, "reason": reason},
                )

            new = ClassSnapshot.from_orm_class(class_obj)
            decision, change = await self.apply_transition(class_obj, new, previous, actor, sync_invoice=False)
            await self.db.flush()
            log.info(f"Class {class_obj.id} soft-deleted by {actor.role.value}:{actor.id}.")
            return self._result(class_obj, decision, change)
