import pytest
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession

from src.tutor_ledger_backend.database import models as db_models
from src.tutor_ledger_backend.database.models import utcnow
from src.tutor_ledger_backend.database.db_enums import (
    AuditActionEnum,
    ClassStatusEnum,
    InvoiceActivityEnum,
    InvoiceStatusEnum,
    ReportAttendanceEnum,
)
from src.tutor_ledger_backend.models.classes import ClassReportInput, ClassSnapshot
from src.tutor_ledger_backend.models.invoice import CoverageInput, GenerateInvoiceInput, PaymentInput
from src.tutor_ledger_backend.models.token import Actor
from src.tutor_ledger_backend.services.audit_service import AuditService
from src.tutor_ledger_backend.services.class_service import ClassService
from src.tutor_ledger_backend.services.invoice_service import InvoiceService
from src.tutor_ledger_backend.services.notification_service import NotificationService, OPERATOR_RECIPIENT
from src.tutor_ledger_backend.common.exceptions import StateConflictError
from tests.constants import PERIOD_START, PERIOD_END

ATTENDED = ClassReportInput(attendance=ReportAttendanceEnum.ATTENDED)


@pytest.fixture(scope="function")
async def lesson(db_session: AsyncSession, guardian: db_models.Guardians, make_class) -> db_models.Classes:
    """A single upcoming 60-minute lesson."""
    class_obj = make_class(guardian, scheduled_at=PERIOD_START.replace(day=4, hour=17))
    await db_session.flush()
    return class_obj


@pytest.mark.anyio
class TestClassReports:

    async def test_attended_report_debits_hours(
        self,
        class_service: ClassService,
        audit_service: AuditService,
        guardian: db_models.Guardians,
        lesson: db_models.Classes,
        teacher_actor: Actor
    ):
        result = await class_service.submit_class_report(lesson.id, ATTENDED, teacher_actor)

        assert result.decision.balance_delta == Decimal("-1.000")
        assert result.balance_change.before == Decimal("0.000")
        assert result.balance_change.after == Decimal("-1.000")
        assert lesson.charged_hours == Decimal("1.000")
        assert lesson.report_submitted_at is not None

        balance = await class_service.balance_service.get_balance(guardian.id)
        assert balance.cumulative_consumed_hours == Decimal("1.000")
        assert balance.students[0].hours_remaining == Decimal("-1.000")

        entries = await audit_service.list_entries(action=AuditActionEnum.CLASS_HOURS_ADJUSTMENT, entity_id=lesson.id)
        assert len(entries) == 1
        assert entries[0].before["total_hours"] == "0.000"
        assert entries[0].after["total_hours"] == "-1.000"

    async def test_resubmitting_the_report_is_idempotent(
        self,
        class_service: ClassService,
        audit_service: AuditService,
        guardian: db_models.Guardians,
        lesson: db_models.Classes,
        teacher_actor: Actor
    ):
        await class_service.submit_class_report(lesson.id, ATTENDED, teacher_actor)
        again = await class_service.submit_class_report(
            lesson.id, ClassReportInput(attendance=ReportAttendanceEnum.ATTENDED, notes="Corrected notes"), teacher_actor
        )

        assert again.decision.blocked
        assert again.balance_change is None
        balance = await class_service.balance_service.get_balance(guardian.id)
        assert balance.total_hours == Decimal("-1.000")
        assert len(await audit_service.list_entries(action=AuditActionEnum.CLASS_HOURS_ADJUSTMENT)) == 1

    async def test_duration_correction_charges_only_the_difference(
        self,
        class_service: ClassService,
        guardian: db_models.Guardians,
        lesson: db_models.Classes,
        teacher_actor: Actor
    ):
        await class_service.submit_class_report(lesson.id, ATTENDED, teacher_actor)
        result = await class_service.submit_class_report(
            lesson.id, ClassReportInput(attendance=ReportAttendanceEnum.ATTENDED, duration=90), teacher_actor
        )

        assert result.decision.balance_delta == Decimal("-0.500")
        assert result.balance_change.after == Decimal("-1.500")
        assert lesson.charged_hours == Decimal("1.500")

    async def test_unbillable_absence_then_billable(
        self,
        class_service: ClassService,
        guardian: db_models.Guardians,
        lesson: db_models.Classes,
        teacher_actor: Actor
    ):
        waived = ClassReportInput(attendance=ReportAttendanceEnum.MISSED_BY_STUDENT, count_absent_for_billing=False)
        first = await class_service.submit_class_report(lesson.id, waived, teacher_actor)
        assert first.balance_change is None

        billable = ClassReportInput(attendance=ReportAttendanceEnum.MISSED_BY_STUDENT, count_absent_for_billing=True)
        second = await class_service.submit_class_report(lesson.id, billable, teacher_actor)
        assert second.balance_change.after == Decimal("-1.000")

    async def test_round_trip_restores_the_balance(
        self,
        class_service: ClassService,
        guardian: db_models.Guardians,
        lesson: db_models.Classes,
        teacher_actor: Actor,
        admin_actor: Actor
    ):
        await class_service.submit_class_report(lesson.id, ATTENDED, teacher_actor)
        await class_service.change_class_status(lesson.id, ClassStatusEnum.CANCELLED_BY_ADMIN, admin_actor)
        await class_service.change_class_status(lesson.id, ClassStatusEnum.ATTENDED, admin_actor)
        await class_service.change_class_status(lesson.id, ClassStatusEnum.NO_SHOW_BOTH, admin_actor)

        balance = await class_service.balance_service.get_balance(guardian.id)
        assert balance.total_hours == Decimal("0.000")
        assert lesson.charged_hours == Decimal("0.000")

    async def test_reporting_a_deleted_class_fails(
        self,
        class_service: ClassService,
        lesson: db_models.Classes,
        admin_actor: Actor
    ):
        await class_service.delete_class(lesson.id, admin_actor)
        with pytest.raises(StateConflictError):
            await class_service.submit_class_report(lesson.id, ATTENDED, admin_actor)


@pytest.mark.anyio
class TestStateChangedHook:

    async def _save_as_attended(self, db_session: AsyncSession, lesson: db_models.Classes) -> tuple[ClassSnapshot, ClassSnapshot]:
        """Simulates the scheduler's save: snapshot before, mutate, snapshot after."""
        previous = ClassSnapshot.from_orm_class(lesson)
        lesson.status = ClassStatusEnum.ATTENDED.value
        lesson.report_submitted_at = utcnow()
        await db_session.flush()
        return previous, ClassSnapshot.from_orm_class(lesson)

    async def test_duplicate_delivery_is_applied_once(
        self,
        class_service: ClassService,
        db_session: AsyncSession,
        guardian: db_models.Guardians,
        lesson: db_models.Classes
    ):
        previous, current = await self._save_as_attended(db_session, lesson)

        first = await class_service.on_class_state_changed(current, previous)
        second = await class_service.on_class_state_changed(current, previous)

        assert first.balance_change.after == Decimal("-1.000")
        assert second.balance_change is None
        balance = await class_service.balance_service.get_balance(guardian.id)
        assert balance.total_hours == Decimal("-1.000")

    async def test_charge_is_read_from_the_stored_row(
        self,
        class_service: ClassService,
        db_session: AsyncSession,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes]
    ):
        lesson = attended_classes[0]
        # the scheduler only knows status, duration and references
        previous = ClassSnapshot(**ClassSnapshot.from_orm_class(lesson).model_dump(exclude={"charged_hours"}))
        assert previous.charged_hours == Decimal("0")
        lesson.status = ClassStatusEnum.CANCELLED_BY_TEACHER.value
        await db_session.flush()
        current = ClassSnapshot.from_orm_class(lesson)

        result = await class_service.on_class_state_changed(current, previous)

        assert result.balance_change.delta == Decimal("1.000")
        assert result.balance_change.after == Decimal("-1.000")
        assert lesson.charged_hours == Decimal("0.000")
        balance = await class_service.balance_service.get_balance(guardian.id)
        assert balance.students[0].hours_remaining == Decimal("-1.000")

    async def test_partial_charge_on_the_row_is_topped_up(
        self,
        class_service: ClassService,
        db_session: AsyncSession,
        guardian: db_models.Guardians,
        lesson: db_models.Classes
    ):
        previous, current = await self._save_as_attended(db_session, lesson)
        # an earlier save already charged part of the lesson
        lesson.charged_hours = Decimal("0.250")
        await db_session.flush()

        result = await class_service.on_class_state_changed(current, previous)

        assert result.balance_change.delta == Decimal("-0.750")
        assert lesson.charged_hours == Decimal("1.000")


@pytest.mark.anyio
class TestClassDeletion:

    async def test_deleting_an_attended_class_reverses_its_hours(
        self,
        class_service: ClassService,
        guardian: db_models.Guardians,
        lesson: db_models.Classes,
        teacher_actor: Actor,
        admin_actor: Actor
    ):
        await class_service.submit_class_report(lesson.id, ATTENDED, teacher_actor)
        result = await class_service.delete_class(lesson.id, admin_actor, "Duplicate booking")

        assert result.class_.deleted is True
        assert result.balance_change.after == Decimal("0.000")
        with pytest.raises(StateConflictError):
            await class_service.delete_class(lesson.id, admin_actor)

    async def test_deleting_a_class_on_a_paid_invoice_alerts_operators(
        self,
        class_service: ClassService,
        invoice_service: InvoiceService,
        notification_service: NotificationService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        draft = await invoice_service.generate_invoice(
            GenerateInvoiceInput(guardian_id=guardian.id, period_start=PERIOD_START, period_end=PERIOD_END),
            admin_actor
        )
        await invoice_service.publish_invoice(draft.id, admin_actor)
        await invoice_service.apply_payment(draft.id, PaymentInput(amount=Decimal("25")), admin_actor)

        await class_service.delete_class(attended_classes[0].id, admin_actor)

        invoice = await invoice_service.get_invoice(draft.id)
        # money on a settled invoice only moves through adjustments
        assert invoice.status == InvoiceStatusEnum.PAID.value
        assert len(invoice.items) == 2
        assert invoice.activity_log[-1].action == InvoiceActivityEnum.NOTE.value

        pending = await notification_service.list_pending()
        assert [n.recipient for n in pending] == [OPERATOR_RECIPIENT]
        # paid 2.0 hours, consumed 2.0, then one class reversed
        balance = await class_service.balance_service.get_balance(guardian.id)
        assert balance.total_hours == Decimal("1.000")
