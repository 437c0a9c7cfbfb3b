import pytest
import uuid
from datetime import date
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession

from src.tutor_ledger_backend.database import models as db_models
from src.tutor_ledger_backend.database.db_enums import (
    AuditActionEnum,
    ClassStatusEnum,
    CoverageStrategyEnum,
    InvoiceActivityEnum,
    InvoiceStatusEnum,
    OverpaymentPolicyEnum,
    PaymentMethodEnum,
    ReconciliationModeEnum,
    ReportAttendanceEnum,
)
from src.tutor_ledger_backend.models.classes import ClassReportInput
from src.tutor_ledger_backend.models.invoice import CoverageInput, GenerateInvoiceInput, ItemsUpdateInput, PaymentInput
from src.tutor_ledger_backend.models.token import Actor
from src.tutor_ledger_backend.services.audit_service import AuditService
from src.tutor_ledger_backend.services.invoice_service import InvoiceService
from src.tutor_ledger_backend.services.reconciliation_service import ReconciliationService
from src.tutor_ledger_backend.common.exceptions import (
    EmptyInvoiceError,
    InvalidPaymentError,
    NotFoundError,
    StateConflictError,
)
from tests.constants import PERIOD_START, PERIOD_END


def generate_input(guardian: db_models.Guardians, **kwargs) -> GenerateInvoiceInput:
    return GenerateInvoiceInput(guardian_id=guardian.id, period_start=PERIOD_START, period_end=PERIOD_END, **kwargs)


@pytest.mark.anyio
class TestInvoiceGeneration:

    async def test_generate_bills_countable_classes(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        make_class,
        db_session: AsyncSession,
        admin_actor: Actor
    ):
        """Attended lessons are billed; a scheduled one is left out by default."""
        upcoming = make_class(guardian, scheduled_at=PERIOD_START.replace(day=20))
        await db_session.flush()

        invoice = await invoice_service.generate_invoice(generate_input(guardian), admin_actor)

        assert invoice.status == InvoiceStatusEnum.DRAFT.value
        assert {i.class_id for i in invoice.items} == {c.id for c in attended_classes}
        assert invoice.subtotal == Decimal("20.00")
        assert invoice.transfer_fee_amount == Decimal("5.00")
        assert invoice.total == Decimal("25.00")
        assert invoice.hours_covered == Decimal("2.000")
        assert all(c.billed_in_invoice_id == invoice.id for c in attended_classes)
        assert upcoming.billed_in_invoice_id is None
        assert invoice.activity_log[0].action == InvoiceActivityEnum.CREATE.value

    async def test_generate_with_scheduled_classes(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        two_scheduled_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        invoice = await invoice_service.generate_invoice(
            generate_input(guardian, coverage=CoverageInput(include_scheduled=True)), admin_actor
        )
        assert len(invoice.items) == 2
        assert invoice.total == Decimal("25.00")

    async def test_already_billed_classes_are_not_billed_twice(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        await invoice_service.generate_invoice(generate_input(guardian), admin_actor)
        second = await invoice_service.generate_invoice(generate_input(guardian), admin_actor)
        assert second.items == []

    async def test_cap_hours_records_excluded_classes(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        coverage = CoverageInput(strategy=CoverageStrategyEnum.CAP_HOURS, max_hours=Decimal("1.5"))
        invoice = await invoice_service.generate_invoice(generate_input(guardian, coverage=coverage), admin_actor)

        assert len(invoice.items) == 1
        assert invoice.items[0].class_id == attended_classes[0].id
        assert invoice.coverage["excluded_class_ids"] == [str(attended_classes[1].id)]
        assert attended_classes[1].billed_in_invoice_id is None

    async def test_waived_transfer_fee(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        invoice = await invoice_service.generate_invoice(
            generate_input(guardian, coverage=CoverageInput(waive_transfer_fee=True)), admin_actor
        )
        assert invoice.transfer_fee_amount == 0
        assert invoice.total == Decimal("20.00")

    async def test_inactive_guardian_cannot_be_invoiced(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        db_session: AsyncSession,
        admin_actor: Actor
    ):
        guardian.is_active = False
        await db_session.flush()
        with pytest.raises(StateConflictError):
            await invoice_service.generate_invoice(generate_input(guardian), admin_actor)


@pytest.mark.anyio
class TestInvoicePublishing:

    async def test_publish_freezes_financials(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        db_session: AsyncSession,
        admin_actor: Actor
    ):
        """Settings changed after publishing never reach the invoice."""
        draft = await invoice_service.generate_invoice(generate_input(guardian), admin_actor)
        invoice = await invoice_service.publish_invoice(draft.id, admin_actor)

        assert invoice.status == InvoiceStatusEnum.SENT.value
        assert invoice.financials_frozen_at is not None
        assert invoice.due_date is not None

        guardian.hourly_rate = Decimal("40")
        await db_session.flush()
        with pytest.raises(StateConflictError):
            await invoice_service.refresh_draft_financials(invoice.id, admin_actor)
        with pytest.raises(StateConflictError):
            await invoice_service.publish_invoice(invoice.id, admin_actor)

        reloaded = await invoice_service.get_invoice(invoice.id)
        assert reloaded.hourly_rate == Decimal("10.00")
        assert reloaded.total == Decimal("25.00")

    async def test_drafts_follow_live_settings(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        db_session: AsyncSession,
        admin_actor: Actor
    ):
        draft = await invoice_service.generate_invoice(generate_input(guardian), admin_actor)
        guardian.hourly_rate = Decimal("20")
        await db_session.flush()

        refreshed = await invoice_service.refresh_draft_financials(draft.id, admin_actor)

        assert refreshed.hourly_rate == Decimal("20.00")
        assert all(item.amount == Decimal("20.00") for item in refreshed.items)
        assert refreshed.total == Decimal("45.00")

    async def test_publish_reprices_from_current_settings(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        db_session: AsyncSession,
        admin_actor: Actor
    ):
        draft = await invoice_service.generate_invoice(generate_input(guardian), admin_actor)
        guardian.transfer_fee_value = Decimal("7")
        await db_session.flush()

        invoice = await invoice_service.publish_invoice(draft.id, admin_actor)

        assert invoice.transfer_fee_amount == Decimal("7.00")
        assert invoice.total == Decimal("27.00")

    async def test_empty_invoice_cannot_be_published(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        admin_actor: Actor
    ):
        draft = await invoice_service.generate_invoice(generate_input(guardian), admin_actor)
        with pytest.raises(EmptyInvoiceError):
            await invoice_service.publish_invoice(draft.id, admin_actor)

    async def test_unknown_invoice(self, invoice_service: InvoiceService, admin_actor: Actor):
        with pytest.raises(NotFoundError):
            await invoice_service.publish_invoice(uuid.uuid4(), admin_actor)


@pytest.fixture(scope="function")
async def sent_invoice(
    invoice_service: InvoiceService,
    guardian: db_models.Guardians,
    attended_classes: list[db_models.Classes],
    admin_actor: Actor
) -> db_models.Invoices:
    """A published invoice for two attended hours: 20 + fixed fee 5."""
    draft = await invoice_service.generate_invoice(generate_input(guardian), admin_actor)
    return await invoice_service.publish_invoice(draft.id, admin_actor)


@pytest.mark.anyio
class TestPayments:

    async def test_partial_then_full_payment(
        self,
        invoice_service: InvoiceService,
        audit_service: AuditService,
        guardian: db_models.Guardians,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor
    ):
        invoice = await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("10")), admin_actor)

        assert invoice.status == InvoiceStatusEnum.PARTIALLY_PAID.value
        entry = invoice.payment_logs[-1]
        assert entry.paid_hours == Decimal("0.800")
        assert entry.guardian_balance_before == Decimal("-2.000")
        assert entry.guardian_balance_after == Decimal("-1.200")
        assert entry.invoice_remaining_before == Decimal("25.00")
        assert entry.invoice_remaining_after == Decimal("15.00")

        invoice = await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("15")), admin_actor)

        assert invoice.status == InvoiceStatusEnum.PAID.value
        assert invoice.paid_at is not None
        assert invoice.payment_logs[-1].guardian_balance_after == Decimal("0.000")

        entries = await audit_service.list_entries(action=AuditActionEnum.PAYMENT_APPLIED, guardian_id=guardian.id)
        assert len(entries) == 2

    async def test_explicit_paid_hours(
        self,
        invoice_service: InvoiceService,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor
    ):
        invoice = await invoice_service.apply_payment(
            sent_invoice.id, PaymentInput(amount=Decimal("25"), paid_hours=Decimal("3")), admin_actor
        )
        assert invoice.payment_logs[-1].paid_hours == Decimal("3.000")
        assert invoice.payment_logs[-1].guardian_balance_after == Decimal("1.000")

    async def test_overpayment_rejected_by_default(
        self,
        invoice_service: InvoiceService,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor
    ):
        with pytest.raises(InvalidPaymentError):
            await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("30")), admin_actor)
        assert sent_invoice.paid_amount == 0

    async def test_overpayment_credited_as_hours(
        self,
        invoice_service: InvoiceService,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor
    ):
        data = PaymentInput(amount=Decimal("35"), overpayment_policy=OverpaymentPolicyEnum.CREDIT)
        invoice = await invoice_service.apply_payment(sent_invoice.id, data, admin_actor)

        assert invoice.status == InvoiceStatusEnum.PAID.value
        # 2 hours covered plus 10 / 10 of excess
        assert invoice.payment_logs[-1].paid_hours == Decimal("3.000")

    async def test_payment_pins_the_balance_to_billing_mode(
        self,
        invoice_service: InvoiceService,
        reconciliation_service: ReconciliationService,
        guardian: db_models.Guardians,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor
    ):
        assert guardian.auto_total_hours is True

        await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("25")), admin_actor)

        balance = await invoice_service.balance_service.get_balance(guardian.id)
        assert balance.total_hours == Decimal("0.000")
        assert balance.auto_total_hours is False
        report = await reconciliation_service.detect_drift(guardian.id)
        assert report.mode == ReconciliationModeEnum.BILLING
        assert report.within_tolerance

    @pytest.mark.parametrize("amount, method", [
        (Decimal("0"), PaymentMethodEnum.MANUAL),
        (Decimal("-5"), PaymentMethodEnum.CASH),
        (Decimal("5"), PaymentMethodEnum.REFUND),
        (Decimal("5"), PaymentMethodEnum.TIP_DISTRIBUTION),
    ])
    async def test_invalid_payments(
        self,
        invoice_service: InvoiceService,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor,
        amount: Decimal,
        method: PaymentMethodEnum
    ):
        with pytest.raises(InvalidPaymentError):
            await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=amount, method=method), admin_actor)

    async def test_draft_cannot_be_paid(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        draft = await invoice_service.generate_invoice(generate_input(guardian), admin_actor)
        with pytest.raises(StateConflictError):
            await invoice_service.apply_payment(draft.id, PaymentInput(amount=Decimal("5")), admin_actor)

    async def test_paid_invoice_cannot_be_paid_again(
        self,
        invoice_service: InvoiceService,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor
    ):
        await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("25")), admin_actor)
        with pytest.raises(StateConflictError):
            await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("1")), admin_actor)


@pytest.mark.anyio
class TestItemsAndStatus:

    async def test_items_editable_on_draft(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        make_class,
        db_session: AsyncSession,
        admin_actor: Actor
    ):
        coverage = CoverageInput(strategy=CoverageStrategyEnum.CUSTOM, class_ids=[attended_classes[0].id])
        draft = await invoice_service.generate_invoice(generate_input(guardian, coverage=coverage), admin_actor)
        item_id = draft.items[0].id

        invoice = await invoice_service.update_invoice_items(
            draft.id, ItemsUpdateInput(add_class_ids=[attended_classes[1].id], remove_item_ids=[item_id]), admin_actor
        )

        assert [i.class_id for i in invoice.items] == [attended_classes[1].id]
        assert attended_classes[0].billed_in_invoice_id is None
        assert attended_classes[1].billed_in_invoice_id == invoice.id
        assert invoice.total == Decimal("15.00")

    async def test_items_locked_after_payment(
        self,
        invoice_service: InvoiceService,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor
    ):
        await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("5")), admin_actor)
        with pytest.raises(StateConflictError):
            await invoice_service.update_invoice_items(
                sent_invoice.id, ItemsUpdateInput(remove_item_ids=[sent_invoice.items[0].id]), admin_actor
            )

    async def test_mark_overdue(
        self,
        invoice_service: InvoiceService,
        guardian: db_models.Guardians,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        draft = await invoice_service.generate_invoice(
            generate_input(guardian, due_date=date(2026, 10, 7)), admin_actor
        )
        await invoice_service.publish_invoice(draft.id, admin_actor)

        assert await invoice_service.mark_overdue_invoices(today=date(2026, 10, 7)) == []
        overdue = await invoice_service.mark_overdue_invoices(today=date(2026, 10, 8))

        assert [i.id for i in overdue] == [draft.id]
        assert draft.status == InvoiceStatusEnum.OVERDUE.value

        # overdue invoices still accept payment
        paid = await invoice_service.apply_payment(draft.id, PaymentInput(amount=Decimal("25")), admin_actor)
        assert paid.status == InvoiceStatusEnum.PAID.value

    async def test_cancel_unlinks_classes(
        self,
        invoice_service: InvoiceService,
        sent_invoice: db_models.Invoices,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        invoice = await invoice_service.cancel_invoice(sent_invoice.id, admin_actor, "Issued by mistake")

        assert invoice.status == InvoiceStatusEnum.CANCELLED.value
        assert all(c.billed_in_invoice_id is None for c in attended_classes)

    async def test_paid_invoice_cannot_be_cancelled(
        self,
        invoice_service: InvoiceService,
        sent_invoice: db_models.Invoices,
        admin_actor: Actor
    ):
        await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("25")), admin_actor)
        with pytest.raises(StateConflictError):
            await invoice_service.cancel_invoice(sent_invoice.id, admin_actor)

    async def test_cancelling_a_billed_class_reprices_an_unpaid_invoice(
        self,
        invoice_service: InvoiceService,
        class_service,
        sent_invoice: db_models.Invoices,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        await class_service.change_class_status(
            attended_classes[0].id, ClassStatusEnum.CANCELLED_BY_TEACHER, admin_actor
        )

        invoice = await invoice_service.get_invoice(sent_invoice.id)
        assert [i.class_id for i in invoice.items] == [attended_classes[1].id]
        # the published fee stays frozen
        assert invoice.total == Decimal("15.00")
        assert attended_classes[0].billed_in_invoice_id is None

    async def test_class_change_on_a_partially_paid_invoice_only_adds_a_note(
        self,
        invoice_service: InvoiceService,
        class_service,
        sent_invoice: db_models.Invoices,
        attended_classes: list[db_models.Classes],
        admin_actor: Actor
    ):
        await invoice_service.apply_payment(sent_invoice.id, PaymentInput(amount=Decimal("10")), admin_actor)

        result = await class_service.submit_class_report(
            attended_classes[0].id,
            ClassReportInput(attendance=ReportAttendanceEnum.ATTENDED, duration=120),
            admin_actor
        )

        # the longer lesson is still charged against the balance
        assert result.balance_change.delta == Decimal("-1.000")
        invoice = await invoice_service.get_invoice(sent_invoice.id)
        assert invoice.total == Decimal("25.00")
        assert invoice.hours_covered == Decimal("2.000")
        assert invoice.status == InvoiceStatusEnum.PARTIALLY_PAID.value
        assert [i.amount for i in invoice.items] == [Decimal("10.00"), Decimal("10.00")]
        assert invoice.activity_log[-1].action == InvoiceActivityEnum.NOTE.value
