'''
Invoice models: generation/payment/adjustment inputs and the read models.
'''
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..database.db_enums import (
    ClassStatusEnum,
    CoverageStrategyEnum,
    InvoiceActivityEnum,
    InvoiceStatusEnum,
    OverpaymentPolicyEnum,
    PaymentMethodEnum,
    RemoveLessonsModeEnum,
    TransferFeeModeEnum,
)


# --- API Input Models ---

class CoverageInput(BaseModel):
    """Controls which of the candidate classes are actually billed."""
    strategy: CoverageStrategyEnum = CoverageStrategyEnum.FULL_PERIOD
    max_hours: Optional[Decimal] = Field(default=None, gt=0)
    end_date: Optional[datetime] = None
    class_ids: list[UUID] = []
    include_scheduled: bool = False
    waive_transfer_fee: bool = False

    @model_validator(mode='after')
    def check_strategy_fields(self) -> 'CoverageInput':
        if self.strategy == CoverageStrategyEnum.CAP_HOURS and self.max_hours is None:
            raise ValueError("max_hours is required for the 'cap_hours' strategy.")
        if self.strategy == CoverageStrategyEnum.CUSTOM_END and self.end_date is None:
            raise ValueError("end_date is required for the 'custom_end' strategy.")
        if self.strategy == CoverageStrategyEnum.CUSTOM and not self.class_ids:
            raise ValueError("class_ids is required for the 'custom' strategy.")
        return self


class GenerateInvoiceInput(BaseModel):
    guardian_id: UUID
    period_start: datetime
    period_end: datetime
    coverage: CoverageInput = Field(default_factory=CoverageInput)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    late_fee: Decimal = Field(default=Decimal("0"), ge=0)
    due_date: Optional[date] = None
    note: Optional[str] = None

    @model_validator(mode='after')
    def check_period(self) -> 'GenerateInvoiceInput':
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start.")
        return self


class PaymentInput(BaseModel):
    # amount is validated by the service so that it raises InvalidPaymentError
    amount: Decimal
    method: PaymentMethodEnum = PaymentMethodEnum.MANUAL
    paid_hours: Optional[Decimal] = Field(default=None, ge=0)
    transaction_id: Optional[str] = None
    note: Optional[str] = None
    overpayment_policy: OverpaymentPolicyEnum = OverpaymentPolicyEnum.REJECT


class ItemsUpdateInput(BaseModel):
    add_class_ids: list[UUID] = []
    remove_item_ids: list[UUID] = []


class ReductionAdjustment(BaseModel):
    type: Literal["reduction"] = "reduction"
    amount: Decimal
    refund_hours: Decimal = Field(default=Decimal("0"), ge=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class RemoveLessonsAdjustment(BaseModel):
    type: Literal["removeLessons"] = "removeLessons"
    item_ids: list[UUID] = Field(min_length=1)
    mode: RemoveLessonsModeEnum = RemoveLessonsModeEnum.REFUND
    reason: Optional[str] = Field(default=None, max_length=500)


AdjustmentInput = Annotated[
    Union[ReductionAdjustment, RemoveLessonsAdjustment],
    Field(discriminator="type")
]


class AdjustmentRequest(BaseModel):
    """Request body wrapper so the discriminated union validates in FastAPI."""
    adjustment: AdjustmentInput


# --- Internal Models ---

class InvoiceTotals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    base: Decimal
    transfer_fee: Decimal
    total: Decimal


# --- API Output Models ---

class InvoiceItemRead(BaseModel):
    id: UUID
    class_id: Optional[UUID] = None
    student_id: Optional[UUID] = None
    student_name: Optional[str] = None
    description: str
    date: datetime
    duration: int
    rate: Decimal
    amount: Decimal
    class_status: Optional[ClassStatusEnum] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentLogRead(BaseModel):
    id: UUID
    amount: Decimal
    method: PaymentMethodEnum
    paid_hours: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    note: Optional[str] = None
    processed_at: datetime
    processed_by: Optional[UUID] = None
    guardian_balance_before: Optional[Decimal] = None
    guardian_balance_after: Optional[Decimal] = None
    invoice_remaining_before: Optional[Decimal] = None
    invoice_remaining_after: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class ActivityRead(BaseModel):
    id: UUID
    actor: Optional[UUID] = None
    action: InvoiceActivityEnum
    at: datetime
    note: Optional[str] = None
    diff: Optional[dict] = None

    model_config = ConfigDict(from_attributes=True)


class GuardianFinancialRead(BaseModel):
    hourly_rate: Decimal
    transfer_fee_mode: TransferFeeModeEnum
    transfer_fee_value: Decimal
    transfer_fee_amount: Decimal
    transfer_fee_waived: bool
    frozen_at: Optional[datetime] = None


class InvoiceRead(BaseModel):
    id: UUID
    invoice_number: str
    guardian_id: UUID
    status: InvoiceStatusEnum
    period_start: datetime
    period_end: datetime
    due_date: Optional[date] = None
    guardian_financial: GuardianFinancialRead
    coverage: Optional[dict] = None
    tax_rate: Decimal
    discount: Decimal
    late_fee: Decimal
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    hours_covered: Decimal
    paid_amount: Decimal
    adjustment_total: Decimal
    refunded_amount: Decimal
    amount_due: Decimal
    published_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    items: list[InvoiceItemRead] = []
    payment_logs: list[PaymentLogRead] = []
    activity_log: list[ActivityRead] = []

    @classmethod
    def from_orm_invoice(cls, invoice) -> 'InvoiceRead':
        """Builds the read model, nesting the frozen financial snapshot."""
        # local import: core.invoice_math imports this module
        from ..core.invoice_math import amount_due
        return cls(
            id=invoice.id,
            invoice_number=invoice.invoice_number,
            guardian_id=invoice.guardian_id,
            status=invoice.status,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            due_date=invoice.due_date,
            guardian_financial=GuardianFinancialRead(
                hourly_rate=invoice.hourly_rate,
                transfer_fee_mode=invoice.transfer_fee_mode,
                transfer_fee_value=invoice.transfer_fee_value,
                transfer_fee_amount=invoice.transfer_fee_amount,
                transfer_fee_waived=invoice.transfer_fee_waived,
                frozen_at=invoice.financials_frozen_at,
            ),
            coverage=invoice.coverage,
            tax_rate=invoice.tax_rate,
            discount=invoice.discount,
            late_fee=invoice.late_fee,
            subtotal=invoice.subtotal,
            tax=invoice.tax,
            total=invoice.total,
            hours_covered=invoice.hours_covered,
            paid_amount=invoice.paid_amount,
            adjustment_total=invoice.adjustment_total,
            refunded_amount=invoice.refunded_amount,
            amount_due=amount_due(invoice.total, invoice.adjustment_total, invoice.paid_amount),
            published_at=invoice.published_at,
            paid_at=invoice.paid_at,
            items=[InvoiceItemRead.model_validate(i) for i in invoice.items],
            payment_logs=[PaymentLogRead.model_validate(p) for p in invoice.payment_logs],
            activity_log=[ActivityRead.model_validate(a) for a in invoice.activity_log],
        )
