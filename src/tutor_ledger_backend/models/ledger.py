'''
Plain records fed to the ledger primitives, and the reconciliation outputs.
'''
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..database.db_enums import ClassStatusEnum, ReconciliationModeEnum
from ..database.models import utcnow


# --- 1. Source records (input to core.ledger) ---

class ClassRecord(BaseModel):
    """The subset of a class row the ledger cares about."""
    id: Optional[UUID] = None
    status: ClassStatusEnum
    duration: int = 0
    student_id: Optional[UUID] = None
    student_name: Optional[str] = None
    count_absent_for_billing: bool = True
    exempt_from_guardian: bool = False
    deleted: bool = False

    model_config = ConfigDict(from_attributes=True)


class PaymentRecord(BaseModel):
    amount: Decimal
    method: str
    paid_hours: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class InvoiceRecord(BaseModel):
    id: Optional[UUID] = None
    hourly_rate: Optional[Decimal] = None
    deleted: bool = False
    payment_logs: list[PaymentRecord] = []

    model_config = ConfigDict(from_attributes=True)


class ConsumedHours(BaseModel):
    total: Decimal = Decimal("0")
    per_student: dict[str, Decimal] = {}


# --- 2. Reconciliation output ---

class StudentBreakdown(BaseModel):
    student_key: str
    student_id: Optional[UUID] = None
    student_name: Optional[str] = None
    consumed_hours: Decimal
    hours_remaining: Decimal
    stored_hours_remaining: Optional[Decimal] = None


class ReconciliationResult(BaseModel):
    guardian_id: UUID
    mode: ReconciliationModeEnum
    dry_run: bool
    total_consumed: Decimal
    total_credited: Decimal
    total_refunded: Decimal
    total_hours: Decimal
    previous_total_hours: Decimal
    drift: Decimal
    per_student: list[StudentBreakdown] = []
    issues: list[str] = []
    applied: bool = False


class DriftReport(BaseModel):
    guardian_id: UUID
    stored_total_hours: Decimal
    computed_total_hours: Decimal
    drift: Decimal
    within_tolerance: bool
    auto_total_hours: bool
    mode: Optional[ReconciliationModeEnum] = None
    stale: bool = False
    computed_at: datetime = Field(default_factory=utcnow)


class GuardianBalanceRead(BaseModel):
    guardian_id: UUID
    total_hours: Decimal
    auto_total_hours: bool
    cumulative_consumed_hours: Decimal
    is_active: bool
    students: list[StudentBreakdown] = []


class BalanceChange(BaseModel):
    """Before/after snapshot returned by the atomic balance update."""
    guardian_id: UUID
    delta: Decimal
    before: Decimal
    after: Decimal
