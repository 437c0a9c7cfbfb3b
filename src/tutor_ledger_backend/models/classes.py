'''
Class models: the persisted snapshot compared by the linkage hook,
and the API input/output models for reports and status changes.
'''
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..database.db_enums import ClassStatusEnum, ReportAttendanceEnum
from .ledger import ClassRecord, BalanceChange


class ClassSnapshot(BaseModel):
    """
    An immutable copy of a class row as persisted. The hook compares the
    snapshot loaded before mutation with the one written after it.
    """
    id: UUID
    guardian_id: UUID
    student_id: Optional[UUID] = None
    student_name: Optional[str] = None
    status: ClassStatusEnum
    duration: int
    count_absent_for_billing: bool = True
    exempt_from_guardian: bool = False
    deleted: bool = False
    report_submitted: bool = False
    billed_in_invoice_id: Optional[UUID] = None
    charged_hours: Decimal = Decimal("0")

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_orm_class(cls, class_obj) -> "ClassSnapshot":
        return cls(
            id=class_obj.id,
            guardian_id=class_obj.guardian_id,
            student_id=class_obj.student_id,
            student_name=class_obj.student_name,
            status=class_obj.status,
            duration=class_obj.duration or 0,
            count_absent_for_billing=class_obj.count_absent_for_billing,
            exempt_from_guardian=class_obj.exempt_from_guardian,
            deleted=class_obj.deleted,
            report_submitted=class_obj.report_submitted_at is not None,
            billed_in_invoice_id=class_obj.billed_in_invoice_id,
            charged_hours=class_obj.charged_hours or Decimal("0"),
        )

    def to_record(self) -> ClassRecord:
        return ClassRecord(
            id=self.id,
            status=self.status,
            duration=self.duration,
            student_id=self.student_id,
            student_name=self.student_name,
            count_absent_for_billing=self.count_absent_for_billing,
            exempt_from_guardian=self.exempt_from_guardian,
            deleted=self.deleted,
        )


class TransitionDecision(BaseModel):
    status_changed: bool
    duration_changed: bool
    countability_changed: bool
    blocked: bool
    previous_contribution: Decimal
    new_contribution: Decimal
    balance_delta: Decimal
    needs_invoice_sync: bool

    model_config = ConfigDict(frozen=True)

    @property
    def adjusts_balance(self) -> bool:
        return not self.blocked and self.balance_delta != 0


# --- API Input Models ---

class ClassReportInput(BaseModel):
    attendance: ReportAttendanceEnum
    count_absent_for_billing: bool = True
    notes: Optional[str] = Field(default=None, max_length=2000)
    duration: Optional[int] = Field(default=None, ge=1, le=600)


class ClassStatusChangeInput(BaseModel):
    status: ClassStatusEnum
    reason: Optional[str] = Field(default=None, max_length=500)


# --- API Output Models ---

class ClassRead(BaseModel):
    id: UUID
    guardian_id: UUID
    student_id: Optional[UUID] = None
    student_name: Optional[str] = None
    teacher_id: Optional[UUID] = None
    subject: Optional[str] = None
    scheduled_at: datetime
    duration: int
    status: ClassStatusEnum
    count_absent_for_billing: bool
    report_submitted_at: Optional[datetime] = None
    billed_in_invoice_id: Optional[UUID] = None
    exempt_from_guardian: bool
    charged_hours: Decimal
    deleted: bool

    model_config = ConfigDict(from_attributes=True)


class ClassChangeResult(BaseModel):
    class_: ClassRead = Field(alias="class")
    decision: TransitionDecision
    balance_change: Optional[BalanceChange] = None

    model_config = ConfigDict(populate_by_name=True)


class ClassStateChangedInput(BaseModel):
    """Body sent by the scheduling subsystem after it saved a class."""
    current: ClassSnapshot
    previous: Optional[ClassSnapshot] = None
