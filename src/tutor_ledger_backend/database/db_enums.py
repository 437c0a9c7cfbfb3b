'''
Static enums shared by the ORM, the pydantic models and the services.
'''
import enum


class ListableEnum(str, enum.Enum):
    """A custom Enum base class that can list all member names."""
    @classmethod
    def get_all_names(cls) -> list[str]:
        return [member.value for member in cls]


class ActorRole(ListableEnum):
    ADMIN = "admin"
    TEACHER = "teacher"
    SYSTEM = "system"


class ClassStatusEnum(ListableEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ATTENDED = "attended"
    MISSED_BY_STUDENT = "missed_by_student"
    CANCELLED_BY_TEACHER = "cancelled_by_teacher"
    CANCELLED_BY_STUDENT = "cancelled_by_student"
    CANCELLED_BY_GUARDIAN = "cancelled_by_guardian"
    CANCELLED_BY_ADMIN = "cancelled_by_admin"
    NO_SHOW_BOTH = "no_show_both"
    ABSENT = "absent"  # legacy
    CANCELLED = "cancelled"  # legacy

    def is_countable(self, count_absent_for_billing: bool = True) -> bool:
        """
        True when this outcome debits hours from the guardian.
        `missed_by_student` only counts when the report marks it billable.
        """
        if self is ClassStatusEnum.MISSED_BY_STUDENT:
            return count_absent_for_billing
        return self in (ClassStatusEnum.ATTENDED, ClassStatusEnum.ABSENT)

    def is_cancelled(self) -> bool:
        return self.value.startswith("cancelled") or self is ClassStatusEnum.NO_SHOW_BOTH

    def is_upcoming(self) -> bool:
        return self in (ClassStatusEnum.SCHEDULED, ClassStatusEnum.IN_PROGRESS)


class ReportAttendanceEnum(ListableEnum):
    ATTENDED = "attended"
    MISSED_BY_STUDENT = "missed_by_student"
    CANCELLED_BY_TEACHER = "cancelled_by_teacher"
    CANCELLED_BY_STUDENT = "cancelled_by_student"
    NO_SHOW_BOTH = "no_show_both"


class InvoiceStatusEnum(ListableEnum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    REFUNDED = "refunded"
    ADJUSTED = "adjusted"
    CANCELLED = "cancelled"

    def is_published(self) -> bool:
        return self not in (InvoiceStatusEnum.DRAFT, InvoiceStatusEnum.CANCELLED)

    def is_settled(self) -> bool:
        """Paid or later: the frozen snapshot may only change through adjustments."""
        return self in (InvoiceStatusEnum.PAID, InvoiceStatusEnum.REFUNDED, InvoiceStatusEnum.ADJUSTED)


class PaymentMethodEnum(ListableEnum):
    MANUAL = "manual"
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    CASH = "cash"
    CHECK = "check"
    REFUND = "refund"
    TIP_DISTRIBUTION = "tip_distribution"


# Payment log entries with these methods never credit hours.
NON_CREDITING_METHODS = frozenset({PaymentMethodEnum.REFUND.value, PaymentMethodEnum.TIP_DISTRIBUTION.value})


class TransferFeeModeEnum(ListableEnum):
    FIXED = "fixed"
    PERCENT = "percent"


class CoverageStrategyEnum(ListableEnum):
    FULL_PERIOD = "full_period"
    CAP_HOURS = "cap_hours"
    CUSTOM_END = "custom_end"
    CUSTOM = "custom"


class OverpaymentPolicyEnum(ListableEnum):
    REJECT = "reject"
    CREDIT = "credit"


class ReconciliationModeEnum(ListableEnum):
    BILLING = "billing"
    STUDENTS = "students"


class AdjustmentTypeEnum(ListableEnum):
    REDUCTION = "reduction"
    REMOVE_LESSONS = "removeLessons"


class RemoveLessonsModeEnum(ListableEnum):
    REFUND = "refund"
    COMPENSATE = "compensate"
    BOTH = "both"


class AuditActionEnum(ListableEnum):
    CLASS_HOURS_ADJUSTMENT = "class_hours_adjustment"
    PAYMENT_APPLIED = "payment_applied"
    HOURS_MANUAL_ADJUST = "hours_manual_adjust"
    HOURS_RECONCILIATION = "hours_reconciliation"
    INVOICE_ADJUSTMENT = "invoice_adjustment"
    CLASS_STATUS_CHANGE = "class_status_change"
    GUARDIAN_STATUS_CHANGE = "guardian_status_change"
    STATUS_UNDO = "status_undo"

    def is_undoable(self) -> bool:
        return self in (AuditActionEnum.CLASS_STATUS_CHANGE, AuditActionEnum.GUARDIAN_STATUS_CHANGE)


class AuditEntityEnum(ListableEnum):
    GUARDIAN = "Guardian"
    CLASS = "Class"
    INVOICE = "Invoice"


class InvoiceActivityEnum(ListableEnum):
    CREATE = "create"
    ITEM_UPDATE = "item_update"
    STATUS_CHANGE = "status_change"
    PAYMENT = "payment"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    COMPENSATE_HOURS = "compensate_hours"
    NOTE = "note"


class NotificationStatusEnum(ListableEnum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
