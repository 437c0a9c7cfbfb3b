'''
Ledger primitives.

Pure, deterministic, order-independent aggregations over source records.
Safe to call repeatedly: used by the incremental hook and by reconciliation.
'''
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Iterable, Optional
from uuid import UUID

from ..database.db_enums import ClassStatusEnum, NON_CREDITING_METHODS, PaymentMethodEnum
from ..models.ledger import ClassRecord, InvoiceRecord, ConsumedHours

ZERO = Decimal("0")
CENT = Decimal("0.01")
MILLI_HOUR = Decimal("0.001")


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default

def round_currency(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)

def round_hours(value: Any) -> Decimal:
    return to_decimal(value).quantize(MILLI_HOUR, rounding=ROUND_HALF_UP)

def minutes_to_hours(minutes: Any) -> Decimal:
    return to_decimal(minutes) / Decimal(60)


def student_key(student_id: Optional[UUID], student_name: Optional[str]) -> str:
    """Strongest available identifier: the explicit id, else a normalized name."""
    if student_id:
        return str(student_id)
    if student_name and student_name.strip():
        return f"name:{' '.join(student_name.lower().split())}"
    return "unknown"


def is_countable(status: ClassStatusEnum | str, count_absent_for_billing: bool = True) -> bool:
    return ClassStatusEnum(status).is_countable(count_absent_for_billing)


def class_contribution(record: ClassRecord) -> Decimal:
    """Hours one class consumes from its guardian (0 when it does not count)."""
    if record.deleted or record.exempt_from_guardian:
        return ZERO
    if not record.status.is_countable(record.count_absent_for_billing):
        return ZERO
    if record.duration <= 0:
        return ZERO
    return minutes_to_hours(record.duration)


def compute_consumed_hours(classes: Iterable[ClassRecord]) -> ConsumedHours:
    total = ZERO
    per_student: dict[str, Decimal] = {}
    for record in classes:
        hours = class_contribution(record)
        if hours <= 0:
            continue
        total += hours
        key = student_key(record.student_id, record.student_name)
        per_student[key] = per_student.get(key, ZERO) + hours

    return ConsumedHours(
        total=round_hours(total),
        per_student={key: round_hours(value) for key, value in per_student.items()}
    )


def effective_rate(invoice_rate: Optional[Decimal], fallback_rate: Optional[Decimal]) -> Optional[Decimal]:
    """The invoice's frozen rate, else the fallback; None when neither is > 0."""
    for candidate in (invoice_rate, fallback_rate):
        rate = to_decimal(candidate)
        if rate > 0:
            return rate
    return None


def compute_credited_hours(invoices: Iterable[InvoiceRecord], fallback_rate: Optional[Decimal]) -> Decimal:
    total = ZERO
    for invoice in invoices:
        if invoice.deleted:
            continue
        rate = effective_rate(invoice.hourly_rate, fallback_rate)
        for entry in invoice.payment_logs:
            amount = to_decimal(entry.amount)
            if amount <= 0 or entry.method in NON_CREDITING_METHODS:
                continue
            if entry.paid_hours is not None:
                total += to_decimal(entry.paid_hours)
            elif rate is not None:
                total += amount / rate
    return round_hours(total)


def compute_refunded_hours(invoices: Iterable[InvoiceRecord]) -> Decimal:
    """Hours clawed back by refund entries (carried in their paid_hours)."""
    total = ZERO
    for invoice in invoices:
        if invoice.deleted:
            continue
        for entry in invoice.payment_logs:
            if entry.method != PaymentMethodEnum.REFUND.value or entry.paid_hours is None:
                continue
            total += abs(to_decimal(entry.paid_hours))
    return round_hours(total)


def find_rate_issues(invoices: Iterable[InvoiceRecord], fallback_rate: Optional[Decimal]) -> list[str]:
    """
    Lists conditions reconciliation cannot repair on its own: negative frozen
    rates, and rate-less payments that could not be converted to hours.
    """
    issues = []
    for invoice in invoices:
        if invoice.deleted:
            continue
        rate = to_decimal(invoice.hourly_rate)
        if rate < 0:
            issues.append(f"Invoice {invoice.id} has a negative frozen hourly rate ({rate}).")
        if effective_rate(invoice.hourly_rate, fallback_rate) is None:
            unconverted = [
                p for p in invoice.payment_logs
                if to_decimal(p.amount) > 0 and p.method not in NON_CREDITING_METHODS and p.paid_hours is None
            ]
            if unconverted:
                issues.append(f"Invoice {invoice.id} has {len(unconverted)} payment(s) with no usable rate to convert to hours.")
    return issues
