'''
Invoice arithmetic: coverage selection, item amounts, totals and the
transfer fee. Pure functions; the invoice service persists the results.
'''
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Protocol, Sequence, TypeVar
from uuid import UUID

from ..database.db_enums import CoverageStrategyEnum, InvoiceStatusEnum, TransferFeeModeEnum
from ..models.invoice import CoverageInput, InvoiceTotals
from .ledger import ZERO, minutes_to_hours, round_currency, round_hours, to_decimal

# tolerance when comparing money amounts that were rounded separately
MONEY_EPSILON = Decimal("0.005")


class Billable(Protocol):
    id: UUID
    scheduled_at: datetime
    duration: int


B = TypeVar("B", bound=Billable)


def item_amount(duration_minutes: int, rate: Decimal) -> Decimal:
    return round_currency(minutes_to_hours(duration_minutes) * to_decimal(rate))


def hours_for(durations: Iterable[int]) -> Decimal:
    return round_hours(sum((minutes_to_hours(d) for d in durations), ZERO))


def select_coverage(candidates: Sequence[B], coverage: CoverageInput) -> tuple[list[B], list[B]]:
    """
    Splits candidate classes into (included, excluded).

    Candidates are ordered chronologically. With a `max_hours` cap, items are
    added oldest first and inclusion stops at the first item that would
    exceed the cap; everything after it is excluded too.
    """
    ordered = sorted(candidates, key=lambda c: (c.scheduled_at, str(c.id)))
    included: list[B] = []
    excluded: list[B] = []

    wanted = set(coverage.class_ids) if coverage.strategy == CoverageStrategyEnum.CUSTOM else None
    cap = to_decimal(coverage.max_hours) if coverage.max_hours is not None else None
    used = ZERO
    cap_reached = False

    for candidate in ordered:
        if wanted is not None and candidate.id not in wanted:
            excluded.append(candidate)
            continue
        if coverage.end_date is not None and candidate.scheduled_at > coverage.end_date:
            excluded.append(candidate)
            continue
        if cap is not None:
            hours = minutes_to_hours(candidate.duration)
            if cap_reached or used + hours > cap:
                cap_reached = True
                excluded.append(candidate)
                continue
            used += hours
        included.append(candidate)

    return included, excluded


def transfer_fee(mode: TransferFeeModeEnum | str, value: Decimal, base: Decimal, waived: bool) -> Decimal:
    if waived:
        return ZERO
    value = to_decimal(value)
    if TransferFeeModeEnum(mode) == TransferFeeModeEnum.PERCENT:
        fee = to_decimal(base) * value / Decimal(100)
    else:
        fee = value
    return max(ZERO, round_currency(fee))


def compute_totals(
    amounts: Iterable[Decimal],
    tax_rate: Decimal,
    discount: Decimal,
    late_fee: Decimal,
    fee_mode: TransferFeeModeEnum | str,
    fee_value: Decimal,
    fee_waived: bool,
    frozen_fee: Optional[Decimal] = None,
) -> InvoiceTotals:
    """`frozen_fee` pins the transfer fee of a published invoice."""
    subtotal = round_currency(sum((to_decimal(a) for a in amounts), ZERO))
    tax = round_currency(subtotal * to_decimal(tax_rate) / Decimal(100))
    base = round_currency(subtotal + tax - to_decimal(discount) + to_decimal(late_fee))
    if frozen_fee is not None and not fee_waived:
        fee = round_currency(frozen_fee)
    else:
        fee = transfer_fee(fee_mode, fee_value, base, fee_waived)
    return InvoiceTotals(
        subtotal=subtotal,
        tax=tax,
        base=base,
        transfer_fee=fee,
        total=round_currency(base + fee),
    )


def amount_due(total: Decimal, adjustment_total: Decimal, paid_amount: Decimal) -> Decimal:
    due = round_currency(to_decimal(total) - to_decimal(adjustment_total) - to_decimal(paid_amount))
    return max(ZERO, due)


def derive_paid_hours(
    applied_amount: Decimal,
    total: Decimal,
    hours_covered: Decimal,
    rate: Optional[Decimal],
) -> Optional[Decimal]:
    """
    Hours credited by a payment that did not state them. Proportional to the
    invoice's covered hours so fees and tax never inflate the credit; falls
    back to amount / rate for invoices without covered hours.
    """
    applied_amount = to_decimal(applied_amount)
    total = to_decimal(total)
    hours_covered = to_decimal(hours_covered)
    if total > 0 and hours_covered > 0:
        return round_hours(hours_covered * applied_amount / total)
    rate = to_decimal(rate)
    if rate > 0:
        return round_hours(applied_amount / rate)
    return None


def status_after_payment(paid_amount: Decimal, total: Decimal, adjustment_total: Decimal) -> InvoiceStatusEnum:
    owed = to_decimal(total) - to_decimal(adjustment_total)
    if to_decimal(paid_amount) + MONEY_EPSILON >= owed:
        return InvoiceStatusEnum.PAID
    return InvoiceStatusEnum.PARTIALLY_PAID
