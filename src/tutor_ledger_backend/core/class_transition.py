'''
Class-linkage state machine.

`evaluate_transition` compares the previously persisted snapshot with the new
one and decides, without side effects, whether (and by how much) the
guardian's balance must move.
'''
from decimal import Decimal
from typing import Optional

from ..models.classes import ClassSnapshot, TransitionDecision
from .ledger import ZERO, class_contribution, round_hours


def _status_countable(snapshot: ClassSnapshot) -> bool:
    # status-level check only; the billable-absence flag is compared separately
    return snapshot.status.is_countable(True)


def evaluate_transition(new: ClassSnapshot, previous: Optional[ClassSnapshot]) -> TransitionDecision:
    new_contribution = round_hours(class_contribution(new.to_record()))

    if previous is None:
        # first save: nothing was charged yet
        delta = -new_contribution
        return TransitionDecision(
            status_changed=True,
            duration_changed=False,
            countability_changed=new_contribution > 0,
            blocked=False,
            previous_contribution=ZERO,
            new_contribution=new_contribution,
            balance_delta=round_hours(delta),
            needs_invoice_sync=new.billed_in_invoice_id is not None,
        )

    previous_contribution = round_hours(class_contribution(previous.to_record()))
    status_changed = previous.status != new.status
    duration_changed = previous.duration != new.duration
    countability_changed = (previous_contribution > 0) != (new_contribution > 0)

    # A report re-submission with the same countable status is only an edit of
    # the report text: the hours were already applied by the first submission.
    blocked = (
        previous.report_submitted
        and not status_changed
        and _status_countable(previous)
        and _status_countable(new)
        and not duration_changed
        and not countability_changed
    )

    if blocked:
        delta = ZERO
    else:
        # net change against what the ledger actually holds for this class
        delta = Decimal(previous.charged_hours) - new_contribution

    return TransitionDecision(
        status_changed=status_changed,
        duration_changed=duration_changed,
        countability_changed=countability_changed,
        blocked=blocked,
        previous_contribution=previous_contribution,
        new_contribution=new_contribution,
        balance_delta=round_hours(delta),
        needs_invoice_sync=new.billed_in_invoice_id is not None and (
            status_changed or duration_changed or countability_changed or new.deleted != previous.deleted
        ),
    )
