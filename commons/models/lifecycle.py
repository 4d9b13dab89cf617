# commons/models/lifecycle.py
"""
Payout status state machine for expenses.

    pending_approval --approve--> pending --payout--> completed
            |
            +-------reject------> rejected

Every intake channel creates expenses in ``pending_approval``. ``completed``
and ``rejected`` are terminal. The transition function is pure so callers can
check an event before touching storage.
"""
import enum
from typing import Dict, Tuple

from commons.errors import InvalidStateTransition


class PayoutStatus(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ExpenseEvent(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    PAYOUT = "payout"


INITIAL_STATUS = PayoutStatus.PENDING_APPROVAL

TRANSITIONS: Dict[Tuple[PayoutStatus, ExpenseEvent], PayoutStatus] = {
    (PayoutStatus.PENDING_APPROVAL, ExpenseEvent.APPROVE): PayoutStatus.PENDING,
    (PayoutStatus.PENDING_APPROVAL, ExpenseEvent.REJECT): PayoutStatus.REJECTED,
    (PayoutStatus.PENDING, ExpenseEvent.PAYOUT): PayoutStatus.COMPLETED,
}


def next_status(current: PayoutStatus, event: ExpenseEvent) -> PayoutStatus:
    """Return the status reached by applying ``event`` to ``current``.

    Raises:
        InvalidStateTransition: if ``event`` is not allowed from ``current``.
    """
    current = PayoutStatus(current)
    event = ExpenseEvent(event)
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidStateTransition(current.value, event.value) from None


def allowed_events(status: PayoutStatus) -> Tuple[ExpenseEvent, ...]:
    status = PayoutStatus(status)
    return tuple(event for (source, event) in TRANSITIONS if source == status)


def is_terminal(status: PayoutStatus) -> bool:
    return not allowed_events(status)
