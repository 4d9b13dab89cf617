"""
Payout status state machine tests.

The transition function is pure, so every allowed and forbidden pair is
checked here without a database.
"""

import itertools

import pytest

from commons.errors import InvalidStateTransition
from commons.models.lifecycle import (
    INITIAL_STATUS,
    TRANSITIONS,
    ExpenseEvent,
    PayoutStatus,
    allowed_events,
    is_terminal,
    next_status,
)


class TestAllowedTransitions:

    def test_initial_status_is_pending_approval(self):
        assert INITIAL_STATUS is PayoutStatus.PENDING_APPROVAL

    def test_approve_moves_to_pending(self):
        assert next_status(PayoutStatus.PENDING_APPROVAL, ExpenseEvent.APPROVE) is PayoutStatus.PENDING

    def test_reject_moves_to_rejected(self):
        assert next_status(PayoutStatus.PENDING_APPROVAL, ExpenseEvent.REJECT) is PayoutStatus.REJECTED

    def test_payout_moves_to_completed(self):
        assert next_status(PayoutStatus.PENDING, ExpenseEvent.PAYOUT) is PayoutStatus.COMPLETED

    def test_accepts_raw_string_values(self):
        assert next_status("pending_approval", "approve") is PayoutStatus.PENDING


class TestForbiddenTransitions:

    FORBIDDEN = [
        (status, event)
        for status, event in itertools.product(PayoutStatus, ExpenseEvent)
        if (status, event) not in TRANSITIONS
    ]

    @pytest.mark.parametrize("status,event", FORBIDDEN)
    def test_forbidden_pair_raises(self, status, event):
        with pytest.raises(InvalidStateTransition) as exc_info:
            next_status(status, event)
        assert exc_info.value.current_status == status.value
        assert exc_info.value.event == event.value
        assert exc_info.value.details["current_status"] == status.value

    def test_cannot_reject_after_approval(self):
        with pytest.raises(InvalidStateTransition, match="pending"):
            next_status(PayoutStatus.PENDING, ExpenseEvent.REJECT)

    def test_cannot_pay_before_approval(self):
        with pytest.raises(InvalidStateTransition):
            next_status(PayoutStatus.PENDING_APPROVAL, ExpenseEvent.PAYOUT)


class TestMonotonicity:
    """Every reachable path only moves forward."""

    ORDER = {
        PayoutStatus.PENDING_APPROVAL: 0,
        PayoutStatus.PENDING: 1,
        PayoutStatus.REJECTED: 1,
        PayoutStatus.COMPLETED: 2,
    }

    def test_every_transition_moves_forward(self):
        for (source, _event), target in TRANSITIONS.items():
            assert self.ORDER[target] > self.ORDER[source]

    def test_terminal_states(self):
        assert is_terminal(PayoutStatus.COMPLETED)
        assert is_terminal(PayoutStatus.REJECTED)
        assert not is_terminal(PayoutStatus.PENDING_APPROVAL)
        assert not is_terminal(PayoutStatus.PENDING)

    def test_allowed_events(self):
        assert set(allowed_events(PayoutStatus.PENDING_APPROVAL)) == {ExpenseEvent.APPROVE, ExpenseEvent.REJECT}
        assert allowed_events(PayoutStatus.PENDING) == (ExpenseEvent.PAYOUT,)
        assert allowed_events(PayoutStatus.COMPLETED) == ()

    def test_all_states_reachable_from_initial(self):
        reached = {INITIAL_STATUS}
        frontier = [INITIAL_STATUS]
        while frontier:
            status = frontier.pop()
            for event in allowed_events(status):
                target = next_status(status, event)
                if target not in reached:
                    reached.add(target)
                    frontier.append(target)
        assert reached == set(PayoutStatus)
