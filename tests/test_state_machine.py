"""Tests for the deal lifecycle transition table."""

import pytest

from nilgate.errors import InvalidTransition
from nilgate.models import DealStatus
from nilgate.state_machine import DealEvent, event_for_target, is_noop, next_status


class TestNextStatus:
    def test_forward_path(self):
        assert next_status(DealStatus.CREATED, DealEvent.APPROVE) is DealStatus.APPROVED
        assert next_status(DealStatus.APPROVED, DealEvent.VERIFY) is DealStatus.VERIFIED
        assert next_status(DealStatus.VERIFIED, DealEvent.PAYOUT) is DealStatus.PAID

    def test_repeat_approve_and_verify_are_idempotent(self):
        assert next_status(DealStatus.APPROVED, DealEvent.APPROVE) is DealStatus.APPROVED
        assert next_status(DealStatus.VERIFIED, DealEvent.VERIFY) is DealStatus.VERIFIED

    def test_approve_after_verify_is_rejected(self):
        with pytest.raises(InvalidTransition) as exc_info:
            next_status(DealStatus.VERIFIED, DealEvent.APPROVE)
        assert exc_info.value.current == "VERIFIED"
        assert exc_info.value.target == "APPROVED"

    @pytest.mark.parametrize("status", [DealStatus.CREATED, DealStatus.APPROVED, DealStatus.VERIFIED])
    def test_dispute_from_any_open_state(self, status):
        assert next_status(status, DealEvent.DISPUTE) is DealStatus.DISPUTED

    @pytest.mark.parametrize("status", [DealStatus.PAID, DealStatus.DISPUTED])
    @pytest.mark.parametrize("event", list(DealEvent))
    def test_terminal_states_accept_nothing(self, status, event):
        with pytest.raises(InvalidTransition):
            next_status(status, event)

    def test_cannot_skip_ahead(self):
        with pytest.raises(InvalidTransition):
            next_status(DealStatus.CREATED, DealEvent.VERIFY)
        with pytest.raises(InvalidTransition):
            next_status(DealStatus.APPROVED, DealEvent.PAYOUT)


def test_is_noop():
    assert is_noop(DealStatus.APPROVED, DealStatus.APPROVED)
    assert is_noop(DealStatus.VERIFIED, DealStatus.VERIFIED)
    assert not is_noop(DealStatus.DISPUTED, DealStatus.DISPUTED)
    assert not is_noop(DealStatus.CREATED, DealStatus.APPROVED)


def test_no_event_leads_back_to_created():
    with pytest.raises(InvalidTransition):
        event_for_target(DealStatus.CREATED)
