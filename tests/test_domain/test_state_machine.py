"""Tests for the order, milestone and dispute state machines.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. Terminal states allow nothing.
    4. The convenience function validate_transition works.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.exceptions import IllegalTransitionError
from marketplace_escrow.domain.state_machine import (
    DisputeStateMachine,
    MilestoneStateMachine,
    OrderStateMachine,
    target_state,
    validate_transition,
)
from marketplace_escrow.services.guards import fire_transition


class TestOrderHappyPath:
    """Service order lifecycle: pending_payment -> completed."""

    def test_full_lifecycle(self) -> None:
        sm = OrderStateMachine("pending_payment")
        sm.payment_confirmed()
        assert sm.status == "pending_requirements"

        sm.requirements_submitted()
        assert sm.status == "in_progress"

        sm.seller_delivers()
        assert sm.status == "delivered"

        sm.delivery_accepted()
        assert sm.status == "completed"

    def test_revision_loop(self) -> None:
        sm = OrderStateMachine("delivered")
        sm.revision_requested()
        assert sm.status == "revision_requested"
        sm.seller_delivers()
        assert sm.status == "delivered"

    def test_first_milestone_funded_skips_requirements(self) -> None:
        sm = OrderStateMachine("pending_payment")
        sm.first_milestone_funded()
        assert sm.status == "in_progress"

    def test_milestone_accepted_returns_to_work(self) -> None:
        sm = OrderStateMachine("delivered")
        sm.milestone_accepted()
        assert sm.status == "in_progress"


class TestOrderDisputePath:
    def test_dispute_from_in_progress(self) -> None:
        sm = OrderStateMachine("in_progress")
        sm.dispute_opened()
        assert sm.status == "disputed"

    @pytest.mark.parametrize(
        ("event", "expected"),
        [
            ("resolved_release", "completed"),
            ("resolved_refund", "refunded"),
            ("resolved_resume", "in_progress"),
        ],
    )
    def test_resolutions(self, event: str, expected: str) -> None:
        assert validate_transition(OrderStateMachine, "disputed", event) == expected

    @pytest.mark.parametrize("status", ["pending_payment", "delivered", "completed"])
    def test_dispute_only_from_in_progress(self, status: str) -> None:
        sm = OrderStateMachine(status)
        with pytest.raises(TransitionNotAllowed):
            sm.dispute_opened()


class TestOrderCancellation:
    @pytest.mark.parametrize("status", ["pending_payment", "pending_requirements"])
    def test_cancel_before_work(self, status: str) -> None:
        assert validate_transition(OrderStateMachine, status, "cancel") == "cancelled"

    @pytest.mark.parametrize("status", ["in_progress", "delivered", "disputed"])
    def test_cannot_cancel_once_work_started(self, status: str) -> None:
        sm = OrderStateMachine(status)
        with pytest.raises(TransitionNotAllowed):
            sm.cancel()


class TestOrderIllegalTransitions:
    def test_cannot_skip_payment(self) -> None:
        sm = OrderStateMachine("pending_payment")
        with pytest.raises(TransitionNotAllowed):
            sm.requirements_submitted()

    def test_cannot_accept_undelivered(self) -> None:
        sm = OrderStateMachine("in_progress")
        with pytest.raises(TransitionNotAllowed):
            sm.delivery_accepted()

    @pytest.mark.parametrize("status", ["completed", "cancelled", "refunded"])
    def test_terminal_states(self, status: str) -> None:
        assert OrderStateMachine(status).get_allowed_events() == []


class TestMilestoneMachine:
    def test_full_lifecycle(self) -> None:
        sm = MilestoneStateMachine("pending")
        sm.fund()
        sm.deliver()
        assert sm.status == "delivered"
        sm.release()
        assert sm.status == "released"

    def test_rework_after_revision(self) -> None:
        sm = MilestoneStateMachine("delivered")
        sm.rework()
        assert sm.status == "in_progress"
        sm.deliver()
        assert sm.status == "delivered"

    @pytest.mark.parametrize("status", ["funded", "in_progress"])
    def test_freeze(self, status: str) -> None:
        assert validate_transition(MilestoneStateMachine, status, "dispute_frozen") == "disputed"

    def test_pending_milestone_cannot_be_frozen(self) -> None:
        sm = MilestoneStateMachine("pending")
        with pytest.raises(TransitionNotAllowed):
            sm.dispute_frozen()

    def test_cannot_release_before_delivery(self) -> None:
        sm = MilestoneStateMachine("funded")
        with pytest.raises(TransitionNotAllowed):
            sm.release()

    def test_released_is_final(self) -> None:
        assert MilestoneStateMachine("released").get_allowed_events() == []


class TestDisputeMachine:
    def test_review_then_resolve(self) -> None:
        sm = DisputeStateMachine("open")
        sm.start_review()
        assert sm.status == "under_review"
        sm.resolve()
        assert sm.status == "resolved"

    def test_escalated_can_resolve(self) -> None:
        assert validate_transition(DisputeStateMachine, "escalated", "resolve") == "resolved"

    def test_escalated_cannot_close(self) -> None:
        sm = DisputeStateMachine("escalated")
        with pytest.raises(TransitionNotAllowed):
            sm.close()

    @pytest.mark.parametrize("status", ["resolved", "closed"])
    def test_terminal(self, status: str) -> None:
        assert DisputeStateMachine(status).get_allowed_events() == []


class TestAllowedEvents:
    def test_pending_payment_allowed(self) -> None:
        allowed = OrderStateMachine("pending_payment").get_allowed_events()
        assert set(allowed) == {"payment_confirmed", "first_milestone_funded", "cancel"}

    def test_disputed_allowed(self) -> None:
        allowed = OrderStateMachine("disputed").get_allowed_events()
        assert set(allowed) == {"resolved_release", "resolved_refund", "resolved_resume"}


class TestValidateTransitionFunction:
    def test_valid_transition(self) -> None:
        result = validate_transition(OrderStateMachine, "pending_requirements", "requirements_submitted")
        assert result == "in_progress"

    def test_invalid_event_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition(OrderStateMachine, "in_progress", "nonexistent_event")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            OrderStateMachine("INVALID_STATUS")


class TestFireTransition:
    """The service-layer wrapper maps library errors to domain errors."""

    def test_returns_new_status(self) -> None:
        assert fire_transition(OrderStateMachine, "delivered", "revision_requested") == (
            "revision_requested"
        )

    def test_illegal_transition(self) -> None:
        with pytest.raises(IllegalTransitionError) as exc_info:
            fire_transition(OrderStateMachine, "in_progress", "cancel")
        assert exc_info.value.current_state == "in_progress"

    def test_unknown_event(self) -> None:
        with pytest.raises(IllegalTransitionError):
            fire_transition(OrderStateMachine, "in_progress", "teleport")

    def test_illegal_transition_reports_target_state(self) -> None:
        with pytest.raises(IllegalTransitionError) as exc_info:
            fire_transition(MilestoneStateMachine, "funded", "fund")
        assert exc_info.value.current_state == "funded"
        assert exc_info.value.attempted_state == "funded"

    def test_illegal_cancel_reports_cancelled(self) -> None:
        with pytest.raises(IllegalTransitionError) as exc_info:
            fire_transition(OrderStateMachine, "completed", "cancel")
        assert exc_info.value.attempted_state == "cancelled"


class TestTargetState:
    @pytest.mark.parametrize(
        "machine, event, expected",
        [
            (OrderStateMachine, "cancel", "cancelled"),
            (OrderStateMachine, "seller_delivers", "delivered"),
            (MilestoneStateMachine, "release", "released"),
            (DisputeStateMachine, "escalate", "escalated"),
        ],
    )
    def test_known_events(self, machine, event: str, expected: str) -> None:
        assert target_state(machine, event) == expected

    def test_unknown_event(self) -> None:
        assert target_state(OrderStateMachine, "teleport") is None
