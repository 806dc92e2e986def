"""Order, Milestone and Dispute State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API or a webhook does, an illegal transition
(e.g., in_progress -> cancelled) raises TransitionNotAllowed.

The machines are instantiated per-row and validate transitions before the
ORM model's status field is written with a compare-and-swap update.

Order transition table:
    pending_payment       -> pending_requirements  (payment_confirmed)
    pending_payment       -> in_progress           (first_milestone_funded)
    pending_requirements  -> in_progress           (requirements_submitted)
    in_progress           -> delivered             (seller_delivers)
    revision_requested    -> delivered             (seller_delivers)
    delivered             -> revision_requested    (revision_requested)
    delivered             -> completed             (delivery_accepted)
    delivered             -> in_progress           (milestone_accepted)
    pending_payment       -> cancelled             (cancel)
    pending_requirements  -> cancelled             (cancel)
    in_progress           -> disputed              (dispute_opened)
    disputed              -> completed             (resolved_release)
    disputed              -> refunded              (resolved_refund)
    disputed              -> in_progress           (resolved_resume)

Milestone transition table:
    pending               -> funded                (fund)
    funded | in_progress  -> delivered             (deliver)
    delivered             -> in_progress           (rework)
    delivered             -> released              (release)
    funded | in_progress  -> disputed              (dispute_frozen)
    disputed              -> released | refunded | in_progress
                             (resolved_release | resolved_refund | resolved_resume)

Dispute transition table:
    open                  -> under_review          (start_review)
    open | under_review   -> escalated             (escalate)
    open | under_review   -> closed                (close)
    open | under_review | escalated -> resolved    (resolve)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed


class _StatusMachine(StateMachine):
    """Shared construction helpers for the per-row guards."""

    def __init__(self, current_status: str) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The persisted status value (e.g., "in_progress").
                            Must match one of the State values exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [_event_id(event) for event in self.allowed_events]


class OrderStateMachine(_StatusMachine):
    """Guards the order lifecycle.

    Usage:
        sm = OrderStateMachine(current_status="pending_payment")
        sm.payment_confirmed()
        sm.status  # "pending_requirements"
    """

    # --- States ---
    PENDING_PAYMENT = State("Pending payment", value="pending_payment", initial=True)
    PENDING_REQUIREMENTS = State("Pending requirements", value="pending_requirements")
    IN_PROGRESS = State("In progress", value="in_progress")
    DELIVERED = State("Delivered", value="delivered")
    REVISION_REQUESTED = State("Revision requested", value="revision_requested")
    COMPLETED = State("Completed", value="completed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)
    DISPUTED = State("Disputed", value="disputed")
    REFUNDED = State("Refunded", value="refunded", final=True)

    # --- Events / Transitions ---

    # Funding
    payment_confirmed = PENDING_PAYMENT.to(PENDING_REQUIREMENTS)
    first_milestone_funded = PENDING_PAYMENT.to(IN_PROGRESS)
    requirements_submitted = PENDING_REQUIREMENTS.to(IN_PROGRESS)

    # Delivery loop
    seller_delivers = IN_PROGRESS.to(DELIVERED) | REVISION_REQUESTED.to(DELIVERED)
    revision_requested = DELIVERED.to(REVISION_REQUESTED)
    delivery_accepted = DELIVERED.to(COMPLETED)
    milestone_accepted = DELIVERED.to(IN_PROGRESS)

    # Cancellation (no funds at risk yet)
    cancel = PENDING_PAYMENT.to(CANCELLED) | PENDING_REQUIREMENTS.to(CANCELLED)

    # Disputes
    dispute_opened = IN_PROGRESS.to(DISPUTED)
    resolved_release = DISPUTED.to(COMPLETED)
    resolved_refund = DISPUTED.to(REFUNDED)
    resolved_resume = DISPUTED.to(IN_PROGRESS)


class MilestoneStateMachine(_StatusMachine):
    """Guards the escrow lifecycle of a single project milestone."""

    PENDING = State("Pending", value="pending", initial=True)
    FUNDED = State("Funded", value="funded")
    IN_PROGRESS = State("In progress", value="in_progress")
    DELIVERED = State("Delivered", value="delivered")
    RELEASED = State("Released", value="released", final=True)
    DISPUTED = State("Disputed", value="disputed")
    REFUNDED = State("Refunded", value="refunded", final=True)

    fund = PENDING.to(FUNDED)
    deliver = FUNDED.to(DELIVERED) | IN_PROGRESS.to(DELIVERED)
    rework = DELIVERED.to(IN_PROGRESS)
    release = DELIVERED.to(RELEASED)

    dispute_frozen = FUNDED.to(DISPUTED) | IN_PROGRESS.to(DISPUTED)
    resolved_release = DISPUTED.to(RELEASED)
    resolved_refund = DISPUTED.to(REFUNDED)
    resolved_resume = DISPUTED.to(IN_PROGRESS)


class DisputeStateMachine(_StatusMachine):
    """Guards the dispute review workflow."""

    OPEN = State("Open", value="open", initial=True)
    UNDER_REVIEW = State("Under review", value="under_review")
    ESCALATED = State("Escalated", value="escalated")
    RESOLVED = State("Resolved", value="resolved", final=True)
    CLOSED = State("Closed", value="closed", final=True)

    start_review = OPEN.to(UNDER_REVIEW)
    escalate = OPEN.to(ESCALATED) | UNDER_REVIEW.to(ESCALATED)
    close = OPEN.to(CLOSED) | UNDER_REVIEW.to(CLOSED)
    resolve = OPEN.to(RESOLVED) | UNDER_REVIEW.to(RESOLVED) | ESCALATED.to(RESOLVED)


def validate_transition(
    machine_class: type[_StatusMachine],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_class(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status


def target_state(machine_class: type[_StatusMachine], event_name: str) -> str | None:
    """Return the state ``event_name`` leads to, or None if no state can fire it.

    Every event in these machines has a single target, whatever its source.
    """
    for state in machine_class.states:
        sm = machine_class(current_status=state.value)
        event_method = getattr(sm, event_name, None)
        if event_method is None or not callable(event_method):
            return None
        try:
            event_method()
        except TransitionNotAllowed:
            continue
        return sm.status
    return None


def _event_id(event) -> str:  # noqa: ANN001
    # Newer python-statemachine releases keep the identifier on `id`
    # and turn `name` into a humanized label.
    return str(getattr(event, "id", None) or event.name)
