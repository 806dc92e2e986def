"""Transition and party guards shared by the services."""

from __future__ import annotations

from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.exceptions import IllegalTransitionError, UnauthorizedError
from marketplace_escrow.domain.state_machine import target_state

if TYPE_CHECKING:
    from marketplace_escrow.domain.collaborators import Actor
    from marketplace_escrow.domain.state_machine import _StatusMachine
    from marketplace_escrow.infrastructure.database.orm_models import Order


def fire_transition(
    machine_class: type[_StatusMachine],
    current_status: str,
    event_name: str,
) -> str:
    """Validate and fire a state machine transition, returning the new status.

    Raises IllegalTransitionError carrying the state the event would have
    reached (or the event name when no state can fire it).
    """
    sm = machine_class(current_status=current_status)
    event_method = getattr(sm, event_name, None)
    if event_method is None:
        raise IllegalTransitionError(current_status, event_name)
    try:
        event_method()
    except TransitionNotAllowed as err:
        attempted = target_state(machine_class, event_name) or event_name
        raise IllegalTransitionError(current_status, attempted) from err
    return sm.status


def require_buyer(actor: Actor, order: Order) -> None:
    if actor.id != order.buyer_id:
        raise UnauthorizedError("Only the buyer can perform this action")


def require_seller(actor: Actor, order: Order) -> None:
    if actor.id != order.seller_id:
        raise UnauthorizedError("Only the seller can perform this action")


def require_party(actor: Actor, order: Order, allow_admin: bool = True) -> None:
    if allow_admin and actor.is_admin:
        return
    if actor.id not in (order.buyer_id, order.seller_id):
        raise UnauthorizedError("Not a party to this order")


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise UnauthorizedError("Admin role required")
