"""Collaborator contracts consumed by the escrow core.

Identity and notification are implemented elsewhere; this module only
declares the shapes the services depend on. These are Protocols
(structural subtyping) so adapters don't need to inherit from a base class.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from marketplace_escrow.domain.enums import ActorRole
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

logger = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation.

    Attributes:
        id: User id as issued by the identity provider.
        role: Coarse role; only ADMIN has dispute powers.
        email: Optional, forwarded to payment gateways as the customer email.
        name: Optional display name, split into first/last for Gateway B.
    """

    id: uuid.UUID
    role: ActorRole = ActorRole.USER
    email: str | None = None
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


@runtime_checkable
class IdentityProvider(Protocol):
    """Resolves the current user for a request."""

    def current_user(self, request: Any) -> Actor: ...


@runtime_checkable
class Notifier(Protocol):
    """Fire-and-forget notification sink.

    Implementations may raise; callers log and swallow those failures so a
    committed financial transition is never rolled back by a notification.
    """

    async def notify(self, user_id: uuid.UUID, event_kind: str, payload: dict) -> None: ...


class LoggingNotifier:
    """Default notifier: emits a structured log line per notification."""

    async def notify(self, user_id: uuid.UUID, event_kind: str, payload: dict) -> None:
        logger.info("notification.sent", user_id=str(user_id), kind=event_kind, **payload)


async def notify_safely(
    notifier: Notifier,
    user_id: uuid.UUID,
    event_kind: str,
    payload: dict | None = None,
) -> None:
    """Send a notification, logging (never raising) on failure."""
    try:
        await notifier.notify(user_id, event_kind, payload or {})
    except Exception as exc:
        logger.warning(
            "notification.failed",
            user_id=str(user_id),
            kind=event_kind,
            error=str(exc),
        )
