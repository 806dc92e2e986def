"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Every status change goes through compare_and_set_status: a conditional
``UPDATE ... WHERE id = :id AND status = :expected``. If another request
moved the row first, zero rows match and IllegalTransitionError is raised
instead of silently overwriting.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm.attributes import set_committed_value

from marketplace_escrow.domain.enums import TransactionStatus, TransactionType
from marketplace_escrow.domain.exceptions import IllegalTransitionError
from marketplace_escrow.infrastructure.database.orm_models import (
    Bid,
    Dispute,
    Milestone,
    Order,
    OrderDelivery,
    OrderEvent,
    Project,
    RevisionRequest,
    Service,
    Transaction,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import EventType, PaymentProvider

RowT = TypeVar("RowT", Order, Milestone, Transaction, Dispute, Bid)


async def compare_and_set_status(
    session: AsyncSession,
    row: RowT,
    expected: str,
    new: str,
    **values: Any,
) -> RowT:
    """Move ``row`` from ``expected`` to ``new`` status, atomically.

    Extra keyword arguments are written in the same UPDATE.

    Raises:
        IllegalTransitionError: If the stored status is no longer ``expected``.
    """
    model = type(row)
    now = datetime.now(UTC)
    assignments: dict[str, Any] = {"status": new, **values}
    if hasattr(model, "updated_at"):
        assignments["updated_at"] = now

    result = await session.execute(
        update(model)
        .where(model.id == row.id, model.status == expected)
        .values(**assignments)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = await session.scalar(select(model.status).where(model.id == row.id))
        raise IllegalTransitionError(current or "missing", new)

    for key, value in assignments.items():
        set_committed_value(row, key, value)
    return row


class OrderRepository:
    """Data access for orders."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, order: Order) -> Order:
        """Insert a new order (and any milestones attached to it)."""
        self._session.add(order)
        await self._session.flush()
        return order

    async def get_by_id(self, order_id: uuid.UUID) -> Order | None:
        """Fetch an order by its UUID, milestones included."""
        result = await self._session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: uuid.UUID, role: str | None = None) -> list[Order]:
        """Fetch orders where the user is buyer or seller, newest first."""
        if role == "buyer":
            criteria = Order.buyer_id == user_id
        elif role == "seller":
            criteria = Order.seller_id == user_id
        else:
            criteria = or_(Order.buyer_id == user_id, Order.seller_id == user_id)
        result = await self._session.execute(
            select(Order).where(criteria).order_by(Order.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        order: Order,
        expected: str,
        new: str,
        **values: Any,
    ) -> Order:
        """Conditional status change (call AFTER state machine validation)."""
        return await compare_and_set_status(self._session, order, expected, new, **values)


class MilestoneRepository:
    """Data access for project milestones."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, milestone_id: uuid.UUID) -> Milestone | None:
        result = await self._session.execute(
            select(Milestone).where(Milestone.id == milestone_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        milestone: Milestone,
        expected: str,
        new: str,
        **values: Any,
    ) -> Milestone:
        return await compare_and_set_status(self._session, milestone, expected, new, **values)


class TransactionRepository:
    """Data access for the ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, tx: Transaction) -> Transaction:
        """Append a ledger row."""
        self._session.add(tx)
        await self._session.flush()
        return tx

    async def get_by_reference(
        self,
        provider: PaymentProvider | str,
        reference: str,
    ) -> Transaction | None:
        """Look up the row a webhook refers to (unique per provider)."""
        result = await self._session.execute(
            select(Transaction).where(
                Transaction.provider == str(provider),
                Transaction.provider_reference == reference,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_reference(self, reference: str) -> Transaction | None:
        """Look up by reference alone (references are globally unique in practice)."""
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.provider_reference == reference)
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_by_order(self, order_id: uuid.UUID) -> list[Transaction]:
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.order_id == order_id)
            .order_by(Transaction.created_at.asc())
        )
        return list(result.scalars().all())

    async def sum_completed(
        self,
        order_id: uuid.UUID,
        types: Iterable[TransactionType],
        milestone_id: uuid.UUID | None = None,
    ) -> int:
        """Sum of completed amounts of the given types for an order (or one milestone)."""
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.order_id == order_id,
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.type.in_([t.value for t in types]),
        )
        if milestone_id is not None:
            stmt = stmt.where(Transaction.milestone_id == milestone_id)
        return int(await self._session.scalar(stmt) or 0)

    async def has_completed(
        self,
        order_id: uuid.UUID,
        tx_type: TransactionType,
        amount: int,
        milestone_id: uuid.UUID | None = None,
    ) -> bool:
        """True if a completed row of this type and exact amount exists."""
        stmt = select(func.count(Transaction.id)).where(
            Transaction.order_id == order_id,
            Transaction.type == tx_type.value,
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.amount == amount,
        )
        if milestone_id is not None:
            stmt = stmt.where(Transaction.milestone_id == milestone_id)
        return bool(await self._session.scalar(stmt))

    async def has_pending(self, milestone_id: uuid.UUID, tx_type: TransactionType) -> bool:
        """True if a row of this type for the milestone still awaits its provider."""
        stmt = select(func.count(Transaction.id)).where(
            Transaction.milestone_id == milestone_id,
            Transaction.type == tx_type.value,
            Transaction.status == TransactionStatus.PENDING.value,
        )
        return bool(await self._session.scalar(stmt))

    async def count_releases(self, milestone_id: uuid.UUID) -> int:
        return int(
            await self._session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.milestone_id == milestone_id,
                    Transaction.type == TransactionType.ESCROW_RELEASE.value,
                )
            )
            or 0
        )

    async def list_stale_pending(self, older_than: datetime) -> list[Transaction]:
        """Pending rows created before the cutoff, oldest first."""
        result = await self._session.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PENDING.value,
                Transaction.created_at < older_than,
            )
            .order_by(Transaction.created_at.asc())
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        tx: Transaction,
        expected: str,
        new: str,
        **values: Any,
    ) -> Transaction:
        return await compare_and_set_status(self._session, tx, expected, new, **values)


class DisputeRepository:
    """Data access for disputes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(select(Dispute).where(Dispute.id == dispute_id))
        return result.scalar_one_or_none()

    async def list_filtered(
        self,
        status: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> list[Dispute]:
        stmt = select(Dispute).order_by(Dispute.created_at.desc())
        if status is not None:
            stmt = stmt.where(Dispute.status == status)
        if user_id is not None:
            stmt = stmt.where(or_(Dispute.raised_by_id == user_id, Dispute.against_id == user_id))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_status(
        self,
        dispute: Dispute,
        expected: str,
        new: str,
        **values: Any,
    ) -> Dispute:
        return await compare_and_set_status(self._session, dispute, expected, new, **values)


class DeliveryRepository:
    """Data access for deliveries and the revision requests against them."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, delivery: OrderDelivery) -> OrderDelivery:
        self._session.add(delivery)
        await self._session.flush()
        return delivery

    async def latest_for_order(self, order_id: uuid.UUID) -> OrderDelivery | None:
        result = await self._session.execute(
            select(OrderDelivery)
            .where(OrderDelivery.order_id == order_id)
            .order_by(OrderDelivery.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_revision(self, revision: RevisionRequest) -> RevisionRequest:
        self._session.add(revision)
        await self._session.flush()
        return revision


class CatalogRepository:
    """Read access to services, projects and bids (plus accepting a bid)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_service(self, service_id: uuid.UUID) -> Service | None:
        return await self._session.get(Service, service_id)

    async def get_project(self, project_id: uuid.UUID) -> Project | None:
        return await self._session.get(Project, project_id)

    async def get_bid(self, bid_id: uuid.UUID) -> Bid | None:
        return await self._session.get(Bid, bid_id)

    async def accept_bid(self, bid: Bid) -> Bid:
        return await compare_and_set_status(self._session, bid, "pending", "accepted")


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        order_id: uuid.UUID,
        event_type: EventType,
        old_status: str | None,
        new_status: str,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> OrderEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = OrderEvent(
            order_id=order_id,
            event_type=event_type.value,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_order(self, order_id: uuid.UUID) -> list[OrderEvent]:
        """Fetch all events for an order in chronological order."""
        result = await self._session.execute(
            select(OrderEvent)
            .where(OrderEvent.order_id == order_id)
            .order_by(OrderEvent.created_at.asc())
        )
        return list(result.scalars().all())
