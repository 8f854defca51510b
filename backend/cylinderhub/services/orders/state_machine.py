"""Order state machine with transition table, guards and audit trail.

Every change of ``Order.status`` goes through ``OrderStateMachine.apply``:
the event is resolved against the transition table, an optional guard runs,
the status (and, for scan legs, the order type) is updated, one history row
is appended, and the session is flushed. The flush issues the order UPDATE
with the version compare-and-swap, so a writer that loaded a state another
writer has already advanced is rejected instead of overwriting it.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from cylinderhub.core.exceptions import InvalidTransition
from cylinderhub.core.logging import get_logger
from cylinderhub.database.models import (
    Order,
    OrderStatus,
    OrderStatusHistory,
    OrderType,
)

logger = get_logger(__name__)


class OrderEvent(str, enum.Enum):
    CREATE = "create"
    ASSIGN_DRIVER = "assign_driver"
    MARK_READY = "mark_ready"
    ACCEPT = "accept"
    GENERATE_QR = "generate_qr"
    PICKUP_SCAN = "pickup_scan"
    DELIVERY_SCAN = "delivery_scan"
    COMPLETE = "complete"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    """One row of the transition table."""

    event: OrderEvent
    source: OrderStatus
    target: OrderStatus
    order_types: Optional[frozenset[OrderType]] = None
    flips_type_to: Optional[OrderType] = None

    def matches(self, order: Order, event: OrderEvent) -> bool:
        if self.event != event or self.source != order.status:
            return False
        return self.order_types is None or order.order_type in self.order_types


def _rows(
    event: OrderEvent,
    sources: Iterable[OrderStatus],
    target: OrderStatus,
) -> list[Transition]:
    return [Transition(event, source, target) for source in sources]


_DELIVERABLE = frozenset({OrderType.NEW, OrderType.SUPPLIER_CHANGE})

TRANSITIONS: tuple[Transition, ...] = (
    Transition(OrderEvent.ASSIGN_DRIVER, OrderStatus.PENDING, OrderStatus.ASSIGNED),
    Transition(OrderEvent.ASSIGN_DRIVER, OrderStatus.PICKUP_READY, OrderStatus.ASSIGNED),
    Transition(OrderEvent.ASSIGN_DRIVER, OrderStatus.REFILL_IN_STORE, OrderStatus.ASSIGNED),
    Transition(
        OrderEvent.ASSIGN_DRIVER, OrderStatus.REFILL_REQUESTED, OrderStatus.REFILL_PICKUP
    ),
    Transition(
        OrderEvent.ASSIGN_DRIVER, OrderStatus.RETURN_REQUESTED, OrderStatus.RETURN_PICKUP
    ),
    *_rows(
        OrderEvent.MARK_READY,
        (OrderStatus.PENDING, OrderStatus.REFILL_IN_STORE),
        OrderStatus.PICKUP_READY,
    ),
    Transition(OrderEvent.ACCEPT, OrderStatus.ASSIGNED, OrderStatus.ACCEPTED),
    Transition(OrderEvent.GENERATE_QR, OrderStatus.ACCEPTED, OrderStatus.QR_GENERATED),
    *_rows(
        OrderEvent.PICKUP_SCAN,
        (
            OrderStatus.QR_GENERATED,
            OrderStatus.ASSIGNED,
            OrderStatus.REFILL_REQUESTED,
            OrderStatus.RETURN_REQUESTED,
            OrderStatus.REFILL_PICKUP,
            OrderStatus.RETURN_PICKUP,
        ),
        OrderStatus.IN_TRANSIT,
    ),
    Transition(
        OrderEvent.DELIVERY_SCAN,
        OrderStatus.IN_TRANSIT,
        OrderStatus.DELIVERED,
        order_types=_DELIVERABLE,
    ),
    Transition(
        OrderEvent.DELIVERY_SCAN,
        OrderStatus.IN_TRANSIT,
        OrderStatus.REFILL_IN_STORE,
        order_types=frozenset({OrderType.REFILL}),
        flips_type_to=OrderType.NEW,
    ),
    Transition(
        OrderEvent.DELIVERY_SCAN,
        OrderStatus.IN_TRANSIT,
        OrderStatus.COMPLETED,
        order_types=frozenset({OrderType.RETURN}),
        flips_type_to=OrderType.REFILL,
    ),
    Transition(OrderEvent.COMPLETE, OrderStatus.DELIVERED, OrderStatus.COMPLETED),
    *_rows(
        OrderEvent.CANCEL,
        (
            OrderStatus.PENDING,
            OrderStatus.PICKUP_READY,
            OrderStatus.ASSIGNED,
            OrderStatus.ACCEPTED,
            OrderStatus.QR_GENERATED,
            OrderStatus.REFILL_REQUESTED,
            OrderStatus.REFILL_PICKUP,
            OrderStatus.REFILL_IN_STORE,
            OrderStatus.RETURN_REQUESTED,
            OrderStatus.RETURN_PICKUP,
        ),
        OrderStatus.CANCELLED,
    ),
)


Guard = Callable[[Order], None]
Effect = Callable[[Order], None]


class OrderStateMachine:
    """State machine for managing order lifecycle transitions."""

    def __init__(self, session: AsyncSession, transitions: Iterable[Transition] = TRANSITIONS):
        self.session = session
        self._transitions = tuple(transitions)

    def resolve(self, order: Order, event: OrderEvent) -> Transition:
        """
        Find the transition ``event`` triggers from the order's state.

        Raises:
            InvalidTransition: If the table has no row for it
        """
        for transition in self._transitions:
            if transition.matches(order, event):
                return transition

        raise InvalidTransition(
            f"Cannot {event.value.replace('_', ' ')} an order in state {order.status.value}",
            current_state=order.status.value,
            event=event.value,
            order_id=str(order.id),
            allowed_events=[e.value for e in self.allowed_events(order)],
        )

    def allowed_events(self, order: Order) -> list[OrderEvent]:
        seen: list[OrderEvent] = []
        for transition in self._transitions:
            if transition.matches(order, transition.event) and transition.event not in seen:
                seen.append(transition.event)
        return seen

    def can_apply(self, order: Order, event: OrderEvent) -> bool:
        return any(t.matches(order, event) for t in self._transitions)

    def record_creation(
        self,
        order: Order,
        actor_id: Optional[uuid.UUID],
        note: Optional[str] = None,
    ) -> None:
        """Append the first history row for a newly built order."""
        self._append_history(order, None, order.status, OrderEvent.CREATE, actor_id, note)

    async def apply(
        self,
        order: Order,
        event: OrderEvent,
        actor_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
        guard: Optional[Guard] = None,
        effect: Optional[Effect] = None,
    ) -> Transition:
        """
        Apply ``event`` to ``order`` and flush.

        The guard runs after the table lookup and before any mutation, so a
        failing guard leaves the order untouched. The effect runs after the
        status change and is flushed together with it.

        Raises:
            InvalidTransition: If the event is not allowed, or a concurrent
                writer advanced the order first
        """
        transition = self.resolve(order, event)
        if guard is not None:
            guard(order)

        order_id = order.id
        from_status = order.status
        order.status = transition.target
        if transition.flips_type_to is not None:
            order.order_type = transition.flips_type_to
        if effect is not None:
            effect(order)
        self._append_history(order, from_status, transition.target, event, actor_id, note)

        try:
            await self.session.flush()
        except StaleDataError as e:
            await self.session.rollback()
            current = await self.session.scalar(
                select(Order.status).where(Order.id == order_id)
            )
            current_value = current.value if current is not None else None
            logger.warning(
                "Concurrent order update rejected",
                order_id=str(order_id),
                event_name=event.value,
                current_state=current_value,
            )
            raise InvalidTransition(
                "Order was modified concurrently",
                current_state=current_value,
                event=event.value,
                order_id=str(order_id),
            ) from e

        logger.info(
            "Order transition applied",
            order_id=str(order_id),
            order_number=order.order_number,
            transition=f"{from_status.value}->{transition.target.value}",
            event_name=event.value,
            actor_id=str(actor_id) if actor_id else None,
        )
        return transition

    def _append_history(
        self,
        order: Order,
        from_status: Optional[OrderStatus],
        status: OrderStatus,
        event: OrderEvent,
        actor_id: Optional[uuid.UUID],
        note: Optional[str],
    ) -> None:
        order.status_history.append(
            OrderStatusHistory(
                sequence=len(order.status_history) + 1,
                from_status=from_status,
                status=status,
                event=event.value,
                actor_id=actor_id,
                note=note,
            )
        )
