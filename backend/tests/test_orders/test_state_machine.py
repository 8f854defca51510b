"""
Test suite for OrderStateMachine.

Tests cover the transition table, order-type-specific delivery legs, the
append-only audit trail, guard behaviour and optimistic-concurrency
rejection of stale writers.
"""

import uuid

import pytest

from conftest import FAR_POINT, World, place_order
from cylinderhub.core.exceptions import InvalidTransition
from cylinderhub.database.models import Order, OrderStatus, OrderType
from cylinderhub.services.orders.state_machine import (
    TRANSITIONS,
    OrderEvent,
    OrderStateMachine,
)


def make_order(status: OrderStatus, order_type: OrderType = OrderType.NEW) -> Order:
    return Order(id=uuid.uuid4(), order_number="00001", status=status, order_type=order_type)


@pytest.fixture
def machine() -> OrderStateMachine:
    return OrderStateMachine(session=None)


# ============================================================================
# Transition Table
# ============================================================================


class TestResolve:
    """Lookups against the transition table without touching the database."""

    @pytest.mark.parametrize(
        "status,event,target",
        [
            (OrderStatus.PENDING, OrderEvent.ASSIGN_DRIVER, OrderStatus.ASSIGNED),
            (OrderStatus.PICKUP_READY, OrderEvent.ASSIGN_DRIVER, OrderStatus.ASSIGNED),
            (OrderStatus.REFILL_IN_STORE, OrderEvent.ASSIGN_DRIVER, OrderStatus.ASSIGNED),
            (OrderStatus.REFILL_REQUESTED, OrderEvent.ASSIGN_DRIVER, OrderStatus.REFILL_PICKUP),
            (OrderStatus.RETURN_REQUESTED, OrderEvent.ASSIGN_DRIVER, OrderStatus.RETURN_PICKUP),
            (OrderStatus.PENDING, OrderEvent.MARK_READY, OrderStatus.PICKUP_READY),
            (OrderStatus.ASSIGNED, OrderEvent.ACCEPT, OrderStatus.ACCEPTED),
            (OrderStatus.ACCEPTED, OrderEvent.GENERATE_QR, OrderStatus.QR_GENERATED),
            (OrderStatus.QR_GENERATED, OrderEvent.PICKUP_SCAN, OrderStatus.IN_TRANSIT),
            (OrderStatus.REFILL_PICKUP, OrderEvent.PICKUP_SCAN, OrderStatus.IN_TRANSIT),
            (OrderStatus.RETURN_PICKUP, OrderEvent.PICKUP_SCAN, OrderStatus.IN_TRANSIT),
            (OrderStatus.IN_TRANSIT, OrderEvent.DELIVERY_SCAN, OrderStatus.DELIVERED),
            (OrderStatus.DELIVERED, OrderEvent.COMPLETE, OrderStatus.COMPLETED),
            (OrderStatus.QR_GENERATED, OrderEvent.CANCEL, OrderStatus.CANCELLED),
        ],
    )
    def test_allowed_transitions(self, machine, status, event, target):
        transition = machine.resolve(make_order(status), event)

        assert transition.target == target

    @pytest.mark.parametrize(
        "status,event",
        [
            (OrderStatus.PENDING, OrderEvent.ACCEPT),
            (OrderStatus.ASSIGNED, OrderEvent.COMPLETE),
            (OrderStatus.IN_TRANSIT, OrderEvent.CANCEL),
            (OrderStatus.DELIVERED, OrderEvent.CANCEL),
            (OrderStatus.COMPLETED, OrderEvent.CANCEL),
            (OrderStatus.CANCELLED, OrderEvent.ASSIGN_DRIVER),
            (OrderStatus.REFILL_IN_STORE, OrderEvent.PICKUP_SCAN),
        ],
    )
    def test_rejected_transitions(self, machine, status, event):
        with pytest.raises(InvalidTransition) as exc_info:
            machine.resolve(make_order(status), event)

        assert exc_info.value.current_state == status.value
        assert exc_info.value.event == event.value

    def test_delivery_scan_depends_on_order_type(self, machine):
        refill = machine.resolve(
            make_order(OrderStatus.IN_TRANSIT, OrderType.REFILL), OrderEvent.DELIVERY_SCAN
        )
        ret = machine.resolve(
            make_order(OrderStatus.IN_TRANSIT, OrderType.RETURN), OrderEvent.DELIVERY_SCAN
        )

        assert refill.target == OrderStatus.REFILL_IN_STORE
        assert refill.flips_type_to == OrderType.NEW
        assert ret.target == OrderStatus.COMPLETED
        assert ret.flips_type_to == OrderType.REFILL

    def test_supplier_change_delivers_like_new(self, machine):
        transition = machine.resolve(
            make_order(OrderStatus.IN_TRANSIT, OrderType.SUPPLIER_CHANGE),
            OrderEvent.DELIVERY_SCAN,
        )

        assert transition.target == OrderStatus.DELIVERED

    def test_rejection_lists_allowed_events(self, machine):
        with pytest.raises(InvalidTransition) as exc_info:
            machine.resolve(make_order(OrderStatus.ASSIGNED), OrderEvent.COMPLETE)

        allowed = exc_info.value.context["allowed_events"]
        assert "accept" in allowed
        assert "cancel" in allowed
        assert "complete" not in allowed

    @pytest.mark.parametrize(
        "status", [OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.RETURNED]
    )
    def test_terminal_states_allow_nothing(self, machine, status):
        assert machine.allowed_events(make_order(status)) == []

    def test_table_has_no_ambiguous_rows(self):
        keys = [
            (t.event, t.source, t.order_types) for t in TRANSITIONS
        ]
        assert len(keys) == len(set(keys))


# ============================================================================
# Apply
# ============================================================================


class TestApply:
    """Transitions applied to persisted orders."""

    async def test_apply_appends_history(self, session, world: World, make_order_service):
        order = await place_order(make_order_service(session), world, point=FAR_POINT)
        machine = OrderStateMachine(session)

        await machine.apply(order, OrderEvent.MARK_READY, actor_id=world.seller.id, note="Ready")
        await session.commit()

        assert order.status == OrderStatus.PICKUP_READY
        last = order.status_history[-1]
        assert last.from_status == OrderStatus.PENDING
        assert last.status == OrderStatus.PICKUP_READY
        assert last.event == "mark_ready"
        assert last.actor_id == world.seller.id
        assert [h.sequence for h in order.status_history] == [1, 2]

    async def test_creation_history_row(self, session, world: World, make_order_service):
        order = await place_order(make_order_service(session), world, point=FAR_POINT)

        first = order.status_history[0]
        assert first.from_status is None
        assert first.status == OrderStatus.PENDING
        assert first.event == "create"
        assert first.actor_id == world.buyer.id

    async def test_failed_guard_leaves_order_unchanged(
        self, session, world: World, make_order_service
    ):
        order = await place_order(make_order_service(session), world, point=FAR_POINT)
        machine = OrderStateMachine(session)
        version = order.version

        def refuse(_order):
            raise InvalidTransition("Not today", current_state=_order.status.value)

        with pytest.raises(InvalidTransition):
            await machine.apply(order, OrderEvent.MARK_READY, guard=refuse)

        assert order.status == OrderStatus.PENDING
        assert order.version == version
        assert len(order.status_history) == 1

    async def test_apply_bumps_version(self, session, world: World, make_order_service):
        order = await place_order(make_order_service(session), world, point=FAR_POINT)
        version = order.version

        await OrderStateMachine(session).apply(order, OrderEvent.MARK_READY)

        assert order.version == version + 1

    async def test_history_rows_are_append_only(
        self, session, world: World, make_order_service
    ):
        order = await place_order(make_order_service(session), world, point=FAR_POINT)

        order.status_history[0].note = "rewritten"
        with pytest.raises(ValueError):
            await session.flush()

    async def test_stale_writer_is_rejected(
        self, session_factory, world: World, make_order_service
    ):
        async with session_factory() as session:
            order = await place_order(make_order_service(session), world, point=FAR_POINT)
            order_id = order.id

        async with session_factory() as stale_session:
            stale = await stale_session.get(Order, order_id)
            await stale_session.commit()

            async with session_factory() as winner_session:
                winner = await winner_session.get(Order, order_id)
                await OrderStateMachine(winner_session).apply(winner, OrderEvent.MARK_READY)
                await winner_session.commit()

            with pytest.raises(InvalidTransition) as exc_info:
                await OrderStateMachine(stale_session).apply(stale, OrderEvent.CANCEL)

        assert exc_info.value.message == "Order was modified concurrently"
        assert exc_info.value.current_state == OrderStatus.PICKUP_READY.value

        async with session_factory() as session:
            fresh = await session.get(Order, order_id)
            assert fresh.status == OrderStatus.PICKUP_READY
            assert len(fresh.status_history) == 2
