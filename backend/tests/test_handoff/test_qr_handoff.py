"""
Test suite for the QR handoff protocol.
"""

import base64

import pytest
from sqlalchemy import select

from conftest import World, place_order
from cylinderhub.core.exceptions import InvalidTransition, QRMismatch
from cylinderhub.database.models import Cylinder, CylinderLocation, Order, OrderStatus
from cylinderhub.schemas.orders import CylinderVerification
from cylinderhub.services.handoff.qr import (
    QRHandoffProtocol,
    generate_handoff_token,
    render_qr_data_url,
    tokens_match,
)
from cylinderhub.services.inventory.ledger import InventoryLedger
from cylinderhub.services.orders.state_machine import OrderEvent, OrderStateMachine


def make_protocol(session) -> QRHandoffProtocol:
    return QRHandoffProtocol(session, OrderStateMachine(session), InventoryLedger(session))


async def accepted_order(session, service, world: World) -> Order:
    order = await place_order(service, world)
    await service.accept(
        world.driver, order.id, [CylinderVerification(serial_number="SN-QR-1")]
    )
    await service.commit()
    return order


class TestTokens:
    def test_tokens_are_unique_and_url_safe(self):
        tokens = {generate_handoff_token() for _ in range(50)}

        assert len(tokens) == 50
        assert all(len(t) >= 32 and "/" not in t and "+" not in t for t in tokens)

    def test_match_ignores_surrounding_whitespace(self):
        assert tokens_match("  abc123\n", "abc123")

    @pytest.mark.parametrize(
        "scanned,expected",
        [("abc123", "abc124"), ("", "abc123"), (None, "abc123"), ("abc123", None)],
    )
    def test_mismatch(self, scanned, expected):
        assert not tokens_match(scanned, expected)

    def test_renders_png_data_url(self):
        data_url = render_qr_data_url(generate_handoff_token())

        prefix = "data:image/png;base64,"
        assert data_url.startswith(prefix)
        assert base64.b64decode(data_url[len(prefix):]).startswith(b"\x89PNG")


class TestScan:
    async def test_issue_binds_token_to_order(self, session, world: World, make_order_service):
        order = await accepted_order(session, make_order_service(session), world)

        token = await make_protocol(session).issue(order, world.driver.id)

        assert order.qr_code == token
        assert order.status == OrderStatus.QR_GENERATED

    async def test_first_scan_picks_up(self, session, world: World, make_order_service):
        order = await accepted_order(session, make_order_service(session), world)
        protocol = make_protocol(session)
        token = await protocol.issue(order, world.driver.id)

        transition = await protocol.scan(order, token, world.driver.id)

        assert transition.event == OrderEvent.PICKUP_SCAN
        assert order.status == OrderStatus.IN_TRANSIT

    async def test_replayed_token_advances_once_per_leg(
        self, session, world: World, make_order_service
    ):
        order = await accepted_order(session, make_order_service(session), world)
        protocol = make_protocol(session)
        token = await protocol.issue(order, world.driver.id)

        await protocol.scan(order, token, world.driver.id)
        await protocol.scan(order, token, world.driver.id)

        assert order.status == OrderStatus.DELIVERED
        with pytest.raises(InvalidTransition):
            await protocol.scan(order, token, world.driver.id)
        assert order.status == OrderStatus.DELIVERED

    async def test_delivery_scan_retires_token(
        self, session, world: World, make_order_service
    ):
        order = await accepted_order(session, make_order_service(session), world)
        protocol = make_protocol(session)
        token = await protocol.issue(order, world.driver.id)

        await protocol.scan(order, token, world.driver.id)
        assert order.qr_code == token
        await protocol.scan(order, token, world.driver.id)

        assert order.qr_code is None

    async def test_mismatch_reports_current_state(
        self, session, world: World, make_order_service
    ):
        order = await accepted_order(session, make_order_service(session), world)
        protocol = make_protocol(session)
        await protocol.issue(order, world.driver.id)

        with pytest.raises(QRMismatch) as exc_info:
            await protocol.scan(order, "forged", world.driver.id)

        assert exc_info.value.context["current_state"] == OrderStatus.QR_GENERATED.value
        cylinder = await session.scalar(
            select(Cylinder).where(Cylinder.serial_number == "SN-QR-1")
        )
        assert cylinder.location == CylinderLocation.WAREHOUSE

    async def test_scan_without_token_is_rejected(
        self, session, world: World, make_order_service
    ):
        order = await place_order(make_order_service(session), world)

        with pytest.raises(QRMismatch):
            await make_protocol(session).scan(order, "anything", world.driver.id)
        assert order.status == OrderStatus.ASSIGNED

    async def test_concurrent_scan_is_rejected(
        self, session_factory, world: World, make_order_service
    ):
        async with session_factory() as session:
            order = await accepted_order(session, make_order_service(session), world)
            token = await make_protocol(session).issue(order, world.driver.id)
            await session.commit()
            order_id = order.id

        async with session_factory() as stale_session:
            stale = await stale_session.get(Order, order_id)
            await stale_session.commit()

            async with session_factory() as winner_session:
                winner = await winner_session.get(Order, order_id)
                await make_protocol(winner_session).scan(winner, token, world.driver.id)
                await winner_session.commit()

            with pytest.raises(InvalidTransition) as exc_info:
                await make_protocol(stale_session).scan(stale, token, world.driver.id)

        assert exc_info.value.current_state == OrderStatus.IN_TRANSIT.value
