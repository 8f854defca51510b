"""
API tests for order, buyer, driver and seller endpoints.
"""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from conftest import BUYER_POINT, FAR_POINT, World, auth_headers, stock_quantity
from cylinderhub.core.security import create_access_token
from cylinderhub.database.models import Cylinder

API = "/api/v1"


def order_body(world: World, point=BUYER_POINT, **overrides) -> dict:
    body = {
        "warehouse_id": str(world.warehouse.id),
        "cylinder_size": "15kg",
        "quantity": 1,
        "payment_method": "cod",
        "latitude": point[0],
        "longitude": point[1],
    }
    body.update(overrides)
    return body


async def create_order(client: AsyncClient, world: World, **overrides) -> dict:
    response = await client.post(
        f"{API}/orders", json=order_body(world, **overrides), headers=auth_headers(world.buyer)
    )
    assert response.status_code == 201, response.text
    return response.json()["order"]


async def deliver(client: AsyncClient, world: World, order_id: str) -> None:
    driver = auth_headers(world.driver)
    response = await client.post(
        f"{API}/driver/orders/{order_id}/accept",
        json={"cylinders": [{"serial_number": "SN-API-1", "tare_weight": 15.2}]},
        headers=driver,
    )
    assert response.status_code == 200, response.text
    token = (
        await client.post(f"{API}/driver/orders/{order_id}/generate-qr", headers=driver)
    ).json()["qr_code"]
    for _ in range(2):
        response = await client.post(
            f"{API}/driver/orders/{order_id}/scan-qr", json={"qr_code": token}, headers=driver
        )
        assert response.status_code == 200, response.text


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    async def test_health(self, async_client: AsyncClient):
        response = await async_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers

    async def test_request_id_is_echoed(self, async_client: AsyncClient):
        response = await async_client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


# ============================================================================
# Authentication
# ============================================================================


class TestAuthentication:
    async def test_missing_token(self, async_client: AsyncClient, world: World):
        response = await async_client.post(f"{API}/orders", json=order_body(world))

        assert response.status_code == 401

    async def test_garbage_token(self, async_client: AsyncClient, world: World):
        response = await async_client.post(
            f"{API}/orders",
            json=order_body(world),
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401

    async def test_unknown_party(self, async_client: AsyncClient, world: World):
        token = create_access_token(uuid.uuid4(), "buyer")

        response = await async_client.post(
            f"{API}/orders",
            json=order_body(world),
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 401

    async def test_wrong_role(self, async_client: AsyncClient, world: World):
        response = await async_client.post(
            f"{API}/orders", json=order_body(world), headers=auth_headers(world.driver)
        )

        assert response.status_code == 403


# ============================================================================
# Orders
# ============================================================================


class TestCreateOrder:
    async def test_create_dispatches(self, async_client: AsyncClient, world: World):
        response = await async_client.post(
            f"{API}/orders",
            json=order_body(world, quantity=2, add_ons=[{"title": "Regulator"}]),
            headers=auth_headers(world.buyer),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["driver_assigned"] is True
        order = data["order"]
        assert order["status"] == "assigned"
        assert order["driver_id"] == str(world.driver.id)
        assert Decimal(order["pricing"]["grand_total"]) == Decimal("14050.00")
        assert [e["cause"] for e in order["payment_timeline"]] == ["Gas & Addons"]
        assert len(order["driver_earnings"]) == 1

    async def test_create_without_driver(self, async_client: AsyncClient, world: World):
        response = await async_client.post(
            f"{API}/orders",
            json=order_body(world, point=FAR_POINT),
            headers=auth_headers(world.buyer),
        )

        assert response.status_code == 201
        assert response.json()["driver_assigned"] is False
        assert response.json()["order"]["status"] == "pending"

    async def test_insufficient_stock(
        self, async_client: AsyncClient, world: World, session
    ):
        response = await async_client.post(
            f"{API}/orders",
            json=order_body(world, quantity=9),
            headers=auth_headers(world.buyer),
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "INSUFFICIENT_STOCK"
        assert body["available"] == 5
        assert await stock_quantity(session, world.warehouse.id) == 5

    async def test_unknown_warehouse(self, async_client: AsyncClient, world: World):
        response = await async_client.post(
            f"{API}/orders",
            json=order_body(world, warehouse_id=str(uuid.uuid4())),
            headers=auth_headers(world.buyer),
        )

        assert response.status_code == 404

    @pytest.mark.parametrize(
        "overrides",
        [
            {"quantity": 0},
            {"cylinder_size": "20kg"},
            {"payment_method": "bitcoin"},
            {"latitude": 24.86, "longitude": None},
            {"add_ons": [{"title": "Pipe"}, {"title": "pipe"}]},
        ],
    )
    async def test_validation_errors(self, async_client: AsyncClient, world: World, overrides):
        response = await async_client.post(
            f"{API}/orders",
            json=order_body(world, **overrides),
            headers=auth_headers(world.buyer),
        )

        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"


class TestGetAndCancel:
    async def test_participants_only(self, async_client: AsyncClient, world: World):
        order = await create_order(async_client, world, point=FAR_POINT)

        own = await async_client.get(
            f"{API}/orders/{order['id']}", headers=auth_headers(world.seller)
        )
        other = await async_client.get(
            f"{API}/orders/{order['id']}", headers=auth_headers(world.driver)
        )

        assert own.status_code == 200
        assert other.status_code == 403

    async def test_unknown_order(self, async_client: AsyncClient, world: World):
        response = await async_client.get(
            f"{API}/orders/{uuid.uuid4()}", headers=auth_headers(world.admin)
        )

        assert response.status_code == 404
        assert response.json()["error"] == "ORDER_NOT_FOUND"

    async def test_cancel_releases_stock(
        self, async_client: AsyncClient, world: World, session
    ):
        order = await create_order(async_client, world, quantity=3)

        response = await async_client.post(
            f"{API}/orders/{order['id']}/cancel",
            json={"reason": "Ordered by mistake"},
            headers=auth_headers(world.buyer),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert await stock_quantity(session, world.warehouse.id) == 5

    async def test_cancel_after_pickup_reports_state(
        self, async_client: AsyncClient, world: World
    ):
        order = await create_order(async_client, world)
        await deliver(async_client, world, order["id"])

        response = await async_client.post(
            f"{API}/orders/{order['id']}/cancel", json={}, headers=auth_headers(world.buyer)
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "INVALID_TRANSITION"
        assert body["current_state"] == "delivered"
        assert body["allowed_events"] == ["complete"]


# ============================================================================
# Driver and Seller
# ============================================================================


class TestDriverFlow:
    async def test_generate_qr_returns_printable_image(
        self, async_client: AsyncClient, world: World
    ):
        order = await create_order(async_client, world)
        driver = auth_headers(world.driver)
        await async_client.post(
            f"{API}/driver/orders/{order['id']}/accept",
            json={"cylinders": [{"serial_number": "SN-API-1"}]},
            headers=driver,
        )

        response = await async_client.post(
            f"{API}/driver/orders/{order['id']}/generate-qr", headers=driver
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "qrgenerated"
        assert body["qr_code"]
        assert body["qr_code_data_url"].startswith("data:image/png;base64,")

    async def test_delivery_and_completion(self, async_client: AsyncClient, world: World):
        order = await create_order(async_client, world)
        await deliver(async_client, world, order["id"])

        response = await async_client.post(
            f"{API}/driver/orders/{order['id']}/complete", headers=auth_headers(world.driver)
        )

        assert response.status_code == 200
        statuses = [h["status"] for h in response.json()["status_history"]]
        assert statuses[-3:] == ["in_transit", "delivered", "completed"]

    async def test_wrong_qr_code(self, async_client: AsyncClient, world: World):
        order = await create_order(async_client, world)
        driver = auth_headers(world.driver)
        await async_client.post(
            f"{API}/driver/orders/{order['id']}/accept",
            json={"cylinders": [{"serial_number": "SN-1"}]},
            headers=driver,
        )
        await async_client.post(f"{API}/driver/orders/{order['id']}/generate-qr", headers=driver)

        response = await async_client.post(
            f"{API}/driver/orders/{order['id']}/scan-qr", json={"qr_code": "forged"}, headers=driver
        )

        assert response.status_code == 400
        assert response.json()["error"] == "QR_MISMATCH"

    async def test_cylinder_count_mismatch(self, async_client: AsyncClient, world: World):
        order = await create_order(async_client, world, quantity=2)

        response = await async_client.post(
            f"{API}/driver/orders/{order['id']}/accept",
            json={"cylinders": [{"serial_number": "SN-1"}]},
            headers=auth_headers(world.driver),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "CYLINDER_VERIFICATION_FAILED"

    async def test_seller_ready_without_driver(self, async_client: AsyncClient, world: World):
        order = await create_order(async_client, world, point=FAR_POINT)

        response = await async_client.post(
            f"{API}/seller/orders/{order['id']}/ready", headers=auth_headers(world.seller)
        )

        assert response.status_code == 200
        assert response.json()["status"] == "pickup_ready"


class TestBuyerRequests:
    async def test_refill_and_return(
        self, async_client: AsyncClient, world: World, session_factory
    ):
        order = await create_order(async_client, world)
        await deliver(async_client, world, order["id"])
        await async_client.post(
            f"{API}/driver/orders/{order['id']}/complete", headers=auth_headers(world.driver)
        )
        async with session_factory() as session:
            cylinder_id = await session.scalar(
                select(Cylinder.id).where(Cylinder.serial_number == "SN-API-1")
            )

        ret = await async_client.post(
            f"{API}/buyer/request-return-and-rate",
            json={"cylinder_id": str(cylinder_id), "rating": 4, "comment": "On time"},
            headers=auth_headers(world.buyer),
        )
        assert ret.status_code == 201, ret.text
        data = ret.json()
        assert data["order"]["order_type"] == "return"
        assert data["order"]["status"] == "return_pickup"
        causes = {e["cause"] for e in data["order"]["payment_timeline"]}
        assert causes == {"Pickup Charge", "Security Deposits"}

        refill = await async_client.post(
            f"{API}/buyer/refill",
            json={"cylinder_id": str(cylinder_id)},
            headers=auth_headers(world.buyer),
        )
        assert refill.status_code == 400
        assert refill.json()["error"] == "INVALID_ORDER_REQUEST"

    async def test_rating_out_of_range(self, async_client: AsyncClient, world: World):
        response = await async_client.post(
            f"{API}/buyer/request-return-and-rate",
            json={"cylinder_id": str(uuid.uuid4()), "rating": 6},
            headers=auth_headers(world.buyer),
        )

        assert response.status_code == 422
