"""
Pytest configuration and shared test fixtures.

Every test gets its own SQLite file database with the full schema, so
transactional and concurrency scenarios run against real locking. The
ledger mirror is the in-memory adapter; HTTP tests drive the FastAPI app
through httpx with the database and mirror dependencies overridden.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_MIRROR_BACKEND", "memory")
os.environ.setdefault("APP_MIRROR_HEARTBEAT_ENABLED", "false")
os.environ.setdefault("APP_MIRROR_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("APP_LOG_LEVEL", "WARNING")

from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cylinderhub.core.config import Settings, get_settings
from cylinderhub.core.security import create_access_token
from cylinderhub.database.connection import create_engine, create_session_factory, get_db
from cylinderhub.database.models import (
    Base,
    CylinderSize,
    DriverStatus,
    Party,
    PartyRole,
    PaymentMethod,
    Warehouse,
    WarehouseStock,
)
from cylinderhub.services.mirror.factory import get_ledger_mirror, reset_mirror
from cylinderhub.services.mirror.memory import InMemoryMirror
from cylinderhub.services.mirror.service import ExternalLedgerMirror
from cylinderhub.services.orders.service import OrderService

# Karachi city centre and a point well outside any test zone.
BUYER_POINT = (24.8607, 67.0011)
FAR_POINT = (31.5204, 74.3587)


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the schema created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return get_settings()


# ============================================================================
# Mirror
# ============================================================================


@pytest.fixture
def memory_port() -> InMemoryMirror:
    return InMemoryMirror()


@pytest.fixture
def ledger_mirror(memory_port: InMemoryMirror) -> ExternalLedgerMirror:
    return ExternalLedgerMirror(memory_port)


@pytest.fixture(autouse=True)
def reset_app_state():
    """Drop process-wide mirror singletons between tests."""
    reset_mirror()
    yield
    reset_mirror()


# ============================================================================
# Seed Data
# ============================================================================


async def make_party(
    session: AsyncSession,
    role: PartyRole,
    full_name: str,
    **fields,
) -> Party:
    party = Party(role=role, full_name=full_name, **fields)
    session.add(party)
    await session.flush()
    return party


async def make_driver(
    session: AsyncSession,
    full_name: str = "Imran Driver",
    center: Optional[tuple[float, float]] = BUYER_POINT,
    radius_km: Decimal = Decimal("5"),
    polygon: Optional[list] = None,
    auto_assign: bool = True,
    status: DriverStatus = DriverStatus.AVAILABLE,
) -> Party:
    zone = {}
    if polygon is not None:
        zone["zone_polygon"] = polygon
    elif center is not None:
        zone.update(
            zone_center_lat=center[0],
            zone_center_lng=center[1],
            zone_radius_km=radius_km,
        )
    return await make_party(
        session,
        PartyRole.DRIVER,
        full_name,
        phone="+923001112233",
        driver_status=status,
        auto_assign_orders=auto_assign,
        **zone,
    )


async def make_warehouse(
    session: AsyncSession,
    seller: Party,
    stock: Optional[dict[CylinderSize, tuple[int, str]]] = None,
    price_per_kg: str = "250.00",
    add_ons: Optional[list[dict]] = None,
) -> Warehouse:
    if stock is None:
        stock = {CylinderSize.KG_15: (5, "3000.00")}
    warehouse = Warehouse(
        seller_id=seller.id,
        label="Saddar Depot",
        city="Karachi",
        latitude=BUYER_POINT[0],
        longitude=BUYER_POINT[1],
        price_per_kg=Decimal(price_per_kg),
        add_ons=add_ons if add_ons is not None else [{"title": "Regulator", "price": 450}],
        total_inventory=sum(quantity for quantity, _ in stock.values()),
        stock=[
            WarehouseStock(size=size, quantity=quantity, price=Decimal(price))
            for size, (quantity, price) in stock.items()
        ],
    )
    session.add(warehouse)
    await session.flush()
    return warehouse


@dataclass
class World:
    buyer: Party
    seller: Party
    driver: Party
    admin: Party
    warehouse: Warehouse


@pytest.fixture
async def world(session_factory: async_sessionmaker[AsyncSession]) -> World:
    """
    One buyer, seller, admin and in-zone driver, and a warehouse holding
    five 15kg cylinders. Committed, so any session can see it.
    """
    async with session_factory() as session:
        buyer = await make_party(
            session,
            PartyRole.BUYER,
            "Ayesha Buyer",
            phone="+923004445566",
            latitude=BUYER_POINT[0],
            longitude=BUYER_POINT[1],
        )
        seller = await make_party(
            session, PartyRole.SELLER, "Bilal Seller", business_name="Bilal Gas Co"
        )
        admin = await make_party(session, PartyRole.ADMIN, "Finance Admin")
        driver = await make_driver(session)
        warehouse = await make_warehouse(session, seller)
        await session.commit()
    return World(buyer=buyer, seller=seller, driver=driver, admin=admin, warehouse=warehouse)


async def stock_quantity(
    session: AsyncSession,
    warehouse_id,
    size: CylinderSize = CylinderSize.KG_15,
) -> int:
    return await session.scalar(
        select(WarehouseStock.quantity).where(
            WarehouseStock.warehouse_id == warehouse_id,
            WarehouseStock.size == size,
        )
    )


async def driver_status(session: AsyncSession, driver_id) -> DriverStatus:
    return await session.scalar(select(Party.driver_status).where(Party.id == driver_id))


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
def make_order_service(ledger_mirror: ExternalLedgerMirror, settings: Settings):
    def factory(session: AsyncSession, **kwargs) -> OrderService:
        return OrderService(session, ledger_mirror, settings=settings, **kwargs)

    return factory


async def place_order(
    service: OrderService,
    world: World,
    quantity: int = 1,
    payment_method: PaymentMethod = PaymentMethod.COD,
    point: Optional[tuple[float, float]] = BUYER_POINT,
    **kwargs,
):
    """Create and commit a new-cylinder order for the world's buyer."""
    latitude, longitude = point if point is not None else (None, None)
    order = await service.create_order(
        world.buyer,
        warehouse_id=world.warehouse.id,
        cylinder_size=CylinderSize.KG_15,
        quantity=quantity,
        payment_method=payment_method,
        latitude=latitude,
        longitude=longitude,
        **kwargs,
    )
    await service.commit()
    return order


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    ledger_mirror: ExternalLedgerMirror,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Asynchronous client for the FastAPI app bound to the test database.

    Example:
        async def test_health(async_client):
            response = await async_client.get("/health")
            assert response.status_code == 200
    """
    from cylinderhub.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger_mirror] = lambda: ledger_mirror

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await ledger_mirror.drain()
    app.dependency_overrides.clear()


def auth_headers(party: Party) -> dict[str, str]:
    token = create_access_token(party.id, party.role.value)
    return {"Authorization": f"Bearer {token}"}
