"""
Geofenced driver dispatcher.

Selection is first match in registration order among available drivers
with automatic dispatch enabled whose zone contains the point; there is no
proximity or load ranking. Selection and claim are separate steps: the
claim is a conditional ``available -> busy`` update, so two orders racing
for the same driver cannot both win. The loser falls back to unassigned.
"""

import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cylinderhub.core.config import get_settings
from cylinderhub.core.exceptions import DriverUnavailable
from cylinderhub.core.logging import get_logger
from cylinderhub.database.models import DriverStatus, Party, PartyRole
from cylinderhub.services.dispatch.geofence import DriverZone, LatLng

logger = get_logger(__name__)


class GeofencedDispatcher:
    """Find and claim a driver whose service zone covers a point."""

    def __init__(self, session: AsyncSession, default_radius_km: Optional[float] = None):
        self.session = session
        self.default_radius_km = (
            default_radius_km
            if default_radius_km is not None
            else get_settings().default_zone_radius_km
        )

    async def find_driver(self, point: LatLng) -> Optional[Party]:
        """
        Return the first eligible driver whose zone contains ``point``.

        Returns None when nobody matches; that is a normal outcome.
        """
        result = await self.session.execute(
            select(Party)
            .where(
                Party.role == PartyRole.DRIVER,
                Party.is_active.is_(True),
                Party.driver_status == DriverStatus.AVAILABLE,
                Party.auto_assign_orders.is_(True),
            )
            .order_by(Party.created_at, Party.id)
        )

        for driver in result.scalars():
            zone = DriverZone.from_party(driver, self.default_radius_km)
            if zone is not None and zone.contains(point):
                logger.info(
                    "Driver matched zone",
                    driver_id=str(driver.id),
                    lat=point[0],
                    lng=point[1],
                )
                return driver

        logger.info("No driver zone covers point", lat=point[0], lng=point[1])
        return None

    async def claim(self, driver_id: uuid.UUID) -> None:
        """
        Mark a driver busy if, and only if, they are still available.

        Raises:
            DriverUnavailable: If the driver is inactive or already busy
        """
        result = await self.session.execute(
            update(Party)
            .where(
                Party.id == driver_id,
                Party.role == PartyRole.DRIVER,
                Party.is_active.is_(True),
                Party.driver_status == DriverStatus.AVAILABLE,
            )
            .values(driver_status=DriverStatus.BUSY)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise DriverUnavailable(
                "Driver is not available for assignment",
                driver_id=str(driver_id),
            )

    async def release(self, driver_id: uuid.UUID) -> None:
        """Return a busy driver to the available pool."""
        await self.session.execute(
            update(Party)
            .where(Party.id == driver_id, Party.driver_status == DriverStatus.BUSY)
            .values(driver_status=DriverStatus.AVAILABLE)
            .execution_options(synchronize_session=False)
        )

    async def dispatch(self, point: Optional[LatLng]) -> Optional[Party]:
        """
        Find and claim a driver for ``point``.

        Returns the claimed driver, or None if the order should stay
        unassigned for manual assignment.
        """
        if point is None:
            logger.info("Dispatch skipped, order has no location")
            return None

        driver = await self.find_driver(point)
        if driver is None:
            return None

        try:
            await self.claim(driver.id)
        except DriverUnavailable as e:
            logger.warning(
                "Driver claimed by a concurrent dispatch, leaving order unassigned",
                driver_id=str(driver.id),
                error=e.message,
            )
            return None

        return driver
