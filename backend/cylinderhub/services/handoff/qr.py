"""
QR handoff protocol.

Physical custody moves only when the driver scans the token bound to the
order's current leg. The first accepted scan moves the order to
``in_transit``; the next accepted scan completes the leg according to the
order type and retires the token. Because each accepted scan advances the
state and a finished leg holds no token, replaying a token can only trigger
the next transition of its own leg or be rejected, never repeat one.
"""

import base64
import hmac
import secrets
import uuid
from io import BytesIO
from typing import Optional

import qrcode
import qrcode.constants
from qrcode.main import QRCode
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cylinderhub.core.exceptions import QRMismatch
from cylinderhub.core.logging import get_logger
from cylinderhub.database.models import (
    Cylinder,
    CylinderLocation,
    CylinderStatus,
    Order,
    OrderStatus,
)
from cylinderhub.services.inventory.ledger import InventoryLedger
from cylinderhub.services.orders.state_machine import (
    OrderEvent,
    OrderStateMachine,
    Transition,
)

logger = get_logger(__name__)

TOKEN_BYTES = 24


def generate_handoff_token() -> str:
    """Opaque, unguessable token for one handoff leg."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def render_qr_data_url(token: str, box_size: int = 10, border: int = 1) -> str:
    """Render ``token`` as a PNG QR code data URL for printing or on-screen scanning."""
    qr = QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=box_size,
        border=border,
    )
    qr.add_data(token)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = BytesIO()
    img.save(buffered, format="PNG")
    encoded = base64.b64encode(buffered.getvalue()).decode()
    return f"data:image/png;base64,{encoded}"


def tokens_match(scanned: Optional[str], expected: Optional[str]) -> bool:
    if not scanned or not expected:
        return False
    return hmac.compare_digest(scanned.strip().encode(), expected.encode())


class QRHandoffProtocol:
    """Bind custody transfer scans to order transitions."""

    def __init__(
        self,
        session: AsyncSession,
        state_machine: OrderStateMachine,
        inventory: InventoryLedger,
    ):
        self.session = session
        self.state_machine = state_machine
        self.inventory = inventory

    async def issue(self, order: Order, actor_id: Optional[uuid.UUID]) -> str:
        """Generate the pickup token for an accepted order."""
        token = generate_handoff_token()

        def bind_token(target: Order) -> None:
            target.qr_code = token

        await self.state_machine.apply(
            order,
            OrderEvent.GENERATE_QR,
            actor_id=actor_id,
            effect=bind_token,
        )
        return token

    async def scan(
        self,
        order: Order,
        scanned_code: str,
        actor_id: Optional[uuid.UUID],
    ) -> Transition:
        """
        Apply a driver scan to the order.

        Raises:
            InvalidTransition: If no scan is expected in the current state
            QRMismatch: If the scanned code is not the order's token
        """
        event = (
            OrderEvent.DELIVERY_SCAN
            if order.status == OrderStatus.IN_TRANSIT
            else OrderEvent.PICKUP_SCAN
        )

        def verify_token(target: Order) -> None:
            if not tokens_match(scanned_code, target.qr_code):
                logger.warning(
                    "Handoff scan rejected",
                    order_id=str(target.id),
                    status=target.status.value,
                )
                raise QRMismatch(
                    "Scanned code does not match this order",
                    order_id=str(target.id),
                    current_state=target.status.value,
                )

        def retire_token(target: Order) -> None:
            target.qr_code = None

        transition = await self.state_machine.apply(
            order,
            event,
            actor_id=actor_id,
            guard=verify_token,
            effect=retire_token if event == OrderEvent.DELIVERY_SCAN else None,
        )
        await self._move_custody(order, transition)
        return transition

    async def _move_custody(self, order: Order, transition: Transition) -> None:
        cylinders = await self._cylinders_for(order)

        if transition.event == OrderEvent.PICKUP_SCAN:
            for cylinder in cylinders:
                cylinder.location = CylinderLocation.DRIVER
        elif transition.target == OrderStatus.DELIVERED:
            for cylinder in cylinders:
                cylinder.location = CylinderLocation.BUYER
                cylinder.buyer_id = order.buyer_id
                cylinder.status = CylinderStatus.ACTIVE
        elif transition.target == OrderStatus.REFILL_IN_STORE:
            for cylinder in cylinders:
                cylinder.location = CylinderLocation.WAREHOUSE
                cylinder.status = CylinderStatus.REFILL_RETURN
        elif transition.target == OrderStatus.COMPLETED:
            for cylinder in cylinders:
                cylinder.location = CylinderLocation.WAREHOUSE
                cylinder.buyer_id = None
                cylinder.status = CylinderStatus.RETURNED
            if cylinders:
                await self.inventory.release(
                    order.warehouse_id, order.cylinder_size, len(cylinders)
                )

        await self.session.flush()
        logger.info(
            "Cylinder custody updated",
            order_id=str(order.id),
            status=transition.target.value,
            cylinders=len(cylinders),
        )

    async def _cylinders_for(self, order: Order) -> list[Cylinder]:
        result = await self.session.execute(
            select(Cylinder).where(Cylinder.order_id == order.id)
        )
        return list(result.scalars())
