"""
Order service orchestrating the fulfillment flow.

Each public method stages one unit of work on the session: inventory
reservation, order and status history writes, payment timeline entries,
driver claims and cylinder custody. Callers finish with ``commit()``, which
commits everything together and then publishes events and pushes the
touched ledger entries to the mirror. Any exception before that leaves the
transaction to be rolled back by the caller.
"""

import uuid
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from cylinderhub.core.config import Settings, get_settings
from cylinderhub.core.exceptions import (
    CylinderVerificationError,
    Forbidden,
    InvalidOrderRequest,
    PaymentDeclined,
    RatingExists,
)
from cylinderhub.core.logging import get_logger
from cylinderhub.database.models import (
    Cylinder,
    CylinderLocation,
    CylinderStatus,
    LiabilityType,
    Order,
    OrderRating,
    OrderStatus,
    OrderType,
    Party,
    PartyRole,
    PaymentMethod,
    TimelineEntryType,
)
from cylinderhub.database.models.ledger import SECURITY_DEPOSIT_CAUSE
from cylinderhub.services.base import TransactionalService
from cylinderhub.services.dispatch.dispatcher import GeofencedDispatcher
from cylinderhub.services.events.publisher import EventPublisher, order_audiences
from cylinderhub.services.handoff.qr import QRHandoffProtocol, generate_handoff_token
from cylinderhub.services.inventory.ledger import InventoryLedger
from cylinderhub.services.mirror.service import ExternalLedgerMirror
from cylinderhub.services.orders.pricing import (
    PriceQuote,
    money,
    quote_new_order,
    quote_refill,
    quote_return,
)
from cylinderhub.services.orders.repository import OrderRepository
from cylinderhub.services.orders.state_machine import OrderEvent, OrderStateMachine
from cylinderhub.services.payments.authorizer import (
    OfflinePaymentAuthorizer,
    PaymentAuthorizer,
)

logger = get_logger(__name__)

# States in which the order holds a claimed driver.
DRIVER_BOUND_STATES = frozenset(
    {
        OrderStatus.ASSIGNED,
        OrderStatus.ACCEPTED,
        OrderStatus.QR_GENERATED,
        OrderStatus.IN_TRANSIT,
        OrderStatus.REFILL_PICKUP,
        OrderStatus.RETURN_PICKUP,
    }
)

# States reached by a scan or completion that hand the driver back.
DRIVER_RELEASE_STATES = frozenset(
    {
        OrderStatus.DELIVERED,
        OrderStatus.REFILL_IN_STORE,
        OrderStatus.COMPLETED,
    }
)

GAS_SALE_CAUSE = "Gas & Addons"
DELIVERY_FEE_CAUSE = "Delivery Charge"
REFILL_SALE_CAUSE = "Cylinder Refill Sale"
PICKUP_FEE_CAUSE = "Pickup Charge"
CANCELLATION_CAUSE = "Order Cancellation"


class OrderService(TransactionalService):
    """
    Order lifecycle operations for buyers, sellers, drivers and admins.

    Attributes:
        repository: Order and related lookups
        inventory: Stock reservation ledger
        state_machine: Transition table and audit trail
        dispatcher: Geofenced driver matching and claiming
        handoff: QR custody protocol
        authorizer: Payment authorization collaborator
    """

    def __init__(
        self,
        session: AsyncSession,
        mirror: ExternalLedgerMirror,
        publisher: Optional[EventPublisher] = None,
        authorizer: Optional[PaymentAuthorizer] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(session, mirror, publisher)
        self.settings = settings or get_settings()
        self.repository = OrderRepository(session)
        self.inventory = InventoryLedger(session)
        self.state_machine = OrderStateMachine(session)
        self.dispatcher = GeofencedDispatcher(session, self.settings.default_zone_radius_km)
        self.handoff = QRHandoffProtocol(session, self.state_machine, self.inventory)
        self.authorizer = authorizer or OfflinePaymentAuthorizer()

    # Access

    async def get_order(self, actor: Party, order_id: uuid.UUID) -> Order:
        order = await self.repository.get_order(order_id)
        self.ensure_participant(order, actor)
        return order

    @staticmethod
    def ensure_participant(order: Order, actor: Party) -> None:
        """
        Raises:
            Forbidden: If the actor is not the order's buyer, seller,
                assigned driver or an admin
        """
        allowed = {
            PartyRole.ADMIN: True,
            PartyRole.BUYER: order.buyer_id == actor.id,
            PartyRole.SELLER: order.seller_id == actor.id,
            PartyRole.DRIVER: order.driver_id == actor.id,
        }
        if not allowed.get(actor.role, False):
            raise Forbidden(
                "Not a participant in this order",
                order_id=str(order.id),
                party_id=str(actor.id),
            )

    # Buyer requests

    async def create_order(
        self,
        buyer: Party,
        warehouse_id: uuid.UUID,
        cylinder_size,
        quantity: int,
        payment_method: PaymentMethod,
        is_urgent: bool = False,
        add_ons: Sequence = (),
        delivery_address: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Order:
        """
        Reserve stock, authorize payment, create the order and seed its ledger.

        Dispatch is attempted once; without a match the order stays pending.

        Raises:
            ResourceNotFound: If the warehouse does not exist
            InvalidOrderRequest: If the warehouse does not stock the size or an add-on
            InsufficientStock: If the warehouse cannot cover the quantity
            PaymentDeclined: If payment authorization fails
        """
        warehouse = await self.repository.get_warehouse(warehouse_id)
        if warehouse.stock_for(cylinder_size) is None:
            raise InvalidOrderRequest(
                f"Warehouse does not stock {cylinder_size.value} cylinders",
                warehouse_id=str(warehouse_id),
            )

        quote = quote_new_order(
            warehouse, cylinder_size, quantity, is_urgent, add_ons, self.settings
        )
        order = await self._build_order(
            buyer,
            warehouse_id=warehouse.id,
            seller_id=warehouse.seller_id,
            order_type=OrderType.NEW,
            status=OrderStatus.PENDING,
            cylinder_size=cylinder_size,
            quote=quote,
            payment_method=payment_method,
            is_urgent=is_urgent,
            delivery_address=delivery_address,
            latitude=latitude,
            longitude=longitude,
        )

        await self.inventory.reserve(warehouse.id, cylinder_size, quantity)
        order.inventory_reserved = True

        await self._authorize(order)
        self.session.add(order)
        self.state_machine.record_creation(order, buyer.id, "Order placed")

        self.ledger.append_entry(order, TimelineEntryType.SALE, GAS_SALE_CAUSE, order.subtotal)
        if order.security_charges > 0:
            self.ledger.append_entry(
                order,
                TimelineEntryType.SALE,
                SECURITY_DEPOSIT_CAUSE,
                order.security_charges,
                LiabilityType.REFUNDABLE,
            )
        if quote.fee_total > 0:
            self.ledger.append_entry(
                order, TimelineEntryType.DELIVERY_FEE, DELIVERY_FEE_CAUSE, quote.fee_total
            )
        await self.session.flush()

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.order_number,
            buyer_id=str(buyer.id),
            quantity=quantity,
            grand_total=str(order.grand_total),
        )
        self._emit_order(order, "order.created")
        await self._auto_dispatch(order, actor_id=None)
        return order

    async def request_refill(
        self,
        buyer: Party,
        cylinder_id: uuid.UUID,
        payment_method: PaymentMethod = PaymentMethod.COD,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Order:
        """
        Send one of the buyer's cylinders back for refilling.

        Raises:
            ResourceNotFound: If the cylinder or its warehouse does not exist
            InvalidOrderRequest: If the buyer does not hold the cylinder
            PaymentDeclined: If payment authorization fails
        """
        cylinder = await self._owned_cylinder(buyer, cylinder_id)
        warehouse = await self.repository.get_warehouse(cylinder.warehouse_id)

        quote = quote_refill(warehouse, cylinder.size, self.settings)
        order = await self._build_order(
            buyer,
            warehouse_id=warehouse.id,
            seller_id=cylinder.seller_id,
            order_type=OrderType.REFILL,
            status=OrderStatus.REFILL_REQUESTED,
            cylinder_size=cylinder.size,
            quote=quote,
            payment_method=payment_method,
            latitude=latitude,
            longitude=longitude,
        )
        order.source_cylinder_id = cylinder.id
        order.qr_code = generate_handoff_token()

        await self._authorize(order)
        self.session.add(order)
        self.state_machine.record_creation(order, buyer.id, "Refill requested")

        self.ledger.append_entry(
            order, TimelineEntryType.SALE, REFILL_SALE_CAUSE, order.subtotal
        )
        self.ledger.append_entry(
            order, TimelineEntryType.DELIVERY_FEE, DELIVERY_FEE_CAUSE, quote.fee_total
        )
        await self.session.flush()

        cylinder.status = CylinderStatus.IN_REFILL
        cylinder.order_id = order.id
        await self.session.flush()

        logger.info(
            "Refill requested",
            order_id=str(order.id),
            order_number=order.order_number,
            cylinder_id=str(cylinder.id),
        )
        self._emit_order(order, "order.created")
        await self._auto_dispatch(order, actor_id=None)
        return order

    async def request_return_and_rate(
        self,
        buyer: Party,
        cylinder_id: uuid.UUID,
        rating: int,
        comment: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Order:
        """
        Return a cylinder for its deposit and rate the order it came with.

        Raises:
            ResourceNotFound: If the cylinder does not exist
            InvalidOrderRequest: If the buyer does not hold the cylinder
            RatingExists: If the originating order was already rated
        """
        cylinder = await self._owned_cylinder(buyer, cylinder_id)
        if await self.repository.rating_exists(cylinder.origin_order_id):
            raise RatingExists(
                "This order has already been rated",
                order_id=str(cylinder.origin_order_id),
            )

        quote = quote_return(self.settings)
        order = await self._build_order(
            buyer,
            warehouse_id=cylinder.warehouse_id,
            seller_id=cylinder.seller_id,
            order_type=OrderType.RETURN,
            status=OrderStatus.RETURN_REQUESTED,
            cylinder_size=cylinder.size,
            quote=quote,
            payment_method=PaymentMethod.COD,
            latitude=latitude,
            longitude=longitude,
        )
        order.source_cylinder_id = cylinder.id
        order.qr_code = generate_handoff_token()
        self.session.add(order)
        self.state_machine.record_creation(order, buyer.id, "Return requested")

        self.ledger.append_entry(
            order, TimelineEntryType.PICKUP_FEE, PICKUP_FEE_CAUSE, quote.fee_total
        )
        if cylinder.security_fee and cylinder.security_fee > 0:
            self.ledger.append_entry(
                order,
                TimelineEntryType.REFUND,
                SECURITY_DEPOSIT_CAUSE,
                money(cylinder.security_fee),
                LiabilityType.REFUNDABLE,
            )

        self.session.add(
            OrderRating(
                order_id=cylinder.origin_order_id,
                buyer_id=buyer.id,
                rating=rating,
                comment=comment,
            )
        )
        await self.session.flush()

        cylinder.status = CylinderStatus.RETURNED
        cylinder.order_id = order.id
        await self.session.flush()

        logger.info(
            "Return requested",
            order_id=str(order.id),
            order_number=order.order_number,
            cylinder_id=str(cylinder.id),
            rating=rating,
        )
        self._emit_order(order, "order.created")
        await self._auto_dispatch(order, actor_id=None)
        return order

    # Seller and admin dispatch

    async def mark_ready(self, seller: Party, order_id: uuid.UUID) -> Order:
        """
        Hand the order to dispatch: assigned on a zone match, else pickup_ready.

        Raises:
            Forbidden: If the actor is not the order's seller or an admin
            InvalidTransition: If the order is not pending or back in store
        """
        order = await self.repository.get_order(order_id)
        if seller.role != PartyRole.ADMIN and order.seller_id != seller.id:
            raise Forbidden("Only the order's seller can mark it ready", order_id=str(order.id))
        self.state_machine.resolve(order, OrderEvent.MARK_READY)

        await self._reserve_for_redelivery(order)
        driver = await self.dispatcher.dispatch(order.pickup_point)
        if driver is not None:
            await self._bind_driver(order, driver.id, seller.id, "Dispatched on ready")
        else:
            await self.state_machine.apply(
                order, OrderEvent.MARK_READY, actor_id=seller.id, note="Awaiting driver"
            )
            self._emit_order(order, "order.status_changed")
        return order

    async def assign_driver(
        self,
        admin: Party,
        order_id: uuid.UUID,
        driver_id: uuid.UUID,
    ) -> Order:
        """
        Manually assign a driver.

        Raises:
            InvalidTransition: If the order cannot take a driver now
            ResourceNotFound: If the driver does not exist
            DriverUnavailable: If the driver is not available
        """
        order = await self.repository.get_order(order_id)
        self.state_machine.resolve(order, OrderEvent.ASSIGN_DRIVER)
        driver = await self.repository.get_party(driver_id, PartyRole.DRIVER)

        await self._reserve_for_redelivery(order)
        await self.dispatcher.claim(driver.id)
        await self._bind_driver(order, driver.id, admin.id, "Assigned by admin")
        return order

    # Driver actions

    async def accept(
        self,
        driver: Party,
        order_id: uuid.UUID,
        cylinders: Sequence,
    ) -> Order:
        """
        Accept an assigned order after verifying the cylinders picked up.

        Each verified cylinder is upserted by serial number and bound to the
        order.

        Raises:
            InvalidTransition: If the order is not assigned
            CylinderVerificationError: If the cylinders do not cover the order
        """
        order = await self._driver_order(driver, order_id)
        self.state_machine.resolve(order, OrderEvent.ACCEPT)

        serials = [c.serial_number for c in cylinders]
        if len(serials) != order.quantity:
            raise CylinderVerificationError(
                f"Expected {order.quantity} cylinders, got {len(serials)}",
                order_id=str(order.id),
            )
        if any(not s for s in serials) or len(set(serials)) != len(serials):
            raise CylinderVerificationError(
                "Cylinder serial numbers must be unique and non-empty",
                order_id=str(order.id),
            )

        existing = await self.repository.get_cylinders_by_serial(serials)
        for serial, cylinder in existing.items():
            if (
                cylinder.buyer_id is not None
                and cylinder.buyer_id != order.buyer_id
                and cylinder.status == CylinderStatus.ACTIVE
            ):
                raise CylinderVerificationError(
                    f"Cylinder {serial} is held by another buyer",
                    order_id=str(order.id),
                    serial_number=serial,
                )

        await self.state_machine.apply(
            order, OrderEvent.ACCEPT, actor_id=driver.id, note="Cylinders verified"
        )
        self._upsert_cylinders(order, cylinders, existing)
        await self.session.flush()

        self._emit_order(order, "order.status_changed")
        return order

    async def generate_qr(self, driver: Party, order_id: uuid.UUID) -> tuple[Order, str]:
        order = await self._driver_order(driver, order_id)
        token = await self.handoff.issue(order, driver.id)
        self._emit_order(order, "order.status_changed")
        return order, token

    async def scan_qr(self, driver: Party, order_id: uuid.UUID, code: str) -> Order:
        """
        Apply a handoff scan.

        Raises:
            InvalidTransition: If no scan is expected in the current state
            QRMismatch: If the code is not this order's token
        """
        order = await self._driver_order(driver, order_id)
        transition = await self.handoff.scan(order, code, driver.id)
        if transition.target in DRIVER_RELEASE_STATES:
            await self.dispatcher.release(driver.id)
        self._emit_order(order, "order.status_changed")
        return order

    async def complete(self, driver: Party, order_id: uuid.UUID) -> Order:
        """Close a delivered order. The driver was already freed by the delivery scan."""
        order = await self._driver_order(driver, order_id)
        await self.state_machine.apply(order, OrderEvent.COMPLETE, actor_id=driver.id)
        self._emit_order(order, "order.status_changed")
        return order

    # Cancellation

    async def cancel(
        self,
        actor: Party,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Cancel an order that has not been picked up yet.

        Releases reserved stock and the bound driver, puts the source
        cylinder back with the buyer and, for prepaid orders, records a
        refund of the grand total. Nothing is deleted.

        Raises:
            Forbidden: If the actor is neither the buyer nor an admin
            InvalidTransition: If the order is past pickup or terminal
        """
        order = await self.repository.get_order(order_id)
        if actor.role != PartyRole.ADMIN and order.buyer_id != actor.id:
            raise Forbidden("Only the buyer or an admin can cancel", order_id=str(order.id))

        from_status = order.status
        was_reserved = order.inventory_reserved

        def release_reservation(target: Order) -> None:
            target.inventory_reserved = False

        await self.state_machine.apply(
            order,
            OrderEvent.CANCEL,
            actor_id=actor.id,
            note=reason,
            effect=release_reservation,
        )

        if was_reserved:
            await self.inventory.release(order.warehouse_id, order.cylinder_size, order.quantity)
        if order.driver_id is not None and from_status in DRIVER_BOUND_STATES:
            await self.dispatcher.release(order.driver_id)
        if order.source_cylinder_id is not None:
            cylinder = await self.repository.get_cylinder(order.source_cylinder_id)
            cylinder.status = CylinderStatus.ACTIVE
            cylinder.location = CylinderLocation.BUYER
            cylinder.order_id = cylinder.origin_order_id
        if order.payment_method != PaymentMethod.COD and order.transaction_id:
            self.ledger.append_entry(
                order,
                TimelineEntryType.REFUND,
                CANCELLATION_CAUSE,
                order.grand_total,
                LiabilityType.REFUNDABLE,
            )
        await self.session.flush()

        logger.info(
            "Order cancelled",
            order_id=str(order.id),
            order_number=order.order_number,
            from_status=from_status.value,
            released_stock=was_reserved,
        )
        self._emit_order(order, "order.status_changed")
        return order

    # Internals

    async def _build_order(
        self,
        buyer: Party,
        warehouse_id: uuid.UUID,
        seller_id: uuid.UUID,
        order_type: OrderType,
        status: OrderStatus,
        cylinder_size,
        quote: PriceQuote,
        payment_method: PaymentMethod,
        is_urgent: bool = False,
        delivery_address: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Order:
        if latitude is None or longitude is None:
            latitude, longitude = buyer.latitude, buyer.longitude

        order = Order(
            id=uuid.uuid4(),
            order_number=await self.repository.next_order_number(),
            buyer_id=buyer.id,
            seller_id=seller_id,
            warehouse_id=warehouse_id,
            order_type=order_type,
            status=status,
            cylinder_size=cylinder_size,
            is_urgent=is_urgent,
            payment_method=payment_method,
            inventory_reserved=False,
            delivery_address=delivery_address,
            delivery_lat=latitude,
            delivery_lng=longitude,
            status_history=[],
            timeline_entries=[],
            driver_earnings=[],
        )
        quote.apply_to(order)
        return order

    async def _authorize(self, order: Order) -> None:
        authorization = await self.authorizer.authorize(
            order.order_number, order.grand_total, order.payment_method
        )
        if not authorization.success:
            logger.warning(
                "Payment declined",
                order_number=order.order_number,
                method=order.payment_method.value,
                reason=authorization.message,
            )
            raise PaymentDeclined(
                authorization.message or "Payment was declined",
                order_number=order.order_number,
            )
        order.transaction_id = authorization.transaction_id

    async def _owned_cylinder(self, buyer: Party, cylinder_id: uuid.UUID) -> Cylinder:
        cylinder = await self.repository.get_cylinder(cylinder_id)
        if cylinder.buyer_id != buyer.id or cylinder.status not in (
            CylinderStatus.ACTIVE,
            CylinderStatus.EMPTY,
        ):
            raise InvalidOrderRequest(
                "Cylinder is not held by this buyer",
                cylinder_id=str(cylinder_id),
                cylinder_status=cylinder.status.value,
            )
        return cylinder

    async def _driver_order(self, driver: Party, order_id: uuid.UUID) -> Order:
        order = await self.repository.get_order(order_id)
        if order.driver_id != driver.id:
            raise Forbidden("Order is not assigned to this driver", order_id=str(order.id))
        return order

    async def _reserve_for_redelivery(self, order: Order) -> None:
        """A refilled order goes out with a unit from stock."""
        if order.status == OrderStatus.REFILL_IN_STORE and not order.inventory_reserved:
            await self.inventory.reserve(order.warehouse_id, order.cylinder_size, order.quantity)
            order.inventory_reserved = True

    async def _auto_dispatch(self, order: Order, actor_id: Optional[uuid.UUID]) -> None:
        driver = await self.dispatcher.dispatch(order.pickup_point)
        if driver is None:
            logger.info(
                "Order left unassigned",
                order_id=str(order.id),
                status=order.status.value,
            )
            return
        await self._bind_driver(order, driver.id, actor_id, "Dispatched automatically")

    async def _bind_driver(
        self,
        order: Order,
        driver_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        note: str,
    ) -> None:
        def set_driver(target: Order) -> None:
            target.driver_id = driver_id

        await self.state_machine.apply(
            order,
            OrderEvent.ASSIGN_DRIVER,
            actor_id=actor_id,
            note=note,
            effect=set_driver,
        )
        fee_entry = self.ledger.fee_entry(order)
        if fee_entry is not None:
            self.ledger.add_earning(order, driver_id, fee_entry, leg=self._current_leg(order))
        await self.session.flush()

        self._emit_order(order, "order.assigned")

    @staticmethod
    def _current_leg(order: Order) -> int:
        """Each delivery scan closes a leg; a refill goes out again on leg 2."""
        completed = sum(
            1 for h in order.status_history if h.event == OrderEvent.DELIVERY_SCAN.value
        )
        return completed + 1

    def _upsert_cylinders(
        self,
        order: Order,
        verified: Sequence,
        existing: dict[str, Cylinder],
    ) -> None:
        unit_deposit = Decimal("0")
        if order.quantity:
            unit_deposit = money(order.security_charges / order.quantity)
        for index, item in enumerate(verified):
            cylinder = existing.get(item.serial_number)
            if cylinder is None:
                cylinder = Cylinder(
                    serial_number=item.serial_number,
                    qr_code=f"{order.order_number}-{index + 1}",
                    origin_order_id=order.id,
                    security_fee=unit_deposit,
                )
                self.session.add(cylinder)
            elif order.source_cylinder_id is None:
                cylinder.origin_order_id = order.id
                cylinder.security_fee = unit_deposit

            cylinder.size = order.cylinder_size
            cylinder.status = CylinderStatus.ACTIVE
            cylinder.location = CylinderLocation.WAREHOUSE
            cylinder.seller_id = order.seller_id
            cylinder.warehouse_id = order.warehouse_id
            cylinder.order_id = order.id
            if item.tare_weight is not None:
                cylinder.tare_weight = item.tare_weight
            if item.gross_weight is not None:
                cylinder.gross_weight = item.gross_weight

        logger.info(
            "Cylinders verified",
            order_id=str(order.id),
            serials=[item.serial_number for item in verified],
        )

    def _emit_order(self, order: Order, event: str) -> None:
        self.emit(
            event,
            {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "status": order.status.value,
                "order_type": order.order_type.value,
                "driver_id": str(order.driver_id) if order.driver_id else None,
            },
            audiences=order_audiences(order.buyer_id, order.seller_id, order.driver_id),
        )
