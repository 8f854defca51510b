"""Order pricing rules.

Quotes are computed from the warehouse's price list at order time and
copied onto the order. Subtotal and grand total are never stored; they are
derived from the components here and on the Order model.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Sequence

from cylinderhub.core.config import Settings
from cylinderhub.core.exceptions import InvalidOrderRequest
from cylinderhub.database.models import CylinderSize, Warehouse

CENT = Decimal("0.01")


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceQuote:
    """Pricing components for one order."""

    cylinder_price: Decimal
    quantity: int = 1
    security_charges: Decimal = Decimal("0")
    delivery_charges: Decimal = Decimal("0")
    urgent_delivery_fee: Decimal = Decimal("0")
    add_ons_total: Decimal = Decimal("0")
    add_ons: list[dict[str, Any]] = field(default_factory=list)

    @property
    def subtotal(self) -> Decimal:
        return self.cylinder_price * self.quantity + self.add_ons_total

    @property
    def grand_total(self) -> Decimal:
        return (
            self.subtotal
            + self.security_charges
            + self.delivery_charges
            + self.urgent_delivery_fee
        )

    @property
    def fee_total(self) -> Decimal:
        """Delivery charge plus urgent surcharge, paid out to the driver."""
        return self.delivery_charges + self.urgent_delivery_fee

    def apply_to(self, order) -> None:
        order.cylinder_price = self.cylinder_price
        order.quantity = self.quantity
        order.security_charges = self.security_charges
        order.delivery_charges = self.delivery_charges
        order.urgent_delivery_fee = self.urgent_delivery_fee
        order.add_ons_total = self.add_ons_total
        order.add_ons = list(self.add_ons)


def gas_price(warehouse: Warehouse, size: CylinderSize) -> Decimal:
    """Price of the gas in one cylinder of ``size``."""
    return money(size.weight_kg * Decimal(str(warehouse.price_per_kg or 0)))


def quote_new_order(
    warehouse: Warehouse,
    size: CylinderSize,
    quantity: int,
    is_urgent: bool,
    add_on_selections: Sequence[Any],
    settings: Settings,
) -> PriceQuote:
    """
    Price a new cylinder order.

    Raises:
        InvalidOrderRequest: If an add-on is not in the warehouse catalog
    """
    stock = warehouse.stock_for(size)
    deposit = money(stock.price) if stock is not None else Decimal("0")

    add_ons = []
    add_ons_total = Decimal("0")
    for selection in add_on_selections:
        unit_price = warehouse.add_on_price(selection.title)
        if unit_price is None:
            raise InvalidOrderRequest(
                f"Add-on '{selection.title}' is not offered by this warehouse",
                warehouse_id=str(warehouse.id),
            )
        line_total = money(unit_price * selection.quantity)
        add_ons_total += line_total
        add_ons.append(
            {
                "title": selection.title,
                "price": str(money(unit_price)),
                "quantity": selection.quantity,
            }
        )

    return PriceQuote(
        cylinder_price=gas_price(warehouse, size),
        quantity=quantity,
        security_charges=money(deposit * quantity),
        delivery_charges=money(
            settings.urgent_delivery_charge if is_urgent else settings.standard_delivery_charge
        ),
        urgent_delivery_fee=money(settings.urgent_delivery_fee if is_urgent else 0),
        add_ons_total=money(add_ons_total),
        add_ons=add_ons,
    )


def quote_refill(
    warehouse: Warehouse,
    size: CylinderSize,
    settings: Settings,
) -> PriceQuote:
    """
    Price refilling one buyer-owned cylinder.

    Gas is charged by weight; warehouses that do not price by weight fall
    back to the flat per-cylinder price.
    """
    price = gas_price(warehouse, size)
    if price <= 0:
        stock = warehouse.stock_for(size)
        price = money(stock.price) if stock is not None else Decimal("0")
    return PriceQuote(
        cylinder_price=money(price),
        delivery_charges=money(settings.standard_delivery_charge),
    )


def quote_return(settings: Settings) -> PriceQuote:
    """Price picking up a cylinder for return; only the pickup fee is owed."""
    return PriceQuote(
        cylinder_price=Decimal("0"),
        delivery_charges=money(settings.pickup_fee),
    )
