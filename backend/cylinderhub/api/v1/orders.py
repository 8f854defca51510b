"""
Order endpoints shared by all roles: placement, detail and cancellation.
"""

from uuid import UUID

from fastapi import APIRouter, Request, status

from cylinderhub.api.deps import CurrentBuyer, CurrentParty, OrderServiceDep
from cylinderhub.api.limiter import limiter
from cylinderhub.core.logging import get_logger
from cylinderhub.schemas.orders import (
    CancelOrderRequest,
    OrderCreateRequest,
    OrderCreatedResponse,
    OrderResponse,
    build_order_response,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post(
    "",
    response_model=OrderCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Reserve stock, authorize payment, create the order and attempt dispatch",
)
@limiter.limit("30/minute")
async def create_order(
    request: Request,
    body: OrderCreateRequest,
    buyer: CurrentBuyer,
    service: OrderServiceDep,
) -> OrderCreatedResponse:
    logger.info(
        "Creating order",
        buyer_id=str(buyer.id),
        warehouse_id=str(body.warehouse_id),
        size=body.cylinder_size.value,
        quantity=body.quantity,
    )
    order = await service.create_order(
        buyer,
        warehouse_id=body.warehouse_id,
        cylinder_size=body.cylinder_size,
        quantity=body.quantity,
        payment_method=body.payment_method,
        is_urgent=body.is_urgent,
        add_ons=body.add_ons,
        delivery_address=body.delivery_address,
        latitude=body.latitude,
        longitude=body.longitude,
    )
    await service.commit()
    return OrderCreatedResponse(
        order=build_order_response(order),
        driver_assigned=order.driver_id is not None,
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order detail",
)
async def get_order(
    order_id: UUID,
    party: CurrentParty,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.get_order(party, order_id)
    return build_order_response(order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel an order before pickup",
)
async def cancel_order(
    order_id: UUID,
    body: CancelOrderRequest,
    party: CurrentParty,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.cancel(party, order_id, reason=body.reason)
    await service.commit()
    return build_order_response(order)
