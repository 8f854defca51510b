"""
Buyer endpoints for cylinders already in the buyer's hands.
"""

from fastapi import APIRouter, status

from cylinderhub.api.deps import CurrentBuyer, OrderServiceDep
from cylinderhub.core.logging import get_logger
from cylinderhub.schemas.orders import (
    OrderCreatedResponse,
    RefillRequest,
    ReturnAndRateRequest,
    build_order_response,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/buyer", tags=["buyer"])


@router.post(
    "/refill",
    response_model=OrderCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a refill of an owned cylinder",
)
async def request_refill(
    body: RefillRequest,
    buyer: CurrentBuyer,
    service: OrderServiceDep,
) -> OrderCreatedResponse:
    order = await service.request_refill(
        buyer,
        body.cylinder_id,
        payment_method=body.payment_method,
        latitude=body.latitude,
        longitude=body.longitude,
    )
    await service.commit()
    return OrderCreatedResponse(
        order=build_order_response(order),
        driver_assigned=order.driver_id is not None,
    )


@router.post(
    "/request-return-and-rate",
    response_model=OrderCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Return a cylinder and rate its order",
    description="Creates the return pickup and stores the rating in one transaction",
)
async def request_return_and_rate(
    body: ReturnAndRateRequest,
    buyer: CurrentBuyer,
    service: OrderServiceDep,
) -> OrderCreatedResponse:
    order = await service.request_return_and_rate(
        buyer,
        body.cylinder_id,
        rating=body.rating,
        comment=body.comment,
        latitude=body.latitude,
        longitude=body.longitude,
    )
    await service.commit()
    return OrderCreatedResponse(
        order=build_order_response(order),
        driver_assigned=order.driver_id is not None,
    )
