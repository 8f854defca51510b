"""Seller endpoints."""

from uuid import UUID

from fastapi import APIRouter

from cylinderhub.api.deps import CurrentSeller, OrderServiceDep
from cylinderhub.schemas.orders import OrderResponse, build_order_response

router = APIRouter(prefix="/seller/orders", tags=["seller"])


@router.post(
    "/{order_id}/ready",
    response_model=OrderResponse,
    summary="Mark an order ready for dispatch",
    description="Assigns a zone driver when one matches, otherwise queues for manual assignment",
)
async def mark_ready(
    order_id: UUID,
    seller: CurrentSeller,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.mark_ready(seller, order_id)
    await service.commit()
    return build_order_response(order)
