"""
Driver endpoints: accept with cylinder verification, QR handoff, completion.
"""

from uuid import UUID

from fastapi import APIRouter

from cylinderhub.api.deps import CurrentDriver, OrderServiceDep
from cylinderhub.core.logging import get_logger
from cylinderhub.schemas.orders import (
    AcceptOrderRequest,
    OrderResponse,
    QRCodeResponse,
    ScanQRRequest,
    build_order_response,
)
from cylinderhub.services.handoff.qr import render_qr_data_url

logger = get_logger(__name__)

router = APIRouter(prefix="/driver/orders", tags=["driver"])


@router.post(
    "/{order_id}/accept",
    response_model=OrderResponse,
    summary="Accept an assigned order",
)
async def accept_order(
    order_id: UUID,
    body: AcceptOrderRequest,
    driver: CurrentDriver,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.accept(driver, order_id, body.cylinders)
    await service.commit()
    return build_order_response(order)


@router.post(
    "/{order_id}/generate-qr",
    response_model=QRCodeResponse,
    summary="Generate the pickup QR token",
)
async def generate_qr(
    order_id: UUID,
    driver: CurrentDriver,
    service: OrderServiceDep,
) -> QRCodeResponse:
    order, token = await service.generate_qr(driver, order_id)
    await service.commit()
    return QRCodeResponse(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        qr_code=token,
        qr_code_data_url=render_qr_data_url(token),
    )


@router.post(
    "/{order_id}/scan-qr",
    response_model=OrderResponse,
    summary="Scan the handoff QR code",
    description="First scan picks up, second scan completes the leg for the order type",
)
async def scan_qr(
    order_id: UUID,
    body: ScanQRRequest,
    driver: CurrentDriver,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.scan_qr(driver, order_id, body.qr_code)
    await service.commit()
    return build_order_response(order)


@router.post(
    "/{order_id}/complete",
    response_model=OrderResponse,
    summary="Complete a delivered order",
)
async def complete_order(
    order_id: UUID,
    driver: CurrentDriver,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.complete(driver, order_id)
    await service.commit()
    return build_order_response(order)
