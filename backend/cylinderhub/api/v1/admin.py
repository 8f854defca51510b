"""
Admin endpoints: manual driver assignment, ledger clearing and mirror
reconciliation.
"""

import hmac
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Header, HTTPException, Query, status

from cylinderhub.api.deps import (
    CurrentAdmin,
    OrderServiceDep,
    PaymentLedgerServiceDep,
    SyncLockDep,
)
from cylinderhub.core.config import get_settings
from cylinderhub.core.exceptions import MirrorSyncFailure
from cylinderhub.core.logging import get_logger, log_performance
from cylinderhub.database.models import EntryStatus
from cylinderhub.schemas.orders import AssignDriverRequest, OrderResponse, build_order_response
from cylinderhub.schemas.payments import (
    ClearEntryRequest,
    LedgerEntryListResponse,
    LedgerEntryResponse,
    MirrorRebuildResponse,
    MirrorSyncResponse,
    MirrorWebhookRequest,
    MirrorWebhookResponse,
)
from cylinderhub.services.ledger.reconciliation import LedgerListing

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _listing_response(listing: LedgerListing) -> LedgerEntryResponse:
    entry, order, person = listing.entry, listing.order, listing.person
    return LedgerEntryResponse(
        timeline_id=entry.timeline_id,
        order_id=order.id,
        order_number=order.order_number,
        entry_type=entry.entry_type,
        cause=entry.cause,
        amount=entry.amount,
        liability_type=entry.liability_type,
        payment_method=entry.payment_method,
        status=entry.status,
        person=person.name,
        person_type=person.person_type,
        reference_id=entry.reference_id,
        processed_by=entry.processed_by,
        processed_at=entry.processed_at,
        created_at=entry.created_at,
    )


@router.post(
    "/orders/{order_id}/assign",
    response_model=OrderResponse,
    summary="Assign a driver manually",
)
async def assign_driver(
    order_id: UUID,
    body: AssignDriverRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.assign_driver(admin, order_id, body.driver_id)
    await service.commit()
    return build_order_response(order)


@router.get(
    "/payments",
    response_model=LedgerEntryListResponse,
    summary="List visible ledger entries",
)
async def list_payments(
    admin: CurrentAdmin,
    service: PaymentLedgerServiceDep,
    entry_status: Annotated[Optional[EntryStatus], Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> LedgerEntryListResponse:
    listings, total, pending_total, completed_total = await service.list_entries(
        status=entry_status, limit=limit, offset=offset
    )
    return LedgerEntryListResponse(
        items=[_listing_response(listing) for listing in listings],
        total=total,
        pending_total=pending_total,
        completed_total=completed_total,
    )


@router.patch(
    "/payments/{timeline_id}/clear",
    response_model=LedgerEntryResponse,
    summary="Mark a ledger entry paid",
)
async def clear_payment(
    timeline_id: str,
    body: ClearEntryRequest,
    admin: CurrentAdmin,
    service: PaymentLedgerServiceDep,
) -> LedgerEntryResponse:
    entry = await service.clear_entry(
        timeline_id,
        processed_by=str(admin.id),
        reference_id=body.reference_id,
        notes=body.notes,
    )
    await service.commit()
    return _listing_response(await service.get_listing(entry.timeline_id))


@router.post(
    "/payments/sync",
    response_model=MirrorSyncResponse,
    summary="Pull finance edits from the mirror and rebuild it",
)
async def sync_payments(
    admin: CurrentAdmin,
    service: PaymentLedgerServiceDep,
    lock: SyncLockDep,
) -> MirrorSyncResponse:
    async with lock.hold(wait=False) as acquired:
        if not acquired:
            raise MirrorSyncFailure("A mirror sync is already running", code="MIRROR_SYNC_BUSY")
        with log_performance(logger, "mirror_sync", requested_by=str(admin.id)):
            result = await service.sync()
    return MirrorSyncResponse(
        rows_pulled=result.rows_pulled,
        entries_cleared=result.entries_cleared,
        pending_rows=result.pending_rows,
        completed_rows=result.completed_rows,
    )


@router.post(
    "/payments/rebuild-sheet",
    response_model=MirrorRebuildResponse,
    summary="Regenerate the mirror from the ledger",
)
async def rebuild_sheet(
    admin: CurrentAdmin,
    service: PaymentLedgerServiceDep,
    lock: SyncLockDep,
) -> MirrorRebuildResponse:
    async with lock.hold(wait=False) as acquired:
        if not acquired:
            raise MirrorSyncFailure("A mirror sync is already running", code="MIRROR_SYNC_BUSY")
        counts = await service.rebuild()
    logger.info("Mirror rebuild requested", admin_id=str(admin.id), **counts)
    return MirrorRebuildResponse(
        pending_rows=counts["pending"],
        completed_rows=counts["completed"],
    )


@router.post(
    "/payments/sync-webhook",
    response_model=MirrorWebhookResponse,
    summary="Reconcile one edited mirror row",
    description="Called by the sheet's edit trigger; authenticated by a shared token",
)
async def sync_webhook(
    body: MirrorWebhookRequest,
    service: PaymentLedgerServiceDep,
    x_webhook_token: Annotated[Optional[str], Header()] = None,
) -> MirrorWebhookResponse:
    secret = get_settings().mirror_webhook_secret
    if not x_webhook_token or not hmac.compare_digest(
        x_webhook_token.encode(), secret.encode()
    ):
        logger.warning("Mirror webhook rejected", system_id=body.system_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
        )

    entry, changed = await service.apply_webhook(
        body.system_id, body.status, body.reference_id
    )
    await service.commit()
    return MirrorWebhookResponse(
        timeline_id=entry.timeline_id,
        status=entry.status,
        changed=changed,
    )
