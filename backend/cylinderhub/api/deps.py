"""
FastAPI dependencies for authentication, role checks and service wiring.

The bearer token names the acting party; the party row decides the role.
Services are built per request from the request's session so that route
handlers can finish a unit of work with a single ``commit()``.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from cylinderhub.core.logging import get_logger, set_actor_id
from cylinderhub.core.security import TokenError, decode_token, get_token_party_id
from cylinderhub.database.connection import get_db
from cylinderhub.database.models import Party, PartyRole
from cylinderhub.services.events.publisher import EventPublisher, LoggingEventPublisher
from cylinderhub.services.ledger.reconciliation import PaymentLedgerService
from cylinderhub.services.mirror.factory import get_ledger_mirror, get_sync_lock
from cylinderhub.services.mirror.heartbeat import MirrorSyncLock
from cylinderhub.services.mirror.service import ExternalLedgerMirror
from cylinderhub.services.orders.service import OrderService
from cylinderhub.services.payments.authorizer import (
    OfflinePaymentAuthorizer,
    PaymentAuthorizer,
)

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)

_publisher: EventPublisher = LoggingEventPublisher()


def set_event_publisher(publisher: EventPublisher) -> None:
    """Install the process-wide publisher, e.g. Redis at startup."""
    global _publisher
    _publisher = publisher


def get_event_publisher() -> EventPublisher:
    return _publisher


def get_payment_authorizer() -> PaymentAuthorizer:
    return OfflinePaymentAuthorizer()


DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


async def get_current_party(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DatabaseSession,
) -> Party:
    """
    Validate the bearer token and load the acting party.

    Raises:
        HTTPException: 401 if the token is missing or invalid, 403 if the
            party is inactive
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        party_id: UUID = get_token_party_id(decode_token(credentials.credentials))
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code)
        raise credentials_exception from e

    party = await db.get(Party, party_id)
    if party is None:
        logger.warning("Authentication failed: Party not found", party_id=str(party_id))
        raise credentials_exception

    if not party.is_active:
        logger.warning("Authentication failed: Party is inactive", party_id=str(party.id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive account",
        )

    set_actor_id(str(party.id))
    return party


def require_role(*allowed_roles: PartyRole):
    """
    Create a dependency that requires one of ``allowed_roles``.

    Example:
        @router.post("/assign", dependencies=[Depends(require_role(PartyRole.ADMIN))])
    """

    async def role_checker(
        party: Annotated[Party, Depends(get_current_party)],
    ) -> Party:
        if party.role not in allowed_roles:
            logger.warning(
                "Access denied: Insufficient permissions",
                party_id=str(party.id),
                party_role=party.role.value,
                required_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return party

    return role_checker


def get_order_service(
    db: DatabaseSession,
    mirror: Annotated[ExternalLedgerMirror, Depends(get_ledger_mirror)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
    authorizer: Annotated[PaymentAuthorizer, Depends(get_payment_authorizer)],
) -> OrderService:
    return OrderService(db, mirror, publisher=publisher, authorizer=authorizer)


def get_payment_ledger_service(
    db: DatabaseSession,
    mirror: Annotated[ExternalLedgerMirror, Depends(get_ledger_mirror)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> PaymentLedgerService:
    return PaymentLedgerService(db, mirror, publisher=publisher)


CurrentParty = Annotated[Party, Depends(get_current_party)]
CurrentBuyer = Annotated[Party, Depends(require_role(PartyRole.BUYER))]
CurrentSeller = Annotated[Party, Depends(require_role(PartyRole.SELLER))]
CurrentDriver = Annotated[Party, Depends(require_role(PartyRole.DRIVER))]
CurrentAdmin = Annotated[Party, Depends(require_role(PartyRole.ADMIN))]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
PaymentLedgerServiceDep = Annotated[PaymentLedgerService, Depends(get_payment_ledger_service)]
SyncLockDep = Annotated[MirrorSyncLock, Depends(get_sync_lock)]
