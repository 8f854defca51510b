"""
Payment authorization collaborator.

Gateway integration is owned by the payments team; the fulfillment core
only needs a synchronous yes/no with a transaction reference before it
commits an order.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from cylinderhub.core.logging import get_logger
from cylinderhub.database.models import PaymentMethod

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentAuthorization:
    success: bool
    transaction_id: Optional[str] = None
    message: Optional[str] = None


class PaymentAuthorizer(Protocol):
    async def authorize(
        self,
        reference: str,
        amount: Decimal,
        method: PaymentMethod,
    ) -> PaymentAuthorization:
        ...


class OfflinePaymentAuthorizer:
    """
    Authorizer used when no gateway is wired in.

    Cash on delivery is always accepted. Wallet and card payments are
    accepted with a locally generated reference and settled by finance
    through the ledger mirror.
    """

    async def authorize(
        self,
        reference: str,
        amount: Decimal,
        method: PaymentMethod,
    ) -> PaymentAuthorization:
        if amount < 0:
            return PaymentAuthorization(success=False, message="Negative amount")

        prefix = "COD" if method == PaymentMethod.COD else method.value.upper()
        transaction_id = f"{prefix}-{uuid.uuid4().hex[:12].upper()}"
        logger.info(
            "Payment authorized",
            reference=reference,
            amount=str(amount),
            method=method.value,
            transaction_id=transaction_id,
        )
        return PaymentAuthorization(success=True, transaction_id=transaction_id)
