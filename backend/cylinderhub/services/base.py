"""
Commit boundary shared by the order and ledger services.

Services stage their writes on the session and queue events with ``emit``.
``commit`` then:

1. projects the ledger entries touched in this unit of work to mirror rows,
2. commits the database transaction,
3. publishes queued events,
4. schedules the mirror push in the background.

Nothing after step 2 can undo or fail the commit.
"""

from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from cylinderhub.core.logging import get_logger
from cylinderhub.services.events.publisher import EventPublisher, LoggingEventPublisher
from cylinderhub.services.ledger.timeline import PaymentTimelineLedger
from cylinderhub.services.mirror.service import ExternalLedgerMirror

logger = get_logger(__name__)


class TransactionalService:
    def __init__(
        self,
        session: AsyncSession,
        mirror: ExternalLedgerMirror,
        publisher: Optional[EventPublisher] = None,
    ):
        self.session = session
        self.mirror = mirror
        self.publisher = publisher or LoggingEventPublisher()
        self.ledger = PaymentTimelineLedger(session)
        self._outbox: list[tuple[str, dict[str, Any], Sequence[str]]] = []

    def emit(self, event: str, payload: dict[str, Any], audiences: Sequence[str] = ()) -> None:
        """Queue an event for publication after commit."""
        self._outbox.append((event, payload, tuple(audiences)))

    async def commit(self, push_mirror: bool = True) -> None:
        rows = []
        if self.ledger.touched:
            rows = await self.ledger.mirror_rows(self.ledger.touched.values())
        await self.session.commit()
        self.ledger.touched.clear()

        outbox, self._outbox = self._outbox, []
        for event, payload, audiences in outbox:
            try:
                await self.publisher.publish(event, payload, audiences)
            except Exception as e:
                logger.warning(
                    "Event publisher raised",
                    event_name=event,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        if push_mirror:
            self.mirror.schedule_push(rows)

    async def rollback(self) -> None:
        await self.session.rollback()
        self.ledger.touched.clear()
        self._outbox.clear()
