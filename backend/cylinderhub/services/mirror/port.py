"""
Storage port for the external ledger mirror.

The mirror is split into two views, one per entry status. Adapters only
store rows keyed by System ID; the move and reconciliation rules live in
``ExternalLedgerMirror``.
"""

import enum
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from cylinderhub.database.models import EntryStatus
from cylinderhub.services.ledger.projection import MirrorRow


class MirrorView(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"

    @classmethod
    def for_status(cls, status: Optional[str]) -> "MirrorView":
        if (status or "").strip().lower() == EntryStatus.COMPLETED.value:
            return cls.COMPLETED
        return cls.PENDING

    @property
    def other(self) -> "MirrorView":
        return MirrorView.COMPLETED if self == MirrorView.PENDING else MirrorView.PENDING


class LedgerMirrorPort(ABC):
    """Tabular store holding the pending and completed views."""

    @abstractmethod
    async def upsert_row(self, view: MirrorView, row: MirrorRow) -> None:
        """Replace the row with the same System ID in ``view``, or append it."""

    @abstractmethod
    async def delete_row(self, view: MirrorView, timeline_id: str) -> bool:
        """Delete the row with this System ID from ``view``; True if one existed."""

    @abstractmethod
    async def read_rows(self, view: MirrorView) -> list[MirrorRow]:
        """All data rows of ``view`` in sheet order."""

    @abstractmethod
    async def replace_view(self, view: MirrorView, rows: Sequence[MirrorRow]) -> None:
        """Overwrite ``view`` with exactly ``rows``."""
