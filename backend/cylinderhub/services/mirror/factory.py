"""Process-wide mirror instances built from settings."""

from typing import Optional

from cylinderhub.cache.redis_client import RedisClient
from cylinderhub.core.config import Settings, get_settings
from cylinderhub.core.logging import get_logger
from cylinderhub.services.mirror.heartbeat import MirrorSyncLock
from cylinderhub.services.mirror.memory import InMemoryMirror
from cylinderhub.services.mirror.port import LedgerMirrorPort
from cylinderhub.services.mirror.service import ExternalLedgerMirror

logger = get_logger(__name__)

_mirror: Optional[ExternalLedgerMirror] = None
_sync_lock: Optional[MirrorSyncLock] = None


def build_mirror_port(settings: Settings) -> LedgerMirrorPort:
    if settings.mirror_backend == "google_sheets":
        from cylinderhub.services.mirror.sheets import GoogleSheetsMirror

        if not settings.mirror_spreadsheet_id:
            raise ValueError("APP_MIRROR_SPREADSHEET_ID is required for the google_sheets mirror")
        logger.info(
            "Using Google Sheets ledger mirror",
            spreadsheet_id=settings.mirror_spreadsheet_id,
        )
        return GoogleSheetsMirror(
            spreadsheet_id=settings.mirror_spreadsheet_id,
            credentials_file=settings.mirror_credentials_file,
            pending_worksheet=settings.mirror_pending_worksheet,
            completed_worksheet=settings.mirror_completed_worksheet,
        )

    logger.info("Using in-memory ledger mirror")
    return InMemoryMirror()


def get_ledger_mirror() -> ExternalLedgerMirror:
    global _mirror

    if _mirror is None:
        _mirror = ExternalLedgerMirror(build_mirror_port(get_settings()))
    return _mirror


def get_sync_lock() -> MirrorSyncLock:
    global _sync_lock

    if _sync_lock is None:
        _sync_lock = MirrorSyncLock()
    return _sync_lock


def attach_redis_lock(redis: RedisClient) -> None:
    """Make mirror syncs single-flight across processes."""
    get_sync_lock().redis = redis


def reset_mirror() -> None:
    global _mirror, _sync_lock

    _mirror = None
    _sync_lock = None
