import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from ...config import Settings, get_settings
from ...firebase import FirebaseNotInitialized, get_storage_bucket
from ...notifications import FcmNotifier
from ...storage_cleanup import cleanup_deleted_storage
from ...sweeps import expire_subscriptions, send_expiry_warnings
from .deps import get_db, get_notifier, require_scheduler

logger = logging.getLogger("billing.jobs")

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_scheduler)])


def get_bucket():
    try:
        return get_storage_bucket()
    except (FirebaseNotInitialized, ValueError) as exc:
        logger.error("Storage bucket unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Storage bucket is not configured",
        ) from exc


@router.post("/expire-subscriptions")
def run_expire_subscriptions(
    settings: Settings = Depends(get_settings),
    db=Depends(get_db),
    notifier: FcmNotifier = Depends(get_notifier),
) -> Dict[str, Any]:
    return expire_subscriptions(db, notifier, workers=settings.notification_workers)


@router.post("/expiry-warnings")
def run_expiry_warnings(
    settings: Settings = Depends(get_settings),
    db=Depends(get_db),
    notifier: FcmNotifier = Depends(get_notifier),
) -> Dict[str, Any]:
    return send_expiry_warnings(
        db,
        notifier,
        thresholds=settings.expiry_warning_thresholds,
        workers=settings.notification_workers,
    )


@router.post("/cleanup-storage")
def run_cleanup_storage(db=Depends(get_db), bucket=Depends(get_bucket)) -> Dict[str, Any]:
    return cleanup_deleted_storage(db, bucket)
