import hmac
import logging
from typing import Any, Dict

from fastapi import Depends, Header, HTTPException, status
from firebase_admin import auth as admin_auth

from ...config import Settings, get_settings
from ...firebase import FirebaseNotInitialized, get_firestore_client
from ...notifications import FcmNotifier

logger = logging.getLogger("billing.auth")


def get_db():
    try:
        return get_firestore_client()
    except FirebaseNotInitialized as exc:
        logger.error("Firestore unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Firebase is not initialized",
        ) from exc


def get_notifier() -> FcmNotifier:
    return FcmNotifier()


def require_firebase_user(authorization: str = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing auth token",
        )
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing auth token",
        )
    try:
        return admin_auth.verify_id_token(token)
    except Exception as exc:
        logger.warning("Firebase token verification failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid auth token",
        ) from exc


def require_admin_user(
    user: Dict[str, Any] = Depends(require_firebase_user),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    uid = str(user.get("uid"))
    if user.get("admin") is True or uid in settings.admin_uid_set:
        return user
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Admin access required",
    )


def require_scheduler(
    x_scheduler_token: str = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.scheduler_token:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="SCHEDULER_TOKEN is not configured",
        )
    supplied = (x_scheduler_token or "").encode("utf-8")
    if not hmac.compare_digest(supplied, settings.scheduler_token.encode("utf-8")):
        logger.warning("Rejected scheduled job call with bad scheduler token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid scheduler token",
        )
