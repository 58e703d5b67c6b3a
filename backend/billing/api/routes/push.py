import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, ValidationError

from ...notifications import FcmNotifier, NotificationError, PushNotification, PushSendResponse
from .deps import get_notifier, require_admin_user

logger = logging.getLogger("billing.push")

router = APIRouter(prefix="/notifications", tags=["notifications"])


class SendToTokenRequest(BaseModel):
    token: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)


class SendToTokensRequest(BaseModel):
    tokens: List[str]
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)


class SendToTopicRequest(BaseModel):
    topic: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)


def _deliver(
    notifier: FcmNotifier,
    admin: Dict[str, Any],
    *,
    title: str,
    body: str,
    data: Dict[str, Any],
    token: Optional[str] = None,
    tokens: Optional[List[str]] = None,
    topic: Optional[str] = None,
) -> PushSendResponse:
    try:
        notification = PushNotification(
            token=token or None,
            tokens=[t for t in (tokens or []) if t and t.strip()],
            topic=topic or None,
            title=title,
            body=body,
            data=data,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    try:
        message_id = notifier.send(notification)
    except NotificationError as exc:
        logger.error("Admin %s push failed: %s", admin.get("uid"), exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    logger.info("Admin %s sent push %s", admin.get("uid"), message_id)
    return PushSendResponse(message_id=message_id, tokens_count=len(notification.tokens))


@router.post("/send", response_model=PushSendResponse)
def send_to_token(
    payload: SendToTokenRequest,
    admin: Dict[str, Any] = Depends(require_admin_user),
    notifier: FcmNotifier = Depends(get_notifier),
):
    return _deliver(notifier, admin, token=payload.token, title=payload.title, body=payload.body, data=payload.data)


@router.post("/send-multiple", response_model=PushSendResponse)
def send_to_tokens(
    payload: SendToTokensRequest,
    admin: Dict[str, Any] = Depends(require_admin_user),
    notifier: FcmNotifier = Depends(get_notifier),
):
    return _deliver(notifier, admin, tokens=payload.tokens, title=payload.title, body=payload.body, data=payload.data)


@router.post("/send-topic", response_model=PushSendResponse)
def send_to_topic(
    payload: SendToTopicRequest,
    admin: Dict[str, Any] = Depends(require_admin_user),
    notifier: FcmNotifier = Depends(get_notifier),
):
    return _deliver(notifier, admin, topic=payload.topic, title=payload.title, body=payload.body, data=payload.data)
