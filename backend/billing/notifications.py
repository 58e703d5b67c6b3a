from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from firebase_admin import messaging as admin_messaging
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger("billing.notifications")

NOTIFICATION_TYPE_EXPIRED = "subscription_expired"
NOTIFICATION_TYPE_WARNING = "subscription_warning"
CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"


class NotificationError(RuntimeError):
    pass


class PushNotification(BaseModel):
    token: Optional[str] = None
    tokens: List[str] = Field(default_factory=list)
    topic: Optional[str] = None
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_target(self) -> "PushNotification":
        if not self.title.strip() or not self.body.strip():
            raise ValueError("Title and body are required")
        targets = [bool(self.token), bool(self.tokens), bool(self.topic)]
        if sum(targets) != 1:
            raise ValueError("Exactly one of token, tokens or topic is required")
        return self


class PushSendResponse(BaseModel):
    success: bool = True
    message_id: str
    tokens_count: int = 0


def _stringify_push_data(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    result: Dict[str, str] = {}
    if not isinstance(data, dict):
        return result
    for key, value in data.items():
        if value is None:
            continue
        result[str(key)] = value if isinstance(value, str) else str(value)
    result["timestamp"] = str(int(time.time() * 1000))
    return result


def _android_config() -> admin_messaging.AndroidConfig:
    return admin_messaging.AndroidConfig(
        priority="high",
        notification=admin_messaging.AndroidNotification(click_action=CLICK_ACTION),
    )


def _apns_config() -> admin_messaging.APNSConfig:
    return admin_messaging.APNSConfig(
        headers={"apns-priority": "10"},
        payload=admin_messaging.APNSPayload(aps=admin_messaging.Aps(sound="default")),
    )


class FcmNotifier:
    """Sends push notifications through the Firebase Admin SDK (FCM v1)."""

    def send(self, notification: PushNotification) -> str:
        data = _stringify_push_data(notification.data)
        fcm_notification = admin_messaging.Notification(
            title=notification.title, body=notification.body
        )
        if notification.tokens:
            return self._send_multicast(notification.tokens, fcm_notification, data)
        message = admin_messaging.Message(
            token=notification.token,
            topic=notification.topic,
            notification=fcm_notification,
            data=data,
            android=_android_config(),
            apns=_apns_config(),
        )
        try:
            return admin_messaging.send(message)
        except Exception as exc:
            target = f"topic {notification.topic}" if notification.topic else "token"
            if isinstance(exc, admin_messaging.UnregisteredError):
                logger.warning("FCM token not registered; user may have uninstalled the app")
            raise NotificationError(f"Failed to send push notification to {target}: {exc}") from exc

    def _send_multicast(
        self,
        tokens: List[str],
        fcm_notification: admin_messaging.Notification,
        data: Dict[str, str],
    ) -> str:
        sent = 0
        for start in range(0, len(tokens), 500):
            chunk = tokens[start : start + 500]
            multicast = admin_messaging.MulticastMessage(
                tokens=chunk,
                notification=fcm_notification,
                data=data,
                android=_android_config(),
                apns=_apns_config(),
            )
            try:
                response = admin_messaging.send_each_for_multicast(multicast)
            except Exception as exc:
                raise NotificationError(f"Failed to send push notifications: {exc}") from exc
            sent += response.success_count
            for index, send_response in enumerate(response.responses):
                if not send_response.success:
                    logger.warning(
                        "FCM multicast delivery %s failed: %s",
                        start + index,
                        send_response.exception,
                    )
        if sent == 0:
            raise NotificationError(f"No push notifications delivered to {len(tokens)} tokens")
        return f"{sent}/{len(tokens)}"
