"""
services/notification/push.py
Firebase Cloud Messaging gateway.

One dispatch becomes one batch call (messaging.send_each) carrying one message
per device token. The gateway answers per token, so a failure on one device
never hides the outcome for the others.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import firebase_admin
from firebase_admin import credentials, messaging

from config.settings import settings

logger = logging.getLogger(__name__)

# send_each accepts at most this many messages per call
FCM_BATCH_LIMIT = 500


@dataclass(frozen=True)
class RoutingProfile:
    channel_id: str
    priority: str      # "high" | "normal"
    sound: str = "default"


ROUTING: Dict[str, RoutingProfile] = {
    "new_order": RoutingProfile(channel_id="orders", priority="high"),
    "new_review": RoutingProfile(channel_id="reviews", priority="normal"),
    "order_status": RoutingProfile(channel_id="orders", priority="high"),
    "review_request": RoutingProfile(channel_id="default", priority="normal"),
    "points_earned": RoutingProfile(channel_id="default", priority="normal"),
    "broadcast": RoutingProfile(channel_id="promotions", priority="normal"),
}
DEFAULT_ROUTING = RoutingProfile(channel_id="default", priority="normal")


def routing_for(routing_type: str) -> RoutingProfile:
    return ROUTING.get(routing_type, DEFAULT_ROUTING)


@dataclass
class PushResult:
    token: str
    success: bool
    error: Optional[str] = None
    unregistered: bool = False


def _ensure_app() -> None:
    if not firebase_admin._apps:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
        options = {"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None
        firebase_admin.initialize_app(cred, options)


def build_message(
    token: str,
    title: str,
    body: str,
    routing_type: str,
    data: Optional[dict] = None,
) -> messaging.Message:
    profile = routing_for(routing_type)
    return messaging.Message(
        notification=messaging.Notification(title=title, body=body),
        # FCM data values must be strings
        data={k: str(v) for k, v in {**(data or {}), "type": routing_type}.items() if v is not None},
        token=token,
        android=messaging.AndroidConfig(
            priority=profile.priority,
            notification=messaging.AndroidNotification(
                channel_id=profile.channel_id,
                sound=profile.sound,
            ),
        ),
        apns=messaging.APNSConfig(
            headers={"apns-priority": "10" if profile.priority == "high" else "5"},
            payload=messaging.APNSPayload(aps=messaging.Aps(sound=profile.sound, badge=1)),
        ),
    )


class FirebasePushGateway:
    """Sends batches through firebase_admin; the SDK is blocking, so calls run in a thread."""

    async def send_batch(self, messages: Sequence[messaging.Message]) -> List[PushResult]:
        results: List[PushResult] = []
        for start in range(0, len(messages), FCM_BATCH_LIMIT):
            chunk = list(messages[start:start + FCM_BATCH_LIMIT])
            results.extend(await self._send_chunk(chunk))
        return results

    async def _send_chunk(self, chunk: List[messaging.Message]) -> List[PushResult]:
        try:
            _ensure_app()
            batch = await asyncio.to_thread(messaging.send_each, chunk)
        except Exception as exc:
            # Whole request failed; every token in it counts as attempted and failed
            logger.error("FCM batch of %d failed: %s", len(chunk), exc)
            return [PushResult(token=m.token, success=False, error=str(exc)) for m in chunk]

        results = []
        for message, response in zip(chunk, batch.responses):
            if response.success:
                results.append(PushResult(token=message.token, success=True))
                continue
            exc = response.exception
            results.append(
                PushResult(
                    token=message.token,
                    success=False,
                    error=str(exc),
                    unregistered=isinstance(exc, messaging.UnregisteredError),
                )
            )
        return results
