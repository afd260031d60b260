import asyncio
import json
import logging
from typing import List, Optional, Protocol

import firebase_admin
from firebase_admin import credentials, exceptions, messaging
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ..config import FIREBASE_CREDENTIALS_JSON
from ..models.device import Device
from ..models.events import ChallengeEvent

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def publish(self, event: ChallengeEvent) -> None:
        ...


class NullNotificationSink:
    async def publish(self, event: ChallengeEvent) -> None:
        return None


class RecordingNotificationSink:
    """Keeps every published event in memory."""

    def __init__(self):
        self.events: List[ChallengeEvent] = []

    async def publish(self, event: ChallengeEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List[ChallengeEvent]:
        return [e for e in self.events if e.type == event_type]


def event_payload(event: ChallengeEvent) -> dict:
    # FCM data values must be strings
    data = {
        "type": event.type.value,
        "challenge_id": event.challenge_id,
        "occurred_at": event.occurred_at.isoformat(),
    }
    if event.actor_user_id:
        data["actor_user_id"] = event.actor_user_id
    for key, value in event.data.items():
        if value is None:
            continue
        data[key] = value if isinstance(value, str) else json.dumps(value)
    return data


class PushNotificationSink:
    """Delivers events as data-only FCM messages to the recipients' devices.

    Delivery is best effort: a failed send is logged and never raised, since the
    transition that produced the event has already been saved.
    """

    def __init__(self, engine: Engine, app: Optional[firebase_admin.App] = None):
        self.engine = engine
        self.app = app

    @classmethod
    def from_config(cls, engine: Engine, credentials_path: Optional[str] = FIREBASE_CREDENTIALS_JSON) -> "PushNotificationSink":
        if not credentials_path:
            return cls(engine)

        # Initialize Firebase Admin SDK if not already initialized
        try:
            app = firebase_admin.get_app()
        except ValueError:
            app = firebase_admin.initialize_app(credentials.Certificate(credentials_path))
        return cls(engine, app)

    @property
    def enabled(self) -> bool:
        return self.app is not None

    def device_tokens(self, user_id: str) -> List[str]:
        with Session(self.engine) as session:
            devices = session.exec(
                select(Device)
                .where(Device.user_id == user_id)
                .where(Device.fcm_token.is_not(None))
            ).all()
            return [device.fcm_token for device in devices]

    async def send_notification(self, fcm_token: str, data: dict) -> bool:
        message = messaging.Message(data=data, token=fcm_token)
        try:
            # messaging.send blocks on the HTTP round trip
            await asyncio.to_thread(messaging.send, message, app=self.app)
            return True
        except (exceptions.FirebaseError, ValueError) as e:
            logger.warning("Error sending %s notification for challenge %s: %s", data.get("type"), data.get("challenge_id"), e)
            return False

    async def publish(self, event: ChallengeEvent) -> None:
        if not self.enabled:
            logger.debug("Push delivery disabled, dropping %s for challenge %s", event.type.value, event.challenge_id)
            return

        data = event_payload(event)
        tokens = [token for user_id in event.recipient_user_ids for token in self.device_tokens(user_id)]
        if not tokens:
            return

        results = [await self.send_notification(token, data) for token in tokens]
        logger.info(
            "Delivered %s for challenge %s to %d of %d devices",
            event.type.value, event.challenge_id, sum(results), len(results),
        )
