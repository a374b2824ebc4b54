"""Inbound GreenAPI notifications: shape normalization and delivery dedup."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.inbound import GreenApiMessage
from app.services.cache_store import CacheStore

logger = get_logger("inbound_service")

ACCEPTED_TYPES = {"incoming", "textMessage"}
# Outgoing notifications echo the bot's own sends.
INBOUND_WEBHOOK_TYPES = {"incomingMessageReceived"}
PROCESSED_KEY = "outreach:processed:{message_id}"


@dataclass
class InboundMessage:
    chat_id: str
    text: str
    message_id: Optional[str] = None
    meta: dict = field(default_factory=dict)


@dataclass
class PolledBatch:
    messages: list


@dataclass
class WebhookEnvelope:
    message: Any


@dataclass
class RawNotification:
    payload: dict


InboundPayload = Union[PolledBatch, WebhookEnvelope, RawNotification]


def classify_payload(payload: Any) -> Optional[InboundPayload]:
    if isinstance(payload, list):
        return PolledBatch(messages=payload)
    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("messages"), list):
        return PolledBatch(messages=payload["messages"])
    for key in ("message", "body"):
        if isinstance(payload.get(key), dict):
            return WebhookEnvelope(message=payload[key])
    return RawNotification(payload=payload)


def normalize_item(item: Any) -> Optional[InboundMessage]:
    """Canonical message for one notification item, or None to drop it."""
    if not isinstance(item, dict):
        return None
    try:
        message = GreenApiMessage.model_validate(item)
    except ValidationError as exc:
        logger.info("Inbound item failed validation", extra={"context": {"error": str(exc)}})
        return None

    chat_id = (message.resolved_chat_id or "").strip()
    text = message.resolved_text
    if not chat_id or not text or not text.strip():
        return None

    if message.typeWebhook and message.typeWebhook not in INBOUND_WEBHOOK_TYPES:
        logger.debug(
            "Skipping non-inbound webhook",
            extra={"context": {"chat_id": chat_id, "type_webhook": message.typeWebhook}},
        )
        return None

    message_type = message.resolved_type
    if message_type and message_type not in ACCEPTED_TYPES:
        logger.debug(
            "Skipping non-text inbound notification",
            extra={"context": {"chat_id": chat_id, "type": message_type}},
        )
        return None

    return InboundMessage(
        chat_id=chat_id,
        text=text,
        message_id=message.idMessage,
        meta={
            "messageId": message.idMessage,
            "timestamp": message.timestamp,
            "typeMessage": message_type,
            "raw": item,
        },
    )


def normalize_polled_batch(batch: PolledBatch) -> list[InboundMessage]:
    return [m for m in (normalize_item(item) for item in batch.messages) if m is not None]


def normalize_webhook_envelope(envelope: WebhookEnvelope) -> list[InboundMessage]:
    message = normalize_item(envelope.message)
    return [message] if message else []


def normalize_raw_notification(notification: RawNotification) -> list[InboundMessage]:
    message = normalize_item(notification.payload)
    return [message] if message else []


_NORMALIZERS = {
    PolledBatch: normalize_polled_batch,
    WebhookEnvelope: normalize_webhook_envelope,
    RawNotification: normalize_raw_notification,
}


def normalize_payload(payload: Any) -> list[InboundMessage]:
    variant = classify_payload(payload)
    if variant is None:
        return []
    return _NORMALIZERS[type(variant)](variant)


class InboundGate:
    """Drops redeliveries of a provider message id seen within the TTL.

    The id is recorded only after the handler succeeds, so a failed delivery
    can be retried.
    """

    def __init__(self, store: CacheStore, ttl_seconds: float = 120):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def is_duplicate(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        try:
            return await self.store.exists(PROCESSED_KEY.format(message_id=message_id))
        except Exception as exc:
            logger.warning(f"Dedup cache unavailable, processing anyway: {exc}")
            return False

    async def mark_processed(self, message_id: Optional[str]) -> None:
        if not message_id:
            return
        try:
            await self.store.set(PROCESSED_KEY.format(message_id=message_id), "1", self.ttl_seconds)
        except Exception as exc:
            logger.warning(f"Failed to record processed message id: {exc}")

    async def process(self, payload: Any, handler: Callable[[InboundMessage], Awaitable[Any]]) -> int:
        """Normalize payload and hand each new message to handler. Returns messages handled."""
        handled = 0
        for message in normalize_payload(payload):
            if await self.is_duplicate(message.message_id):
                logger.info(
                    "Duplicate inbound message dropped",
                    extra={"context": {"chat_id": message.chat_id, "message_id": message.message_id}},
                )
                continue
            try:
                await handler(message)
            except Exception as exc:
                logger.error(
                    "Inbound message processing failed",
                    extra={
                        "context": {
                            "chat_id": message.chat_id,
                            "message_id": message.message_id,
                            "error": str(exc),
                        }
                    },
                    exc_info=True,
                )
                continue
            await self.mark_processed(message.message_id)
            handled += 1
        return handled
