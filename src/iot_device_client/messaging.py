"""
Publish/subscribe facade over the transport.

Publishing and subscribing are only allowed while the connection is up. Subscriptions
are recorded so the supervisor can restore them after every (re)connect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable, Union

import paho.mqtt.client as mqtt

if TYPE_CHECKING:
    from iot_device_client.transport import Transport

logger = logging.getLogger(__name__)

VALID_QOS = (0, 1, 2)


class PublishError(RuntimeError):
    """Raised when a publish is rejected. ``code`` is the transport's error code, if any."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class SubscribeError(RuntimeError):
    """Raised when a subscription cannot be registered."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True, slots=True)
class Message:
    topic: str
    payload: bytes


MessageCallback = Callable[[str, bytes], None]


@dataclass(frozen=True, slots=True)
class Subscription:
    topic: str
    qos: int
    on_message: MessageCallback


def _check_qos(qos: int) -> int:
    if qos not in VALID_QOS:
        raise ValueError(f"qos must be 0, 1 or 2, got {qos!r}")
    return qos


def log_message(topic: str, payload: bytes) -> None:
    """Default subscription callback: log what arrived."""
    logger.info("Received message %s on topic %s", payload.decode("utf-8", errors="replace"), topic)


class Messenger:
    def __init__(
        self,
        transport: "Transport",
        is_connected: Callable[[], bool],
        subscriptions: Iterable[Subscription] = (),
    ) -> None:
        self._transport = transport
        self._is_connected = is_connected
        self._subscriptions: list[Subscription] = []
        for sub in subscriptions:
            _check_qos(sub.qos)
            self._subscriptions.append(sub)

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    def publish(self, topic: str, payload: Union[bytes, str], qos: int = 1) -> None:
        _check_qos(qos)
        if not self._is_connected():
            raise PublishError(f"Cannot publish to {topic}: not connected")
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        rc = self._transport.publish(topic, payload, qos)
        if rc != 0:
            raise PublishError(f"Publish to {topic} failed rc={rc}", code=rc)
        logger.debug("Published %d bytes to %s qos=%d", len(payload), topic, qos)

    def subscribe(self, topic: str, qos: int, on_message: MessageCallback) -> Subscription:
        _check_qos(qos)
        if not self._is_connected():
            raise SubscribeError(f"Cannot subscribe to {topic}: not connected")

        sub = Subscription(topic, qos, on_message)
        self._send_subscribe(sub)
        self._subscriptions.append(sub)
        return sub

    def subscribe_all(self) -> None:
        """Register every recorded subscription on the current connection."""
        for sub in self._subscriptions:
            self._send_subscribe(sub)

    def _send_subscribe(self, sub: Subscription) -> None:
        rc = self._transport.subscribe(sub.topic, sub.qos)
        if rc != 0:
            raise SubscribeError(f"Subscribe to {sub.topic} failed rc={rc}", code=rc)
        logger.info("Subscribed: %s (qos=%d)", sub.topic, sub.qos)

    def dispatch(self, message: Message) -> int:
        """Deliver an inbound message to every matching subscription. Returns deliveries."""
        delivered = 0
        for sub in self._subscriptions:
            if not mqtt.topic_matches_sub(sub.topic, message.topic):
                continue
            delivered += 1
            try:
                sub.on_message(message.topic, message.payload)
            except Exception:
                logger.exception("Message callback failed for topic %s", message.topic)
        if delivered == 0:
            logger.warning("Unhandled topic: %s", message.topic)
        return delivered
