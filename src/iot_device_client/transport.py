"""
MQTT transport for the device client.

Wraps paho-mqtt behind a small interface and turns its callbacks into TransportEvents.
The wire protocol, TLS and keepalive handling stay inside paho; the connection policy
(when to reconnect, with which token) belongs to the supervisor.
"""

from __future__ import annotations

import enum
import logging
import ssl
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import paho.mqtt.client as mqtt

from iot_device_client.messaging import Message

logger = logging.getLogger(__name__)

# status reported for socket-level connect failures that carry no errno
STATUS_CONNECT_ERROR = -1


class TransportError(RuntimeError):
    """Base class for transport setup failures."""


class TransportInitError(TransportError):
    """Raised when the TLS/network layer cannot be initialised."""


class ContextCreationError(TransportError):
    """Raised when the MQTT client object cannot be created."""


class EventKind(str, enum.Enum):
    OPENED = "opened"
    OPEN_FAILED = "open_failed"
    CLOSED = "closed"
    MESSAGE = "message"


@dataclass(frozen=True, slots=True)
class TransportEvent:
    kind: Any  # usually EventKind; anything else is an unknown signal
    status: int = 0
    message: Optional[Message] = None


EventListener = Callable[[TransportEvent], None]


class Transport(Protocol):
    def set_listener(self, listener: EventListener) -> None: ...

    def connect(
        self,
        username: str,
        password: str,
        client_id: str,
        connect_timeout: float,
        keepalive: int,
    ) -> None: ...

    def publish(self, topic: str, payload: bytes, qos: int) -> int: ...

    def subscribe(self, topic: str, qos: int) -> int: ...

    def disconnect(self) -> None: ...

    def process_events(self, timeout: float) -> None: ...


def _status(reason_code: Any) -> int:
    # paho hands out ReasonCode objects; tests and MQTT v3 paths may pass ints
    return int(getattr(reason_code, "value", reason_code))


class PahoTransport:
    """Transport backed by a paho-mqtt client driven with ``Client.loop()``."""

    def __init__(
        self,
        host: str,
        port: int,
        client_id: str,
        *,
        use_tls: bool = True,
        ca_certs: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.ca_certs = ca_certs

        self._listener: Optional[EventListener] = None
        self._opened = False
        self._refused = False
        self._client_id = client_id
        self._client = self._create_client(client_id)

    def _create_client(self, client_id: str) -> mqtt.Client:
        try:
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=client_id,
                protocol=mqtt.MQTTv311,
            )
        except ValueError as exc:
            raise ContextCreationError(f"Failed to create MQTT client: {exc}") from exc

        if self.use_tls:
            try:
                client.tls_set(ca_certs=self.ca_certs)
            except (OSError, ssl.SSLError, ValueError) as exc:
                raise TransportInitError(f"Failed to initialise TLS: {exc}") from exc

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def set_listener(self, listener: EventListener) -> None:
        self._listener = listener

    def _emit(self, event: TransportEvent) -> None:
        if self._listener is None:
            logger.warning("Dropping transport event %s: no listener", event.kind)
            return
        self._listener(event)

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        status = _status(reason_code)
        if status != 0:
            logger.error("MQTT connect refused rc=%s", reason_code)
            self._refused = True
            self._emit(TransportEvent(EventKind.OPEN_FAILED, status))
            return
        self._opened = True
        self._emit(TransportEvent(EventKind.OPENED))

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        status = _status(reason_code)
        if not self._opened:
            # connection never came up; a refused CONNACK has already been reported
            if not self._refused:
                self._emit(TransportEvent(EventKind.OPEN_FAILED, status or STATUS_CONNECT_ERROR))
            return
        self._opened = False
        self._emit(TransportEvent(EventKind.CLOSED, status))

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._emit(TransportEvent(EventKind.MESSAGE, message=Message(msg.topic, bytes(msg.payload))))

    def connect(
        self,
        username: str,
        password: str,
        client_id: str,
        connect_timeout: float,
        keepalive: int,
    ) -> None:
        # paho fixes the client id at construction
        if client_id != self._client_id:
            logger.warning("Ignoring client id %s; transport was built for %s", client_id, self._client_id)

        self._opened = False
        self._refused = False
        client = self._client
        client.username_pw_set(username, password)
        client.connect_timeout = float(connect_timeout)
        logger.info("Connecting to %s:%s as %s", self.host, self.port, self._client_id)
        try:
            client.connect(self.host, self.port, keepalive=keepalive)
        except OSError as exc:
            # DNS, refused, TLS handshake: all surface as a failed open
            logger.error("MQTT connect to %s:%s failed: %s", self.host, self.port, exc)
            self._emit(TransportEvent(EventKind.OPEN_FAILED, exc.errno or STATUS_CONNECT_ERROR))

    def publish(self, topic: str, payload: bytes, qos: int) -> int:
        info = self._client.publish(topic, payload=payload, qos=qos)
        return int(info.rc)

    def subscribe(self, topic: str, qos: int) -> int:
        rc, _mid = self._client.subscribe(topic, qos=qos)
        return int(rc)

    def disconnect(self) -> None:
        self._client.disconnect()

    def process_events(self, timeout: float) -> None:
        rc = self._client.loop(timeout=timeout)
        if rc == mqtt.MQTT_ERR_NO_CONN:
            # no socket: loop() returns immediately, so wait out the timeout here
            time.sleep(timeout)
