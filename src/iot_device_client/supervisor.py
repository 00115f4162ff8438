"""
Connection supervisor: owns the single logical connection to the broker.

State machine (initial DISCONNECTED; terminal CLOSED_GRACEFUL / CLOSED_ERROR):

    DISCONNECTED --start()-------------> CONNECTING   sign token, connect
    CONNECTING   --OPENED--------------> CONNECTED    subscribe, start periodic publish
    CONNECTING   --OPEN_FAILED---------> CLOSED_ERROR cancel tasks, stop loop
    CONNECTED    --CLOSED(status=0)----> CLOSED_GRACEFUL cancel tasks, stop loop
    CONNECTED    --CLOSED(status!=0)---> CONNECTING   cancel tasks, reconnect
    any          --unknown-------------> unchanged    log and ignore

All transitions happen on the thread running ``run()``; transport callbacks,
message callbacks and scheduled tasks are delivered from inside that call.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from iot_device_client.credentials import AuthToken, Credential, SigningError, sign_token
from iot_device_client.messaging import Messenger, PublishError, SubscribeError, Subscription
from iot_device_client.scheduler import TaskHandle, TaskScheduler
from iot_device_client.transport import EventKind, Transport, TransportEvent

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = -1

# the broker ignores the username; the JWT goes in the password
MQTT_USERNAME = ""


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED_GRACEFUL = "closed_graceful"
    CLOSED_ERROR = "closed_error"

    @property
    def terminal(self) -> bool:
        return self in (ConnectionState.CLOSED_GRACEFUL, ConnectionState.CLOSED_ERROR)


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    client_id: str
    connect_timeout: int = 10
    keepalive: int = 20
    token_ttl_s: int = 3600
    # False reproduces the original behaviour: one token for the whole process
    refresh_token_on_reconnect: bool = True
    token_refresh_margin_s: int = 300
    poll_interval_s: float = 0.5


@dataclass(frozen=True, slots=True)
class PeriodicPublish:
    topic: str
    payload: bytes
    qos: int = 1
    interval_s: float = 5


class ConnectionSupervisor:
    """
    Drives one connection through its lifecycle.

    Only the supervisor mutates the connection state and the current token; other
    components read them through the ``state`` and ``token`` accessors.
    """

    def __init__(
        self,
        credential: Credential,
        transport: Transport,
        settings: ConnectionSettings,
        *,
        subscriptions: Iterable[Subscription] = (),
        periodic_publish: Optional[PeriodicPublish] = None,
        scheduler: Optional[TaskScheduler] = None,
        signer: Callable[..., AuthToken] = sign_token,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credential = credential
        self._transport = transport
        self._settings = settings
        self._periodic_publish = periodic_publish
        self._scheduler = scheduler or TaskScheduler()
        self._signer = signer
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._token: Optional[AuthToken] = None
        self._publish_task: Optional[TaskHandle] = None
        self._reconnect_pending = False
        self._stop_requested = False
        self._stopping = False
        self.reconnects = 0

        self.messenger = Messenger(
            transport,
            is_connected=lambda: self._state is ConnectionState.CONNECTED,
            subscriptions=subscriptions,
        )
        transport.set_listener(self.handle_event)

    # -------------------------
    # Accessors
    # -------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def token(self) -> Optional[AuthToken]:
        return self._token

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def scheduler(self) -> TaskScheduler:
        return self._scheduler

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self) -> None:
        """
        Sign a fresh token and open the connection.

        Raises SigningError if the first token cannot be produced; nothing is sent then.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            logger.warning("start() ignored in state %s", self._state.value)
            return
        self._token = self._new_token()
        self._set_state(ConnectionState.CONNECTING)
        self._connect()

    def run(self) -> int:
        """
        Block processing events until the connection reaches a terminal state.

        Returns EXIT_OK after a graceful close, EXIT_FAILURE otherwise.
        """
        if self._state is ConnectionState.DISCONNECTED:
            self.start()

        while not self._state.terminal:
            if self._stop_requested:
                self._stop()
                if self._state.terminal:
                    break
            if self._reconnect_pending:
                self._reconnect()
                continue

            timeout = self._settings.poll_interval_s
            until_next = self._scheduler.time_until_next()
            if until_next is not None:
                timeout = min(timeout, until_next)
            self._transport.process_events(timeout)
            self._scheduler.run_due()

        # nothing may fire once the loop has returned
        self._cancel_tasks()
        logger.info("Event loop finished in state %s", self._state.value)
        return EXIT_OK if self._state is ConnectionState.CLOSED_GRACEFUL else EXIT_FAILURE

    def request_stop(self) -> None:
        """Ask for a graceful shutdown. Safe to call from a signal handler."""
        self._stop_requested = True

    # -------------------------
    # Transport events
    # -------------------------
    def handle_event(self, event: TransportEvent) -> None:
        kind = event.kind
        state = self._state

        if kind is EventKind.MESSAGE and event.message is not None:
            if state is ConnectionState.CONNECTED:
                self.messenger.dispatch(event.message)
            else:
                logger.warning("Dropping message on %s in state %s", event.message.topic, state.value)
            return

        if state is ConnectionState.CONNECTING and kind is EventKind.OPENED:
            self._on_opened()
        elif state is ConnectionState.CONNECTING and kind is EventKind.OPEN_FAILED:
            logger.error("Connection has failed, reason %s", event.status)
            self._cancel_tasks()
            self._set_state(ConnectionState.CLOSED_ERROR)
        elif state is ConnectionState.CONNECTED and kind is EventKind.CLOSED:
            self._on_closed(event.status)
        else:
            logger.warning("Ignoring transport event %s (status=%s) in state %s", kind, event.status, state.value)

    def _on_opened(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected as %s", self._settings.client_id)
        try:
            self.messenger.subscribe_all()
        except SubscribeError as exc:
            logger.error("Failed to restore subscriptions: %s", exc)

        pub = self._periodic_publish
        if pub is not None:
            self._scheduler.cancel(self._publish_task)
            self._publish_task = self._scheduler.schedule(
                pub.interval_s, self._publish_periodic, name="periodic-publish"
            )

    def _on_closed(self, status: int) -> None:
        self._cancel_tasks()
        if status == 0 or self._stopping:
            logger.info("Connection closed")
            self._set_state(ConnectionState.CLOSED_GRACEFUL)
            return

        logger.warning("Connection closed - reason %s; reconnecting", status)
        self._set_state(ConnectionState.CONNECTING)
        self._reconnect_pending = True

    # -------------------------
    # Internals
    # -------------------------
    def _set_state(self, new: ConnectionState) -> None:
        if new is self._state:
            return
        logger.debug("State %s -> %s", self._state.value, new.value)
        self._state = new

    def _new_token(self) -> AuthToken:
        return self._signer(self._credential, self._settings.token_ttl_s, now=self._clock())

    def _token_needs_refresh(self) -> bool:
        if self._token is None:
            return True
        if not self._settings.refresh_token_on_reconnect:
            return False
        return self._token.expires_within(self._settings.token_refresh_margin_s, now=self._clock())

    def _connect(self) -> None:
        assert self._token is not None
        s = self._settings
        self._transport.connect(
            username=MQTT_USERNAME,
            password=self._token.value,
            client_id=s.client_id,
            connect_timeout=s.connect_timeout,
            keepalive=s.keepalive,
        )

    def _reconnect(self) -> None:
        self._reconnect_pending = False
        self.reconnects += 1
        if self._token_needs_refresh():
            try:
                self._token = self._new_token()
                logger.info("Refreshed auth token before reconnect (expires at %d)", self._token.expires_at)
            except SigningError as exc:
                logger.error("Token signing failed during reconnect: %s", exc)
                self._set_state(ConnectionState.CLOSED_ERROR)
                return
        self._connect()

    def _stop(self) -> None:
        connect_in_flight = self._state is ConnectionState.CONNECTING and not self._reconnect_pending
        self._stop_requested = False
        self._stopping = True
        self._reconnect_pending = False
        self._cancel_tasks()
        if self._state is ConnectionState.CONNECTED:
            logger.info("Disconnecting")
            self._transport.disconnect()
            return

        if connect_in_flight:
            # drop the half-open socket still waiting for CONNACK
            logger.info("Abandoning connection attempt")
            self._transport.disconnect()
        self._set_state(ConnectionState.CLOSED_GRACEFUL)

    def _cancel_tasks(self) -> None:
        # every timer on the scheduler, not just the periodic publish
        self._scheduler.cancel_all()
        self._publish_task = None

    def _publish_periodic(self) -> None:
        pub = self._periodic_publish
        if pub is None:
            return
        logger.info('Publishing msg "%s" to topic: "%s"', pub.payload.decode("utf-8", errors="replace"), pub.topic)
        try:
            self.messenger.publish(pub.topic, pub.payload, pub.qos)
        except PublishError as exc:
            logger.error("Periodic publish failed: %s", exc)
