"""
Pytest configuration and shared fixtures
"""
import os
import sys

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from iot_device_client.credentials import Credential  # noqa: E402
from iot_device_client.transport import EventKind, TransportEvent  # noqa: E402


IOT_ENV_KEYS = [
    'IOT_PROJECT_ID', 'IOT_DEVICE_PATH', 'IOT_PUBLISH_TOPIC', 'IOT_SUBSCRIBE_TOPIC',
    'IOT_MESSAGE', 'IOT_PRIVATE_KEY_PATH', 'IOT_MQTT_HOST', 'IOT_MQTT_PORT', 'IOT_USE_TLS',
    'IOT_CA_CERTS', 'IOT_PUBLISH_QOS', 'IOT_SUBSCRIBE_QOS', 'IOT_PUBLISH_INTERVAL',
    'IOT_TOKEN_TTL', 'IOT_CONNECT_TIMEOUT', 'IOT_KEEPALIVE',
    'IOT_REFRESH_TOKEN_ON_RECONNECT', 'IOT_KEY_CAPACITY', 'IOT_LOG_LEVEL',
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's IOT_* variables out of the tests"""
    for key in IOT_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def ec_key_pem():
    """PEM encoded P-256 private key (SEC1, 227 bytes)"""
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def credential(ec_key_pem):
    return Credential(key_pem=ec_key_pem, project_id='proj-1', device_path='dev-1')


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeTransport:
    """
    In-memory transport. Records calls; tests push broker-side events with
    open()/fail()/close()/deliver().
    """

    def __init__(self):
        self.listener = None
        self.connects = []
        self.published = []
        self.subscribed = []
        self.disconnects = 0
        self.publish_rc = 0
        self.subscribe_rc = 0
        # events to emit on the next process_events() call
        self.script = []
        self.on_connect = None
        self.polls = 0

    def set_listener(self, listener):
        self.listener = listener

    def connect(self, username, password, client_id, connect_timeout, keepalive):
        self.connects.append({
            'username': username,
            'password': password,
            'client_id': client_id,
            'connect_timeout': connect_timeout,
            'keepalive': keepalive,
        })
        if self.on_connect is not None:
            self.on_connect(self)

    def publish(self, topic, payload, qos):
        self.published.append((topic, payload, qos))
        return self.publish_rc

    def subscribe(self, topic, qos):
        self.subscribed.append((topic, qos))
        return self.subscribe_rc

    def disconnect(self):
        self.disconnects += 1
        self.script.append(TransportEvent(EventKind.CLOSED, 0))

    def process_events(self, timeout):
        self.polls += 1
        if self.polls > 1000:
            raise AssertionError("event loop did not terminate")
        if self.script:
            step = self.script.pop(0)
            if callable(step):
                step()
            else:
                self.listener(step)

    # broker-side helpers
    def open(self):
        self.listener(TransportEvent(EventKind.OPENED))

    def fail(self, status=5):
        self.listener(TransportEvent(EventKind.OPEN_FAILED, status))

    def close(self, status=0):
        self.listener(TransportEvent(EventKind.CLOSED, status))


@pytest.fixture
def transport():
    return FakeTransport()
