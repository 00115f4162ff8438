from __future__ import annotations

from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from iot_device_client.messaging import Message
from iot_device_client.transport import (
    STATUS_CONNECT_ERROR,
    ContextCreationError,
    EventKind,
    PahoTransport,
    TransportInitError,
)


class FakeMQTTMessage:
    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.publish.return_value = MagicMock(rc=0)
    fake.subscribe.return_value = (0, 1)
    fake.loop.return_value = 0
    fake.ctor_kwargs = {}

    def _ctor(*args, **kwargs):
        fake.ctor_kwargs = kwargs
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def events():
    return []


@pytest.fixture
def transport(fake_paho_client, events):
    t = PahoTransport("mqtt.example.com", 8883, "dev-1")
    t.set_listener(events.append)
    return t


def test_client_created_with_device_identity_and_tls(transport, fake_paho_client):
    assert fake_paho_client.ctor_kwargs["client_id"] == "dev-1"
    assert fake_paho_client.ctor_kwargs["protocol"] == mqtt.MQTTv311
    fake_paho_client.tls_set.assert_called_once_with(ca_certs=None)


def test_no_tls(fake_paho_client):
    PahoTransport("localhost", 1883, "dev-1", use_tls=False)
    fake_paho_client.tls_set.assert_not_called()


def test_client_creation_failure(monkeypatch):
    def _ctor(*args, **kwargs):
        raise ValueError("bad client id")

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    with pytest.raises(ContextCreationError):
        PahoTransport("localhost", 1883, "")


def test_tls_init_failure(fake_paho_client):
    fake_paho_client.tls_set.side_effect = FileNotFoundError(2, "No such file")
    with pytest.raises(TransportInitError):
        PahoTransport("localhost", 8883, "dev-1", ca_certs="/missing/roots.pem")


def test_connect_passes_credentials_and_timeouts(transport, fake_paho_client, events):
    transport.connect("", "jwt-token", "dev-1", 10, 20)

    fake_paho_client.username_pw_set.assert_called_once_with("", "jwt-token")
    assert fake_paho_client.connect_timeout == 10.0
    fake_paho_client.connect.assert_called_once_with("mqtt.example.com", 8883, keepalive=20)
    assert events == []


def test_connect_keeps_client_built_for_device(monkeypatch, fake_paho_client, caplog):
    built = []

    def _ctor(*args, **kwargs):
        built.append(kwargs["client_id"])
        return fake_paho_client

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    t = PahoTransport("mqtt.example.com", 8883, "dev-1")
    t.connect("", "t", "other-dev", 10, 20)

    assert built == ["dev-1"]
    fake_paho_client.connect.assert_called_once()
    assert "Ignoring client id other-dev" in caplog.text


def test_connect_socket_error_reports_open_failed(transport, fake_paho_client, events):
    fake_paho_client.connect.side_effect = ConnectionRefusedError(111, "refused")
    transport.connect("", "t", "dev-1", 10, 20)

    assert len(events) == 1
    assert events[0].kind is EventKind.OPEN_FAILED
    assert events[0].status == 111


def test_connect_timeout_without_errno(transport, fake_paho_client, events):
    fake_paho_client.connect.side_effect = TimeoutError()
    transport.connect("", "t", "dev-1", 10, 20)
    assert events[0].status == STATUS_CONNECT_ERROR


def test_connack_success_reports_opened(transport, fake_paho_client, events):
    transport.connect("", "t", "dev-1", 10, 20)
    transport._on_connect(fake_paho_client, None, {}, ReasonCode(PacketTypes.CONNACK, "Success"), None)
    assert [e.kind for e in events] == [EventKind.OPENED]


def test_connack_refused_reported_once(transport, fake_paho_client, events):
    transport.connect("", "t", "dev-1", 10, 20)
    refused = ReasonCode(PacketTypes.CONNACK, "Not authorized")
    transport._on_connect(fake_paho_client, None, {}, refused, None)
    transport._on_disconnect(fake_paho_client, None, {}, refused, None)

    assert [e.kind for e in events] == [EventKind.OPEN_FAILED]
    assert events[0].status == refused.value


def test_drop_before_connack_reports_open_failed(transport, fake_paho_client, events):
    transport.connect("", "t", "dev-1", 10, 20)
    transport._on_disconnect(fake_paho_client, None, {}, 7, None)
    assert [(e.kind, e.status) for e in events] == [(EventKind.OPEN_FAILED, 7)]


@pytest.mark.parametrize("status", [0, 7])
def test_close_after_open_reports_status(transport, fake_paho_client, events, status):
    transport.connect("", "t", "dev-1", 10, 20)
    transport._on_connect(fake_paho_client, None, {}, 0, None)
    transport._on_disconnect(fake_paho_client, None, {}, status, None)

    assert events[-1].kind is EventKind.CLOSED
    assert events[-1].status == status


def test_message_event(transport, fake_paho_client, events):
    transport._on_message(fake_paho_client, None, FakeMQTTMessage("Channel", b"hi"))
    assert events[0].kind is EventKind.MESSAGE
    assert events[0].message == Message("Channel", b"hi")


def test_publish_and_subscribe_return_codes(transport, fake_paho_client):
    assert transport.publish("Channel", b"x", 1) == 0
    fake_paho_client.publish.assert_called_once_with("Channel", payload=b"x", qos=1)

    fake_paho_client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)
    assert transport.publish("Channel", b"x", 1) == int(mqtt.MQTT_ERR_NO_CONN)

    assert transport.subscribe("Channel", 2) == 0
    fake_paho_client.subscribe.assert_called_once_with("Channel", qos=2)


def test_process_events_runs_one_loop_iteration(transport, fake_paho_client, monkeypatch):
    slept = []
    monkeypatch.setattr("iot_device_client.transport.time.sleep", slept.append)

    transport.process_events(0.5)
    fake_paho_client.loop.assert_called_once_with(timeout=0.5)
    assert slept == []

    fake_paho_client.loop.return_value = mqtt.MQTT_ERR_NO_CONN
    transport.process_events(0.5)
    assert slept == [0.5]


def test_disconnect(transport, fake_paho_client):
    transport.disconnect()
    fake_paho_client.disconnect.assert_called_once()


def test_events_without_listener_are_dropped(fake_paho_client, caplog):
    t = PahoTransport("localhost", 1883, "dev-1", use_tls=False)
    t._on_connect(fake_paho_client, None, {}, 0, None)
    assert "no listener" in caplog.text
