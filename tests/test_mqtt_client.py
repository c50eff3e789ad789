"""Tests for the paho-mqtt wrapper, with the paho client replaced by a mock."""

import ssl
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from Device_connectors import mqtt_client as mc
from Device_connectors.mqtt_client import (
    BrokerAddress,
    BrokerConnectionError,
    BrokerConnectionLost,
    MqttClient,
    SubscriptionError,
    parse_server_url,
)


CONNACK_OK = ReasonCode(PacketTypes.CONNACK, "Success")
CONNACK_DENIED = ReasonCode(PacketTypes.CONNACK, "Not authorized")
SUBACK_OK = ReasonCode(PacketTypes.SUBACK, "Granted QoS 0")
SUBACK_FAILED = ReasonCode(PacketTypes.SUBACK, "Unspecified error")
DISCONNECT = ReasonCode(PacketTypes.DISCONNECT, "Unspecified error")


@pytest.fixture
def paho_client(monkeypatch):
    fake = MagicMock(name="paho.Client")
    fake.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    factory = MagicMock(return_value=fake)
    monkeypatch.setattr(mc.mqtt, "Client", factory)
    fake.factory = factory
    return fake


def _message(topic: str, payload: bytes) -> mqtt.MQTTMessage:
    msg = mqtt.MQTTMessage(topic=topic.encode("utf-8"))
    msg.payload = payload
    return msg


def _connected(client: MqttClient):
    client._on_connect(None, None, None, CONNACK_OK, None)


# =============================================================================
# BROKER URL
# =============================================================================

def test_parse_default_url():
    assert parse_server_url("tcp://127.0.0.1:1883") == BrokerAddress("tcp", "127.0.0.1", 1883)


@pytest.mark.parametrize(
    "url,port,secure,transport",
    [
        ("tcp://broker", 1883, False, "tcp"),
        ("ssl://broker", 8883, True, "tcp"),
        ("mqtts://broker:9999", 9999, True, "tcp"),
        ("ws://broker/mqtt", 80, False, "websockets"),
        ("wss://broker", 443, True, "websockets"),
    ],
)
def test_parse_scheme_defaults(url, port, secure, transport):
    address = parse_server_url(url)
    assert address.port == port
    assert address.secure is secure
    assert address.transport == transport


@pytest.mark.parametrize("url", ["http://broker:1883", "broker:1883", "tcp://:1883"])
def test_parse_rejects_bad_urls(url):
    with pytest.raises(ValueError):
        parse_server_url(url)


# =============================================================================
# CLIENT OPTIONS
# =============================================================================

def test_client_options(paho_client):
    MqttClient("exporter1", server="tcp://10.0.0.5:1883", username="user", password="secret")

    args, kwargs = paho_client.factory.call_args
    assert args[0] == mqtt.CallbackAPIVersion.VERSION2
    assert kwargs["client_id"] == "exporter1"
    assert kwargs["clean_session"] is True
    paho_client.username_pw_set.assert_called_once_with("user", "secret")
    paho_client.reconnect_delay_set.assert_called_once_with(min_delay=1, max_delay=1)
    paho_client.tls_set_context.assert_not_called()


def test_no_credentials_without_username(paho_client):
    MqttClient("exporter1", password="ignored")
    paho_client.username_pw_set.assert_not_called()


def test_secure_scheme_skips_certificate_checks(paho_client):
    MqttClient("exporter1", server="ssl://broker:8883")

    context = paho_client.tls_set_context.call_args[0][0]
    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False
    paho_client.tls_insecure_set.assert_called_once_with(True)


# =============================================================================
# CONNECT
# =============================================================================

def test_connect_waits_for_connack(paho_client):
    client = MqttClient("exporter1", server="tcp://broker:1884")
    paho_client.loop_start.side_effect = lambda: _connected(client)

    client.connect()

    paho_client.connect.assert_called_once_with("broker", 1884, 30)
    assert client.is_connected


def test_connect_socket_error_raises(paho_client):
    paho_client.connect.side_effect = ConnectionRefusedError("refused")
    client = MqttClient("exporter1")

    with pytest.raises(BrokerConnectionError):
        client.connect()
    paho_client.loop_start.assert_not_called()


def test_connect_refused_by_broker_raises(paho_client):
    client = MqttClient("exporter1")
    paho_client.loop_start.side_effect = lambda: client._on_connect(None, None, None, CONNACK_DENIED, None)

    with pytest.raises(BrokerConnectionError, match="refused"):
        client.connect()
    paho_client.loop_stop.assert_called_once()
    assert not client.is_connected


def test_connect_timeout_raises(paho_client):
    client = MqttClient("exporter1", connect_timeout=0.01)
    with pytest.raises(BrokerConnectionError, match="no answer"):
        client.connect()
    paho_client.loop_stop.assert_called_once()


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

def test_subscriptions_are_issued_on_connect(paho_client):
    client = MqttClient("exporter1")
    client.subscribe("thermometers/+/config", lambda *_: None)
    client.subscribe("hygrometers/+/config", lambda *_: None)
    paho_client.subscribe.assert_not_called()

    _connected(client)
    issued = [c.args[0] for c in paho_client.subscribe.call_args_list]
    assert issued == ["thermometers/+/config", "hygrometers/+/config"]


def test_subscriptions_are_reissued_after_reconnect(paho_client):
    client = MqttClient("exporter1")
    _connected(client)
    client.subscribe("thermometers/#", lambda *_: None)
    client._on_disconnect(None, None, None, DISCONNECT, None)
    _connected(client)

    issued = [c.args[0] for c in paho_client.subscribe.call_args_list]
    assert issued == ["thermometers/#", "thermometers/#"]


def test_duplicate_topic_is_sent_once(paho_client):
    client = MqttClient("exporter1")
    _connected(client)
    client.subscribe("thermometers/a/value", lambda *_: None)
    client.subscribe("thermometers/a/value", lambda *_: None)
    assert paho_client.subscribe.call_count == 1


def test_subscribe_error_is_fatal(paho_client):
    errors = []
    paho_client.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)
    client = MqttClient("exporter1", on_fatal=errors.append)
    _connected(client)
    client.subscribe("thermometers/#", lambda *_: None)

    assert len(errors) == 1
    assert isinstance(errors[0], SubscriptionError)
    assert client.fatal_error is errors[0]


def test_rejected_suback_is_fatal(paho_client):
    errors = []
    paho_client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 7)
    client = MqttClient("exporter1", on_fatal=errors.append)
    _connected(client)
    client.subscribe("hygrometers/#", lambda *_: None)

    client._on_subscribe(None, None, 7, [SUBACK_OK], None)
    assert errors == []
    client._on_subscribe(None, None, 7, [SUBACK_FAILED], None)
    assert isinstance(errors[0], SubscriptionError)
    assert "hygrometers/#" in str(errors[0]) or "mid 7" in str(errors[0])


# =============================================================================
# DISPATCH
# =============================================================================

def test_message_dispatch_matches_wildcards(paho_client):
    client = MqttClient("exporter1")
    received = []
    client.subscribe("thermometers/#", lambda topic, payload: received.append(("all", topic, payload)))
    client.subscribe("thermometers/+/config", lambda topic, payload: received.append(("config", topic, payload)))

    client._on_message(None, None, _message("thermometers/sovrum/value", b"21.5"))
    client._on_message(None, None, _message("hygrometers/sovrum/value", b"40"))

    assert received == [("all", "thermometers/sovrum/value", b"21.5")]


def test_callback_error_does_not_stop_other_callbacks(paho_client):
    client = MqttClient("exporter1")
    received = []

    def _boom(topic, payload):
        raise RuntimeError("boom")

    client.subscribe("thermometers/#", _boom)
    client.subscribe("thermometers/#", lambda topic, payload: received.append(payload))
    client._on_message(None, None, _message("thermometers/a/value", b"1"))

    assert received == [b"1"]


# =============================================================================
# CONNECTION LOSS
# =============================================================================

def test_connection_loss_is_fatal_when_configured(paho_client):
    errors = []
    client = MqttClient("exporter1", exit_on_disconnect=True, on_fatal=errors.append)
    _connected(client)
    client._on_disconnect(None, None, None, DISCONNECT, None)

    assert isinstance(errors[0], BrokerConnectionLost)
    assert not client.is_connected


def test_connection_loss_relies_on_reconnect_by_default(paho_client):
    errors = []
    client = MqttClient("exporter1", on_fatal=errors.append)
    _connected(client)
    client._on_disconnect(None, None, None, DISCONNECT, None)

    assert errors == []
    assert not client.is_connected


def test_disconnect_does_not_trigger_loss_policy(paho_client):
    errors = []
    client = MqttClient("exporter1", exit_on_disconnect=True, on_fatal=errors.append)
    _connected(client)
    client.disconnect()
    client._on_disconnect(None, None, None, DISCONNECT, None)

    assert errors == []
    paho_client.disconnect.assert_called_once()
    paho_client.loop_stop.assert_called_once()


def test_publish_passes_through(paho_client):
    client = MqttClient("exporter1")
    client.publish("thermometers/a/config", "{}", retain=True)
    paho_client.publish.assert_called_once_with("thermometers/a/config", "{}", qos=0, retain=True)
