"""Thin wrapper around paho-mqtt: broker URL handling, raw-payload subscriptions, fail-fast lifecycle."""

from __future__ import annotations

import logging
import ssl
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt


logger = logging.getLogger(__name__)


MessageCallback = Callable[[str, bytes], None]
FatalCallback = Callable[[Exception], None]

DEFAULT_PORTS = {
    "tcp": 1883,
    "mqtt": 1883,
    "ssl": 8883,
    "tls": 8883,
    "mqtts": 8883,
    "ws": 80,
    "wss": 443,
}
SECURE_SCHEMES = ("ssl", "tls", "mqtts", "wss")
WEBSOCKET_SCHEMES = ("ws", "wss")


class BrokerConnectionError(RuntimeError):
    """The initial connection to the broker could not be established."""


class BrokerConnectionLost(RuntimeError):
    """An established broker connection dropped."""


class SubscriptionError(RuntimeError):
    """The broker (or the client) rejected a subscription request."""


@dataclass(frozen=True)
class BrokerAddress:
    scheme: str
    host: str
    port: int
    path: str = ""

    @property
    def secure(self) -> bool:
        return self.scheme in SECURE_SCHEMES

    @property
    def transport(self) -> str:
        return "websockets" if self.scheme in WEBSOCKET_SCHEMES else "tcp"

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"


def parse_server_url(url: str) -> BrokerAddress:
    """Split ``tcp://host:port`` style broker URLs; the port defaults per scheme."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ValueError(f"unsupported broker scheme in {url!r}")
    if not parts.hostname:
        raise ValueError(f"missing broker host in {url!r}")
    return BrokerAddress(
        scheme=scheme,
        host=parts.hostname,
        port=parts.port or DEFAULT_PORTS[scheme],
        path=parts.path,
    )


@dataclass
class _Subscription:
    topic: str
    callback: MessageCallback


class MqttClient:
    """MQTT helper with wildcard dispatch, resubscribe-on-connect and a pluggable fatal-error hook."""

    def __init__(
        self,
        client_id: str,
        server: str = "tcp://127.0.0.1:1883",
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 30,
        reconnect_delay: int = 1,
        connect_timeout: float = 30.0,
        exit_on_disconnect: bool = False,
        on_fatal: Optional[FatalCallback] = None,
    ):
        self.address = parse_server_url(server)
        self.client_id = client_id
        self.keepalive = keepalive
        self.connect_timeout = connect_timeout
        self.exit_on_disconnect = exit_on_disconnect
        self.on_fatal = on_fatal
        self.fatal_error: Optional[Exception] = None

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=True,
            transport=self.address.transport,
        )
        if username:
            self.client.username_pw_set(username, password or None)
        if self.address.secure:
            # encrypted, but the broker certificate is not verified
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            self.client.tls_set_context(context)
            self.client.tls_insecure_set(True)
        if self.address.transport == "websockets" and self.address.path:
            self.client.ws_set_options(path=self.address.path)
        self.client.reconnect_delay_set(min_delay=reconnect_delay, max_delay=reconnect_delay)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message

        self._subs: List[_Subscription] = []
        self._pending: Dict[int, str] = {}
        self._lock = threading.Lock()
        self._connected = threading.Event()
        self._connack = threading.Event()
        self._connect_error: Optional[Exception] = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    # --------------------------------------------------------------------- #
    # MQTT event handlers
    # --------------------------------------------------------------------- #
    def _on_connect(self, _client, _userdata, _flags, reason_code, _properties):
        if reason_code.is_failure:
            logger.error("Broker %s refused connection: %s", self.address, reason_code)
            self._connect_error = BrokerConnectionError(f"broker {self.address} refused connection: {reason_code}")
            self._connack.set()
            return
        self._connected.set()
        self._connack.set()
        logger.info("Connected to %s", self.address)
        # clean session: the broker forgets subscriptions, so reissue all of them
        with self._lock:
            topics = [sub.topic for sub in self._subs]
        for topic in dict.fromkeys(topics):
            self._send_subscribe(topic)

    def _on_disconnect(self, _client, _userdata, _flags, reason_code, _properties):
        was_connected = self._connected.is_set()
        self._connected.clear()
        if self._closing or not was_connected:
            return
        if self.exit_on_disconnect:
            logger.error("Disconnected from broker: %s - quitting", reason_code)
            self._fail(BrokerConnectionLost(f"disconnected from {self.address}: {reason_code}"))
        else:
            logger.warning("Disconnected from broker: %s - reconnecting", reason_code)

    def _on_subscribe(self, _client, _userdata, mid, reason_code_list, _properties):
        with self._lock:
            topic = self._pending.pop(mid, None) or f"mid {mid}"
        for reason_code in reason_code_list:
            if reason_code.is_failure:
                self._fail(SubscriptionError(f"subscription to {topic} rejected: {reason_code}"))
                return
        logger.debug("Subscription confirmed topic=%s mid=%s", topic, mid)

    def _on_message(self, _client, _userdata, msg):
        with self._lock:
            callbacks = [sub.callback for sub in self._subs if mqtt.topic_matches_sub(sub.topic, msg.topic)]
        if not callbacks:
            return
        logger.debug("MQTT message topic=%s matched_callbacks=%s", msg.topic, len(callbacks))
        for cb in callbacks:
            try:
                cb(msg.topic, msg.payload)
            except Exception as exc:
                logger.exception("MQTT callback error for topic %s: %s", msg.topic, exc)

    # ------------------------------------------------------------------ internals
    def _send_subscribe(self, topic: str):
        result, mid = self.client.subscribe(topic, qos=0)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._fail(SubscriptionError(f"subscription to {topic} failed: {mqtt.error_string(result)}"))
            return
        with self._lock:
            self._pending[mid] = topic
        logger.info("Subscribed to %s", topic)

    def _fail(self, exc: Exception):
        if self.fatal_error is None:
            self.fatal_error = exc
        logger.error("%s", exc)
        if self.on_fatal is not None:
            self.on_fatal(exc)

    # ------------------------------------------------------------------ API
    def connect(self):
        """Connect and wait for CONNACK; raises ``BrokerConnectionError`` on failure."""
        self._closing = False
        self._connect_error = None
        self._connack.clear()
        logger.info("Connecting to MQTT broker at %s as %s", self.address, self.client_id)
        try:
            self.client.connect(self.address.host, self.address.port, self.keepalive)
        except (OSError, ValueError) as exc:
            raise BrokerConnectionError(f"cannot connect to {self.address}: {exc}") from exc
        self.client.loop_start()
        if not self._connack.wait(self.connect_timeout):
            self._stop_loop()
            raise BrokerConnectionError(f"no answer from {self.address} within {self.connect_timeout}s")
        if self._connect_error is not None:
            self._stop_loop()
            raise self._connect_error

    def subscribe(self, topic: str, callback: MessageCallback):
        """Subscribe to a topic pattern (`+`/`#` supported); kept across reconnects."""
        with self._lock:
            already = any(sub.topic == topic for sub in self._subs)
            self._subs.append(_Subscription(topic=topic, callback=callback))
        if self.is_connected and not already:
            self._send_subscribe(topic)

    def publish(self, topic: str, payload, retain: bool = False):
        logger.debug("Publishing to %s payload=%s", topic, payload)
        self.client.publish(topic, payload, qos=0, retain=retain)

    def disconnect(self):
        self._stop_loop()

    def _stop_loop(self):
        self._closing = True
        self.client.disconnect()
        self.client.loop_stop()
