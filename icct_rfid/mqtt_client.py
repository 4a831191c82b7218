# ============================================================================
# ICCT Smart Attendance - MQTT Broker Client
# ============================================================================
# Purpose:
#   Keeps the one broker connection of the scan bridge: subscribes to the
#   reader topics, hands inbound payloads to a callback, and publishes
#   feedback frames back to the readers.
#
# Architecture:
#   - paho-mqtt runs its own network thread (loop_start)
#   - Callbacks fire on that thread; keep handlers lightweight or hop onto
#     the asyncio loop with call_soon_threadsafe (the bridge does this)
#   - Reconnect is the library's fixed-interval retry (reconnect_delay_set
#     with min == max); no backoff, no jitter
#
# Error reporting:
#   Transport failures are classified as timeout / name resolution / other
#   and each class is logged at most once per client, so an unreachable
#   broker does not flood the log every retry. A good connect re-arms the
#   timeout report.
#
# Configuration:
#   See config/config.yaml -> broker (MQTT_* env vars override)
#
# Dependencies:
#   - paho-mqtt (>= 2.0, CallbackAPIVersion.VERSION2)
# ============================================================================

from __future__ import annotations
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

log = logging.getLogger("bridge.mqtt")

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883, "ws": 80, "wss": 443}


class TransportErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NAME_RESOLUTION = "name_resolution"
    OTHER = "other"


def classify_transport_error(err: Any) -> TransportErrorKind:
    """Exception or reason text -> one of three log-once buckets."""
    if isinstance(err, socket.gaierror):
        return TransportErrorKind.NAME_RESOLUTION
    if isinstance(err, (TimeoutError, socket.timeout)):
        return TransportErrorKind.TIMEOUT
    text = str(err or "").lower()
    if any(s in text for s in ("enotfound", "name_not_resolved", "name or service not known",
                                "nodename nor servname", "getaddrinfo", "temporary failure in name resolution")):
        return TransportErrorKind.NAME_RESOLUTION
    if "timeout" in text or "timed out" in text:
        return TransportErrorKind.TIMEOUT
    return TransportErrorKind.OTHER


@dataclass
class BrokerTopics:
    status: str = "/attendance/status"
    mode: str = "/attendance/mode"
    scan: str = "/attendance/run"
    register: str = "/attendance/register"
    feedback: str = "/attendance/feedback"

    def subscriptions(self) -> List[str]:
        return [self.status, self.mode, self.scan, self.register]


@dataclass
class BrokerEndpoint:
    host: str
    port: int
    transport: str = "tcp"          # "tcp" | "websockets"
    tls: bool = False
    ws_path: str = "/mqtt"


@dataclass
class BrokerSettings:
    """
    Attributes:
        url: ws://, wss://, mqtt://, mqtts:// URL or a bare hostname
        port: explicit port; required for a bare hostname
        master_card_id: administrative card, dropped before any processing
    """
    url: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive_s: int = 60
    connect_timeout_s: float = 30.0
    reconnect_period_s: int = 5
    master_card_id: Optional[str] = None
    topics: BrokerTopics = field(default_factory=BrokerTopics)

    @classmethod
    def from_cfg(cls, broker: Dict[str, Any]) -> "BrokerSettings":
        broker = broker or {}
        topics_cfg = broker.get("topics") or {}
        defaults = BrokerTopics()
        port = broker.get("port")
        return cls(
            url=(str(broker["url"]).strip() or None) if broker.get("url") else None,
            port=int(port) if port not in (None, "") else None,
            username=broker.get("username") or None,
            password=broker.get("password") or None,
            client_id=broker.get("client_id") or None,
            keepalive_s=int(broker.get("keepalive_s", 60)),
            connect_timeout_s=float(broker.get("connect_timeout_s", 30)),
            reconnect_period_s=int(broker.get("reconnect_period_s", 5)),
            master_card_id=(str(broker["master_card_id"]).strip() or None) if broker.get("master_card_id") else None,
            topics=BrokerTopics(
                status=topics_cfg.get("status", defaults.status),
                mode=topics_cfg.get("mode", defaults.mode),
                scan=topics_cfg.get("scan", defaults.scan),
                register=topics_cfg.get("register", defaults.register),
                feedback=topics_cfg.get("feedback", defaults.feedback),
            ),
        )

    def endpoint(self) -> Optional[BrokerEndpoint]:
        """Resolve url/port into a connectable endpoint, None when not configured."""
        if not self.url:
            return None
        if "://" not in self.url:
            if not self.port:
                return None
            return BrokerEndpoint(host=self.url, port=int(self.port))

        parts = urlsplit(self.url)
        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS or not parts.hostname:
            return None
        port = parts.port or self.port or _DEFAULT_PORTS[scheme]
        websockets = scheme in ("ws", "wss")
        return BrokerEndpoint(
            host=parts.hostname,
            port=int(port),
            transport="websockets" if websockets else "tcp",
            tls=scheme in ("wss", "mqtts", "ssl"),
            ws_path=(parts.path or "/mqtt") if websockets else "/mqtt",
        )

    def resolved_client_id(self) -> str:
        return self.client_id or f"icct-attendance-{int(time.time() * 1000)}"


def _default_client_factory(settings: BrokerSettings, ep: BrokerEndpoint) -> mqtt.Client:
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=settings.resolved_client_id(),
        clean_session=True,
        transport=ep.transport,
    )
    if settings.username:
        client.username_pw_set(settings.username, settings.password)
    if ep.transport == "websockets":
        client.ws_set_options(path=ep.ws_path)
    if ep.tls:
        client.tls_set()
    client.connect_timeout = settings.connect_timeout_s
    client.reconnect_delay_set(min_delay=settings.reconnect_period_s, max_delay=settings.reconnect_period_s)
    return client


class BrokerClient:
    """
    Callbacks:
        on_message(topic: str, payload: bytes): every inbound frame on the
            subscribed topics, invoked on the network thread.
        on_status(connected: bool): optional, connection state changes.
    """

    def __init__(
        self,
        settings: BrokerSettings,
        on_message: Callable[[str, bytes], None],
        on_status: Optional[Callable[[bool], None]] = None,
        client_factory: Optional[Callable[[BrokerSettings, BrokerEndpoint], Any]] = None,
    ):
        self.settings = settings
        self._on_message = on_message
        self._on_status = on_status
        self._factory = client_factory or _default_client_factory

        self._client: Optional[Any] = None
        self._connected = False
        self._lock = threading.Lock()
        self._reported: Set[TransportErrorKind] = set()
        self._warned_unconfigured = False
        self._endpoint: Optional[BrokerEndpoint] = None

    # -------------------------------------------------------------------------
    # Lifecycle Management
    # -------------------------------------------------------------------------

    def start(self) -> bool:
        """
        Connect once and start the network loop. Idempotent.

        Returns False (after a single warning) when no usable broker URL is
        configured; no connection is attempted in that case. Blocks for the
        first connect attempt, so call it via asyncio.to_thread from async code.
        """
        if self._client is not None:
            return True

        ep = self.settings.endpoint()
        if ep is None:
            if not self._warned_unconfigured:
                log.warning(
                    "MQTT broker not configured (url=%r, port=%r); skipping connection",
                    self.settings.url, self.settings.port,
                )
                self._warned_unconfigured = True
            return False

        client = self._factory(self.settings, ep)
        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        client.on_connect_fail = self._handle_connect_fail
        client.on_message = self._handle_message
        self._client = client
        self._endpoint = ep

        log.info("MQTT connecting to %s:%s (%s%s)", ep.host, ep.port, ep.transport, ", tls" if ep.tls else "")
        try:
            client.connect(ep.host, ep.port, keepalive=self.settings.keepalive_s)
        except OSError as e:
            self._report(e)
            # Hand the retry over to the library's fixed-interval loop.
            client.connect_async(ep.host, ep.port, keepalive=self.settings.keepalive_s)
        client.loop_start()
        return True

    def stop(self) -> None:
        """Unsubscribe (if connected), disconnect and stop the network loop. Safe when not started."""
        client = self._client
        if client is None:
            return
        try:
            if self._connected:
                client.unsubscribe(self.settings.topics.subscriptions())
            client.disconnect()
        except Exception as e:
            log.warning("MQTT cleanup error: %s", e)
        finally:
            try:
                client.loop_stop()
            finally:
                self._client = None
                self._set_connected(False)
                log.info("MQTT client cleaned up")

    @property
    def connected(self) -> bool:
        return self._connected and self._client is not None

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def publish(self, topic: str, payload: str) -> bool:
        """Fire-and-forget QoS 0 publish; False when disconnected or rejected."""
        client = self._client
        if client is None or not self._connected:
            return False
        info = client.publish(topic, payload, qos=0)
        return getattr(info, "rc", mqtt.MQTT_ERR_NO_CONN) == mqtt.MQTT_ERR_SUCCESS

    # -------------------------------------------------------------------------
    # Callbacks (network thread)
    # -------------------------------------------------------------------------

    def _handle_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            self._report(f"connect refused: {reason_code}")
            self._set_connected(False)
            return
        with self._lock:
            self._reported.discard(TransportErrorKind.TIMEOUT)
        self._set_connected(True)
        try:
            client.subscribe([(t, 0) for t in self.settings.topics.subscriptions()])
            log.info("MQTT subscribed to topics: %s", self.settings.topics.subscriptions())
        except Exception as e:
            log.error("MQTT subscription error: %s", e)

    def _handle_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            self._report(f"disconnected: {reason_code}")
        else:
            log.info("MQTT disconnected")
        self._set_connected(False)

    def _handle_connect_fail(self, client, userdata):
        # paho does not hand over the exception of a background retry; a
        # lookup of the broker host tells DNS failures apart from the rest.
        log.debug("MQTT connect attempt failed; library will retry in %ss", self.settings.reconnect_period_s)
        ep = self._endpoint
        err: Any = f"reconnect to {self.settings.url} failed"
        if ep is not None:
            try:
                socket.getaddrinfo(ep.host, ep.port)
            except socket.gaierror as e:
                err = e
            except OSError:
                pass
        self._report(err)

    def _handle_message(self, client, userdata, msg):
        try:
            self._on_message(msg.topic, msg.payload)
        except Exception:
            # One bad frame must not kill the network thread.
            log.exception("MQTT message handler failed for topic %s", msg.topic)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _set_connected(self, value: bool) -> None:
        changed = value != self._connected
        self._connected = value
        if changed and self._on_status:
            try:
                self._on_status(value)
            except Exception:
                log.exception("MQTT status callback failed")

    def _report(self, err: Any) -> TransportErrorKind:
        """Log a transport failure once per class; always marks the link down."""
        kind = classify_transport_error(err)
        with self._lock:
            first = kind not in self._reported
            self._reported.add(kind)
        if first:
            if kind is TransportErrorKind.TIMEOUT:
                log.warning("MQTT connection timeout: broker did not answer in time (%s)", self.settings.url)
            elif kind is TransportErrorKind.NAME_RESOLUTION:
                log.warning("MQTT broker DNS resolution failed for %s; MQTT features unavailable", self.settings.url)
            else:
                log.error("MQTT connection error: %s", err)
        self._set_connected(False)
        return kind
