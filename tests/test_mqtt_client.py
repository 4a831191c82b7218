import logging
import socket
from types import SimpleNamespace

import pytest

from icct_rfid.mqtt_client import (
    BrokerClient,
    BrokerSettings,
    TransportErrorKind,
    classify_transport_error,
)

from .conftest import FakePahoClient

OK = SimpleNamespace(is_failure=False)


def client_with(fake, **settings):
    calls = []

    def factory(s, ep):
        calls.append(ep)
        return fake

    received = []
    bc = BrokerClient(
        BrokerSettings(**settings),
        on_message=lambda topic, payload: received.append((topic, payload)),
        client_factory=factory,
    )
    return bc, calls, received


@pytest.mark.parametrize(
    "url, port, expected",
    [
        ("mqtt://broker.local", None, ("broker.local", 1883, "tcp", False)),
        ("mqtts://broker.local:8884", None, ("broker.local", 8884, "tcp", True)),
        ("ws://broker.local:9001/mqtt", None, ("broker.local", 9001, "websockets", False)),
        ("wss://broker.local", None, ("broker.local", 443, "websockets", True)),
        ("broker.local", 1883, ("broker.local", 1883, "tcp", False)),
    ],
)
def test_endpoint_parsing(url, port, expected):
    ep = BrokerSettings(url=url, port=port).endpoint()
    assert (ep.host, ep.port, ep.transport, ep.tls) == expected


@pytest.mark.parametrize("url, port", [(None, None), ("", 1883), ("broker.local", None), ("ftp://x", None)])
def test_unusable_endpoint(url, port):
    assert BrokerSettings(url=url, port=port).endpoint() is None


def test_settings_from_cfg():
    s = BrokerSettings.from_cfg({"url": "mqtt://b", "port": "1884", "master_card_id": " M1 ", "topics": {"scan": "/x/run"}})
    assert s.port == 1884
    assert s.master_card_id == "M1"
    assert s.topics.scan == "/x/run"
    assert s.topics.feedback == "/attendance/feedback"
    assert s.resolved_client_id().startswith("icct-attendance-")


def test_unset_url_never_connects_and_warns_once(caplog):
    fake = FakePahoClient()
    bc, calls, _ = client_with(fake)
    with caplog.at_level(logging.WARNING, logger="bridge.mqtt"):
        assert bc.start() is False
        assert bc.start() is False
    assert calls == []
    assert fake.calls == []
    warnings = [r for r in caplog.records if r.name == "bridge.mqtt" and r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert not bc.connected


def test_start_connects_and_subscribes_on_connack():
    fake = FakePahoClient()
    bc, calls, _ = client_with(fake, url="mqtt://broker.local")
    assert bc.start()
    assert fake.calls == ["connect", "loop_start"]
    fake.on_connect(fake, None, None, OK, None)
    assert bc.connected
    topics = [t for t, _ in fake.subscribed[0]]
    assert topics == ["/attendance/status", "/attendance/mode", "/attendance/run", "/attendance/register"]


def test_failed_first_connect_hands_retry_to_library(caplog):
    fake = FakePahoClient(connect_exc=socket.gaierror(-2, "Name or service not known"))
    bc, _, _ = client_with(fake, url="mqtt://nowhere.invalid")
    with caplog.at_level(logging.WARNING, logger="bridge.mqtt"):
        assert bc.start()
    assert fake.calls == ["connect", "connect_async", "loop_start"]
    assert any("DNS" in r.getMessage() for r in caplog.records)
    assert not bc.connected


def test_each_error_class_logged_once(caplog):
    bc, _, _ = client_with(FakePahoClient(), url="mqtt://b")
    with caplog.at_level(logging.WARNING, logger="bridge.mqtt"):
        for _ in range(3):
            bc._report(TimeoutError("timed out"))
            bc._report(socket.gaierror("getaddrinfo failed"))
    assert len([r for r in caplog.records if r.name == "bridge.mqtt"]) == 2


def test_successful_connect_rearms_timeout_report(caplog):
    fake = FakePahoClient()
    bc, _, _ = client_with(fake, url="mqtt://b")
    bc.start()
    with caplog.at_level(logging.WARNING, logger="bridge.mqtt"):
        bc._report(TimeoutError())
        fake.on_connect(fake, None, None, OK, None)
        bc._report(TimeoutError())
    timeouts = [r for r in caplog.records if "timeout" in r.getMessage()]
    assert len(timeouts) == 2


def test_classify_transport_error():
    assert classify_transport_error(socket.gaierror()) is TransportErrorKind.NAME_RESOLUTION
    assert classify_transport_error(TimeoutError()) is TransportErrorKind.TIMEOUT
    assert classify_transport_error("getaddrinfo ENOTFOUND broker") is TransportErrorKind.NAME_RESOLUTION
    assert classify_transport_error("connect ETIMEDOUT: connection timed out") is TransportErrorKind.TIMEOUT
    assert classify_transport_error(ConnectionRefusedError("refused")) is TransportErrorKind.OTHER


def test_publish_only_while_connected():
    fake = FakePahoClient()
    bc, _, _ = client_with(fake, url="mqtt://b")
    assert not bc.publish("/attendance/feedback", "{}")
    bc.start()
    assert not bc.publish("/attendance/feedback", "{}")
    fake.on_connect(fake, None, None, OK, None)
    assert bc.publish("/attendance/feedback", "{}")
    assert fake.published == [("/attendance/feedback", "{}", 0)]


def test_disconnect_marks_link_down():
    fake = FakePahoClient()
    bc, _, _ = client_with(fake, url="mqtt://b")
    bc.start()
    fake.on_connect(fake, None, None, OK, None)
    fake.on_disconnect(fake, None, None, OK, None)
    assert not bc.connected


def test_messages_forwarded_and_handler_errors_contained():
    fake = FakePahoClient()
    bc, _, received = client_with(fake, url="mqtt://b")
    bc.start()
    fake.on_message(fake, None, SimpleNamespace(topic="/attendance/run", payload=b"{}"))
    assert received == [("/attendance/run", b"{}")]

    boom = BrokerClient(BrokerSettings(url="mqtt://b"), on_message=lambda t, p: 1 / 0, client_factory=lambda s, e: fake)
    boom.start()
    fake.on_message(fake, None, SimpleNamespace(topic="/attendance/run", payload=b"{}"))


def test_stop_unsubscribes_and_cleans_up():
    fake = FakePahoClient()
    statuses = []
    bc = BrokerClient(
        BrokerSettings(url="mqtt://b"),
        on_message=lambda t, p: None,
        on_status=statuses.append,
        client_factory=lambda s, e: fake,
    )
    bc.start()
    fake.on_connect(fake, None, None, OK, None)
    bc.stop()
    assert fake.unsubscribed
    assert fake.calls[-2:] == ["disconnect", "loop_stop"]
    assert statuses == [True, False]
    assert not bc.connected
    bc.stop()


def test_background_retry_dns_failure_is_classified_once(caplog, monkeypatch):
    def no_dns(host, port, *args, **kwargs):
        raise socket.gaierror(-2, "Name or service not known")

    fake = FakePahoClient()
    bc, _, _ = client_with(fake, url="mqtt://broker.local")
    bc.start()
    fake.on_connect(fake, None, None, OK, None)
    monkeypatch.setattr(socket, "getaddrinfo", no_dns)
    with caplog.at_level(logging.WARNING, logger="bridge.mqtt"):
        fake.on_connect_fail(fake, None)
        fake.on_connect_fail(fake, None)
    dns = [r for r in caplog.records if "DNS" in r.getMessage()]
    assert len(dns) == 1
    assert not bc.connected


def test_background_retry_other_failure_logged_once(caplog, monkeypatch):
    monkeypatch.setattr(socket, "getaddrinfo", lambda host, port, *a, **k: [])
    fake = FakePahoClient()
    bc, _, _ = client_with(fake, url="mqtt://broker.local")
    bc.start()
    with caplog.at_level(logging.WARNING, logger="bridge.mqtt"):
        for _ in range(3):
            fake.on_connect_fail(fake, None)
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
