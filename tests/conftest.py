from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

import pytest

# Must be set before config is imported anywhere
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="light-bridge-logs-"))
os.environ.setdefault("MQTT_CLIENT_ID", "fastapi_test01")
os.environ.setdefault("MQTT_HOST", "broker.test")

from paho.mqtt.packettypes import PacketTypes  # noqa: E402
from paho.mqtt.reasoncodes import ReasonCode  # noqa: E402

from config import Settings  # noqa: E402

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now

    def at(self, seconds: float) -> datetime:
        return T0 + timedelta(seconds=seconds)


class FakePahoClient:
    """Stands in for paho.mqtt.client.Client; records every call."""

    def __init__(self, **kwargs: Any) -> None:
        self.init_kwargs = kwargs
        self.credentials: tuple[str, str | None] | None = None
        self.tls = False
        self.reconnect_delay: tuple[int, int] | None = None
        self.connect_timeout: float | None = None
        self.connect_args: tuple[str, int, int] | None = None
        self.loop_running = False
        self.disconnected = False
        self.subscriptions: list[tuple[str, int]] = []
        self.published: list[tuple[str, bytes | str, int]] = []
        self.publish_rc = 0
        self.subscribe_rc = 0
        self._mid = 0

    def username_pw_set(self, username: str, password: str | None = None) -> None:
        self.credentials = (username, password)

    def tls_set(self) -> None:
        self.tls = True

    def reconnect_delay_set(self, min_delay: int = 1, max_delay: int = 120) -> None:
        self.reconnect_delay = (min_delay, max_delay)

    def connect_async(self, host: str, port: int, keepalive: int) -> None:
        self.connect_args = (host, port, keepalive)

    def loop_start(self) -> None:
        self.loop_running = True

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        self.disconnected = True

    def subscribe(self, topic: str, qos: int = 0) -> tuple[int, int]:
        self._mid += 1
        self.subscriptions.append((topic, qos))
        return self.subscribe_rc, self._mid

    def publish(self, topic: str, payload: bytes | str, qos: int = 0) -> SimpleNamespace:
        self._mid += 1
        if self.publish_rc == 0:
            self.published.append((topic, payload, qos))
        return SimpleNamespace(rc=self.publish_rc, mid=self._mid)


class FakeTransport:
    """Minimal transport used to drive the coordinator directly."""

    def __init__(self, connected: bool = True) -> None:
        self.is_connected = connected
        self.broker_address = "broker.test:1883"
        self.published: list[tuple[str, bytes, int]] = []
        self.publish_ok = True
        self.handler = None

    def set_message_handler(self, handler) -> None:  # type: ignore[no-untyped-def]
        self.handler = handler

    def publish(self, topic: str, payload: bytes, qos: int = 0) -> bool:
        if self.publish_ok:
            self.published.append((topic, payload, qos))
        return self.publish_ok

    def get_connection_status(self) -> dict[str, Any]:
        return {"connected": self.is_connected, "broker": self.broker_address}


def reason(packet_type: int, name: str) -> ReasonCode:
    return ReasonCode(packet_type, name)


CONNACK_OK = reason(PacketTypes.CONNACK, "Success")
CONNACK_REFUSED = reason(PacketTypes.CONNACK, "Not authorized")
DISCONNECT_ERROR = reason(PacketTypes.DISCONNECT, "Unspecified error")
SUBACK_OK = reason(PacketTypes.SUBACK, "Granted QoS 0")
SUBACK_FAILED = reason(PacketTypes.SUBACK, "Unspecified error")
PUBACK_OK = reason(PacketTypes.PUBACK, "Success")


def make_settings(**overrides: Any) -> Settings:
    config = Settings()
    config.MQTT_HOST = "broker.test"
    config.MQTT_PORT = 1883
    config.MQTT_USERNAME = None
    config.MQTT_PASSWORD = None
    config.MQTT_USE_SSL = False
    config.MQTT_CLIENT_ID = "fastapi_test01"
    config.MQTT_CONNECT_TIMEOUT = 0.05
    config.MQTT_RECONNECT_PERIOD = 5
    config.MQTT_COMMAND_QOS = 0
    config.MQTT_ACK_QOS = 0
    config.DEVICE_HEARTBEAT_WINDOW_SECONDS = 300
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def paho_clients() -> list[FakePahoClient]:
    return []


@pytest.fixture
def paho_factory(paho_clients):  # type: ignore[no-untyped-def]
    def factory(**kwargs: Any) -> FakePahoClient:
        client = FakePahoClient(**kwargs)
        paho_clients.append(client)
        return client

    return factory
