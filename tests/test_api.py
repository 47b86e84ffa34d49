from __future__ import annotations

import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient

from coordinator import SyncCoordinator
from exceptions import ConnectTimeout
from mqtt_client import MQTTClient
from conftest import CONNACK_OK, DISCONNECT_ERROR, make_settings


@pytest.fixture
def bridge(paho_factory, paho_clients, clock):  # type: ignore[no-untyped-def]
    """Coordinator wired to a real adapter over a fake paho client, already connected."""

    config = make_settings()
    transport = MQTTClient(config=config, client_factory=paho_factory)
    sync = SyncCoordinator(transport=transport, config=config, clock=clock)
    sync.attach()
    with pytest.raises(ConnectTimeout):
        asyncio.run(transport.connect())
    transport._on_connect(paho_clients[0], None, None, CONNACK_OK, None)
    return sync


@pytest.fixture
def api(bridge):  # type: ignore[no-untyped-def]
    import main

    main.app.dependency_overrides[main.get_coordinator] = lambda: bridge
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def deliver(bridge: SyncCoordinator, paho, topic: str, body: dict) -> None:  # type: ignore[no-untyped-def]
    message = type("Msg", (), {"topic": topic, "payload": json.dumps(body).encode()})()
    bridge.transport._on_message(paho, None, message)


def test_command_endpoint_sets_state_and_publishes(api, bridge, paho_clients) -> None:  # type: ignore[no-untyped-def]
    deliver(bridge, paho_clients[0], "casa/foco/heartbeat", {"esp32Id": "esp32-1"})

    resp = api.post("/api/dispositivo", json={"dispositivo": "foco", "estado": "on"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["mensaje"] == "Foco encendido"
    assert body["estado"] == "on"
    assert body["esp32sConectados"] == 1
    assert body["mqttConnected"] is True
    assert body["timestamp"].startswith("2026-01-01T12:00:00")

    topic, payload, _ = paho_clients[0].published[-1]
    assert topic == "casa/foco/comando"
    assert json.loads(payload)["estado"] == "on"


def test_command_endpoint_accepts_device_alias_and_timestamp(api) -> None:  # type: ignore[no-untyped-def]
    resp = api.post(
        "/api/dispositivo",
        json={"device": "foco", "estado": "off", "timestamp": "2026-01-01T12:00:30Z"},
    )

    assert resp.status_code == 200
    assert resp.json()["estado"] == "off"
    assert resp.json()["mensaje"] == "Foco apagado"
    assert resp.json()["timestamp"].startswith("2026-01-01T12:00:30")


def test_command_endpoint_rejects_invalid_value(api, bridge) -> None:  # type: ignore[no-untyped-def]
    before = bridge.state_store.current()

    resp = api.post("/api/dispositivo", json={"dispositivo": "foco", "estado": "dim"})

    assert resp.status_code == 400
    assert resp.json()["statusCode"] == 400
    assert bridge.state_store.current() == before


def test_command_endpoint_rejects_malformed_body(api) -> None:  # type: ignore[no-untyped-def]
    resp = api.post("/api/dispositivo", json={"estado": "on"})
    assert resp.status_code == 400

    resp = api.post("/api/dispositivo", json={"dispositivo": "foco", "estado": "on", "timestamp": "soon"})
    assert resp.status_code == 400


def test_command_endpoint_unavailable_while_disconnected(api, bridge, paho_clients) -> None:  # type: ignore[no-untyped-def]
    bridge.transport._on_disconnect(paho_clients[0], None, None, DISCONNECT_ERROR, None)
    before = bridge.state_store.current()

    resp = api.post("/api/dispositivo", json={"dispositivo": "foco", "estado": "on"})

    assert resp.status_code == 503
    assert resp.json()["message"] == "Servidor MQTT no disponible"
    assert bridge.state_store.current() == before

    # Reads keep working while disconnected
    assert api.get("/api/dispositivo/estado").status_code == 200
    assert api.get("/api/health").json()["mqtt"]["connected"] is False


def test_state_endpoint_reflects_device_reports(api, bridge, paho_clients) -> None:  # type: ignore[no-untyped-def]
    deliver(
        bridge,
        paho_clients[0],
        "casa/foco/estado",
        {"estado": "on", "timestamp": "2026-01-01T12:01:00Z", "esp32Id": "esp32-1"},
    )

    body = api.get("/api/dispositivo/estado").json()

    assert body["estado"] == "on"
    assert body["timestamp"].startswith("2026-01-01T12:01:00")
    assert body["esp32sConectados"] == 0
    assert paho_clients[0].published[-1][0] == "casa/foco/status"


def test_statistics_endpoint(api, bridge, paho_clients) -> None:  # type: ignore[no-untyped-def]
    deliver(bridge, paho_clients[0], "casa/foco/heartbeat", {"esp32Id": "esp32-1"})
    api.post("/api/dispositivo", json={"dispositivo": "foco", "estado": "on"})

    body = api.get("/api/dispositivo/estadisticas").json()

    assert body["estadoFoco"] == "on"
    assert body["fuente"] == "command"
    assert body["esp32sConectados"] == ["esp32-1"]
    assert body["totalESP32s"] == 1
    assert body["contadores"]["commands_applied"] == 1
    assert body["mqtt"]["connected"] is True
    assert body["mqtt"]["broker"] == "broker.test:1883"


def test_health_endpoint(api) -> None:  # type: ignore[no-untyped-def]
    body = api.get("/api/health").json()

    assert body["status"] == "ok"
    assert body["service"] == "Light Bridge MQTT"
    assert body["mqtt"] == {"connected": True, "broker": "broker.test:1883"}
    assert body["esp32s"] == 0
    assert body["estadoFoco"] == "off"


def test_manual_test_command_endpoint(api, bridge, paho_clients) -> None:  # type: ignore[no-untyped-def]
    resp = api.post("/api/dispositivo/test/on")

    assert resp.status_code == 200
    assert resp.json()["mensaje"] == "Comando de test enviado: on"
    assert paho_clients[0].published[-1][0] == "casa/foco/comando"
    assert bridge.state_store.current().value.value == "off"

    assert api.post("/api/dispositivo/test/blink").status_code == 400


def test_settings_validation_rejects_bad_values(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    from config import Settings

    assert make_settings().validate_required_settings() is True

    monkeypatch.setattr(Settings, "MQTT_COMMAND_QOS", 2)
    monkeypatch.setattr(Settings, "DEVICE_HEARTBEAT_WINDOW_SECONDS", 0)
    with pytest.raises(ValueError) as excinfo:
        Settings.validate_required_settings()

    assert "MQTT_COMMAND_QOS must be 0 or 1" in str(excinfo.value)
    assert "DEVICE_HEARTBEAT_WINDOW_SECONDS must be positive" in str(excinfo.value)


def test_startup_serves_requests_while_broker_is_unreachable(monkeypatch, paho_factory, paho_clients) -> None:  # type: ignore[no-untyped-def]
    import main

    monkeypatch.setattr(main.mqtt_client, "client_factory", paho_factory)
    monkeypatch.setattr(main.mqtt_client, "connect_timeout", 30)

    started = time.monotonic()
    with TestClient(main.app) as client:
        body = client.get("/api/health").json()
        assert time.monotonic() - started < 5

        assert body["mqtt"]["connected"] is False
        assert client.post("/api/dispositivo", json={"dispositivo": "foco", "estado": "on"}).status_code == 503

    assert time.monotonic() - started < 5
    assert all(not paho.loop_running for paho in paho_clients)
    assert main.mqtt_client.state.value == "disconnected"
