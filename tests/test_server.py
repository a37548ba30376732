"""
Tests for the FastAPI gateway, backed by a fake adapter session.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import FakeChannel, VEHICLE_RESPONSES
from obd_link import server
from obd_link import service as service_module
from obd_link.connection import ConnectionType
from obd_link.service import OBDLinkService


@pytest.fixture
def client():
    with TestClient(server.app) as test_client:
        yield test_client


@pytest.fixture
def connected(monkeypatch, fast_timings):
    """Install an attached session as the gateway's global service."""
    service = OBDLinkService(fast_timings)
    asyncio.run(service.attach(FakeChannel(dict(VEHICLE_RESPONSES))))
    monkeypatch.setattr(server, "_service", service)
    return service


class TestStatus:

    def test_root_disconnected(self, client, monkeypatch):
        monkeypatch.setattr(server, "_service", None)

        data = client.get("/").json()

        assert data["connected"] is False
        assert data["vin"] is None
        assert "dtcs" in data["endpoints"]

    def test_root_connected(self, connected, client):
        data = client.get("/").json()

        assert data["connected"] is True
        assert data["vin"] == "1G1JC5444R7252367"
        assert data["polling"] == "idle"

    def test_requires_connection(self, client, monkeypatch):
        monkeypatch.setattr(server, "_service", None)

        for path in ("/vin", "/dtcs", "/readings", "/pids/0C", "/supported-pids"):
            response = client.get(path)
            assert response.status_code == 400, path

    def test_disconnect_when_idle(self, client, monkeypatch):
        monkeypatch.setattr(server, "_service", None)
        assert client.post("/disconnect").json() == {"status": "already disconnected"}


class TestConnect:
    """Test /connect defaults taken from the config."""

    @pytest.fixture
    def opened(self, monkeypatch):
        calls = []

        def fake_create_connection(connection_type, address, **kwargs):
            calls.append((connection_type, address, kwargs))
            return FakeChannel(dict(VEHICLE_RESPONSES))

        monkeypatch.setattr(service_module, "create_connection", fake_create_connection)
        monkeypatch.setattr(server, "_service", None)
        return calls

    def test_uses_configured_adapter(self, opened, client, monkeypatch):
        monkeypatch.setattr(server, "_config", {
            "adapter_type": "wifi",
            "adapter_port": "10.0.0.5:35000",
            "baudrate": 115200,
        })

        response = client.post("/connect", json={})

        assert response.status_code == 200
        assert response.json()["address"] == "10.0.0.5:35000"
        assert opened == [(ConnectionType.WIFI, "10.0.0.5:35000", {"baudrate": 115200})]

    def test_request_overrides_config(self, opened, client, monkeypatch):
        monkeypatch.setattr(server, "_config", {
            "adapter_type": "wifi",
            "adapter_port": "10.0.0.5:35000",
            "baudrate": 115200,
        })

        response = client.post("/connect", json={
            "connection_type": "usb",
            "address": "/dev/ttyUSB1",
            "baudrate": 9600,
        })

        assert response.status_code == 200
        assert opened == [(ConnectionType.USB, "/dev/ttyUSB1", {"baudrate": 9600})]


class TestReads:

    def test_vin(self, connected, client):
        assert client.get("/vin").json() == {"vin": "1G1JC5444R7252367"}

    def test_supported_pids(self, connected, client):
        pids = client.get("/supported-pids").json()["pids"]
        assert "0C" in pids

    def test_read_pid(self, connected, client):
        data = client.get("/pids/RPM").json()

        assert data["pid"] == "0C"
        assert data["value"] == "1726"
        assert data["is_error"] is False

    def test_unknown_pid(self, connected, client):
        assert client.get("/pids/XYZ").status_code == 404

    def test_readings_after_read(self, connected, client):
        client.get("/pids/0D")

        readings = client.get("/readings").json()

        assert readings["0D"]["value"] == "50"


class TestDTCs:

    def test_read(self, connected, client):
        data = client.get("/dtcs").json()

        assert data["success"] is True
        assert [d["code"] for d in data["dtcs"]] == ["P0195", "P0196"]
        assert data["from_cache"] is False

    def test_clear(self, connected, client):
        data = client.post("/clear-dtcs").json()
        assert data["success"] is True

    def test_clear_rejected(self, connected, client):
        connected._channel.responses["04"] = ["?"]
        assert client.post("/clear-dtcs").status_code == 500


class TestMonitoring:

    def test_start_and_stop(self, connected, client):
        response = client.post("/monitor/start", json={"high": ["0C"], "low": ["05"], "period_ms": 50})

        assert response.status_code == 200
        data = response.json()
        assert data["sequence"].count("0C") == 5
        assert data["sequence"].count("05") == 1
        assert data["period_ms"] == 50

        assert client.post("/monitor/stop").json() == {"status": "stopped"}
        assert not connected.scheduler.running

    def test_period_from_config(self, connected, client, monkeypatch):
        monkeypatch.setattr(server, "_config", {"poll_period_ms": 250})

        data = client.post("/monitor/start", json={"high": ["0C"]}).json()

        assert data["period_ms"] == 250
        assert connected.scheduler.period_ms == 250
        client.post("/monitor/stop")

    def test_priorities_from_config(self, connected, client, monkeypatch):
        monkeypatch.setattr(server, "_config", {"priorities": {"high": ["0D"], "low": ["05"]}})

        data = client.post("/monitor/start", json={}).json()

        assert data["sequence"].count("0D") == 5
        assert data["sequence"].count("05") == 1
        assert data["period_ms"] == 500
        client.post("/monitor/stop")


class TestWebSocket:

    def test_not_connected(self, client, monkeypatch):
        monkeypatch.setattr(server, "_service", None)

        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"error": "Not connected"}
