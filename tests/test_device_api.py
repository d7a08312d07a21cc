import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from devicewatch import database as database_module
from devicewatch.config import settings
from devicewatch.ingestion import IngestOutcome, telemetry_ingestor


@pytest.fixture()
def client(tmp_path, monkeypatch: pytest.MonkeyPatch):
    original_url = settings.DATABASE_URL
    database_module.reset_session_factory(f"sqlite:///{tmp_path / 'devices.sqlite3'}")
    monkeypatch.setattr(settings, "INGEST_ENABLED", False)
    monkeypatch.setattr(settings, "INITIAL_ADMIN_CONSUMER_NO", "")
    monkeypatch.setattr(settings, "RESOLVE_DEVICES_PER_REQUEST", False)

    from devicewatch.main import app as fastapi_app

    try:
        with TestClient(fastapi_app) as client:
            yield client
    finally:
        database_module.reset_session_factory(original_url)


def _register(client, device_id, consumer_no="C1", name="A"):
    response = client.post(
        "/register",
        json={
            "deviceId": device_id,
            "password": "secret1",
            "consumerName": name,
            "consumerAddress": "X",
            "consumerNo": consumer_no,
        },
    )
    assert response.status_code in (200, 201)


def _auth_headers(client, consumer_no="C1"):
    response = client.post("/login", json={"consumerNo": consumer_no, "password": "secret1"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


def test_ingested_telemetry_is_readable_by_owner(client):
    _register(client, "D1")
    headers = _auth_headers(client)

    assert telemetry_ingestor.handle_payload({"deviceId": "D1", "temp": 21}) == IngestOutcome.STORED
    assert telemetry_ingestor.handle_payload({"deviceId": "D1", "hum": 40}) == IngestOutcome.STORED

    response = client.get("/devices/D1", headers=headers)

    assert response.status_code == 200
    device = response.json()["device"]
    assert device["deviceId"] == "D1"
    assert device["data"]["temp"] == 21
    assert device["data"]["hum"] == 40
    assert "receivedAt" in device["data"]
    assert device["lastUpdated"]


def test_unowned_device_is_forbidden_even_when_missing(client):
    _register(client, "D1")
    _register(client, "D2", consumer_no="C2", name="B")
    telemetry_ingestor.handle_payload({"deviceId": "D2", "temp": 5})
    headers = _auth_headers(client)

    owned_by_other = client.get("/devices/D2", headers=headers)
    nobody = client.get("/devices/D404", headers=headers)

    assert owned_by_other.status_code == 403
    assert owned_by_other.json() == {"message": "Access denied to this device"}
    assert nobody.status_code == 403


def test_owned_device_without_telemetry_is_not_found(client):
    _register(client, "D1")
    headers = _auth_headers(client)

    response = client.get("/devices/D1", headers=headers)

    assert response.status_code == 404
    assert response.json() == {"message": "Device not found"}


def test_list_devices_returns_only_owned_records_newest_first(client):
    _register(client, "D1")
    _register(client, "D2")
    _register(client, "D3", consumer_no="C2", name="B")
    headers = _auth_headers(client)

    telemetry_ingestor.handle_payload({"deviceId": "D1", "temp": 1})
    telemetry_ingestor.handle_payload({"deviceId": "D3", "temp": 3})
    telemetry_ingestor.handle_payload({"deviceId": "D2", "temp": 2})

    response = client.get("/devices", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert [device["deviceId"] for device in body["devices"]] == ["D2", "D1"]


def test_list_devices_is_empty_before_any_telemetry(client):
    _register(client, "D1")

    response = client.get("/devices", headers=_auth_headers(client))

    assert response.status_code == 200
    assert response.json()["devices"] == []
    assert response.json()["count"] == 0


def test_token_device_snapshot_is_stale_until_reissued(client, monkeypatch):
    _register(client, "D1")
    headers = _auth_headers(client)
    _register(client, "D2")
    telemetry_ingestor.handle_payload({"deviceId": "D2", "temp": 9})

    assert client.get("/devices/D2", headers=headers).status_code == 403

    monkeypatch.setattr(settings, "RESOLVE_DEVICES_PER_REQUEST", True)
    assert client.get("/devices/D2", headers=headers).status_code == 200

    monkeypatch.setattr(settings, "RESOLVE_DEVICES_PER_REQUEST", False)
    fresh = _auth_headers(client)
    assert client.get("/devices/D2", headers=fresh).status_code == 200


def test_unknown_route_reports_path_and_method(client):
    response = client.get("/nowhere")

    assert response.status_code == 404
    assert response.json() == {
        "message": "Route not found",
        "path": "/nowhere",
        "method": "GET",
    }
