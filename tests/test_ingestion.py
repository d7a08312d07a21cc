import json
import sys
from contextlib import contextmanager
from pathlib import Path
from types import SimpleNamespace

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from devicewatch import database, device_state, identities
from devicewatch.config import settings
from devicewatch.errors import MalformedTelemetry, MissingDeviceId
from devicewatch.ingestion import IngestOutcome, TelemetryEvent, TelemetryIngestor


@pytest.fixture()
def ingest_db(tmp_path):
    original_url = settings.DATABASE_URL
    database.reset_session_factory(f"sqlite:///{tmp_path / 'ingest.sqlite3'}")
    database.init_storage()
    with database.SessionLocal() as session:
        identities.create(
            session,
            consumer_no="C1",
            consumer_name="A",
            consumer_address="X",
            hashed_password="hash",
            device_id="D1",
        )
    try:
        yield
    finally:
        database.reset_session_factory(original_url)


def _make_message(payload, topic="device/data") -> SimpleNamespace:
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return SimpleNamespace(topic=topic, payload=raw)


def _stored(device_id):
    with database.SessionLocal() as session:
        return device_state.find_by_id(session, device_id)


def test_event_from_payload_splits_device_id():
    event = TelemetryEvent.from_payload({"deviceId": " D1 ", "temp": 21})
    assert event.device_id == "D1"
    assert event.fields == {"temp": 21}


@pytest.mark.parametrize("payload", [{}, {"deviceId": ""}, {"deviceId": 7}, {"temp": 1}])
def test_event_without_device_id_is_rejected(payload):
    with pytest.raises(MissingDeviceId):
        TelemetryEvent.from_payload(payload)


def test_event_must_be_an_object():
    with pytest.raises(MalformedTelemetry):
        TelemetryEvent.from_payload(["D1"])


def test_registered_device_telemetry_is_merged(ingest_db):
    ingestor = TelemetryIngestor()

    assert ingestor.handle_payload({"deviceId": "D1", "temp": 21}) == IngestOutcome.STORED
    assert ingestor.handle_payload({"deviceId": "D1", "hum": 55}) == IngestOutcome.STORED

    record = _stored("D1")
    assert record.payload["temp"] == 21
    assert record.payload["hum"] == 55
    assert "receivedAt" in record.payload
    assert ingestor.stats()["stored"] == 2


def test_unregistered_device_is_dropped(ingest_db):
    ingestor = TelemetryIngestor()

    outcome = ingestor.handle_payload({"deviceId": "ghost", "temp": 1})

    assert outcome == IngestOutcome.UNREGISTERED
    assert _stored("ghost") is None


def test_missing_device_id_is_dropped(ingest_db):
    ingestor = TelemetryIngestor()
    assert ingestor.handle_payload({"temp": 1}) == IngestOutcome.MISSING_DEVICE_ID


def test_on_message_handles_json_and_garbage(ingest_db):
    ingestor = TelemetryIngestor()

    ingestor._on_message(ingestor.client, None, _make_message(b"not json"))
    ingestor._on_message(ingestor.client, None, _make_message({"deviceId": "D1", "temp": 3}))

    stats = ingestor.stats()
    assert stats["malformed"] == 1
    assert stats["stored"] == 1
    assert _stored("D1").payload["temp"] == 3


@pytest.mark.parametrize(
    "raw",
    [
        b"{\"deviceId\": \"D1\", \"temp\": NaN}",
        b"{\"deviceId\": \"D1\", \"temp\": Infinity}",
        b"{\"deviceId\": \"D1\", \"temp\": -Infinity}",
    ],
)
def test_non_finite_numbers_are_dropped_as_malformed(ingest_db, raw):
    ingestor = TelemetryIngestor()
    ingestor._on_message(ingestor.client, None, _make_message({"deviceId": "D1", "temp": 21}))

    ingestor._on_message(ingestor.client, None, _make_message(raw))

    stats = ingestor.stats()
    assert stats["malformed"] == 1
    assert stats["stored"] == 1
    assert _stored("D1").payload["temp"] == 21


def test_store_failure_is_swallowed_and_next_event_proceeds(ingest_db):
    calls = {"count": 0}

    @contextmanager
    def _flaky_session():
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("store unavailable")
        with database.SessionLocal() as session:
            yield session

    ingestor = TelemetryIngestor(session_factory=_flaky_session)

    assert ingestor.handle_payload({"deviceId": "D1", "temp": 1}) == IngestOutcome.STORE_FAILURE
    assert ingestor.handle_payload({"deviceId": "D1", "temp": 2}) == IngestOutcome.STORED
    assert _stored("D1").payload["temp"] == 2


def test_on_connect_subscribes_to_configured_topic():
    ingestor = TelemetryIngestor(topic="custom/topic")
    subscribed = []
    fake_client = SimpleNamespace(subscribe=lambda topic, qos=0: subscribed.append((topic, qos)))
    reason = SimpleNamespace(is_failure=False)

    ingestor._on_connect(fake_client, None, None, reason, None)

    assert subscribed == [("custom/topic", 1)]


def test_on_connect_failure_does_not_subscribe():
    ingestor = TelemetryIngestor()
    subscribed = []
    fake_client = SimpleNamespace(subscribe=lambda topic, qos=0: subscribed.append(topic))

    ingestor._on_connect(fake_client, None, None, SimpleNamespace(is_failure=True), None)

    assert subscribed == []
