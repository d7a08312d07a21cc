"""Consume device telemetry from MQTT and fold it into the device state store.

Every failure is terminal for the event that caused it: it is logged and the
event is dropped. Nothing is retried, buffered or reported back to the
transport, so one bad message never stalls delivery of the next.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import paho.mqtt.client as mqtt
from sqlmodel import Session

from . import database, device_state, identities
from .config import settings
from .errors import MalformedTelemetry, MissingDeviceId, UnregisteredDevice
from .mqtt_tls import connect_mqtt_client


_LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


class IngestOutcome(str, Enum):
    STORED = "stored"
    MALFORMED = "malformed"
    MISSING_DEVICE_ID = "missing_device_id"
    UNREGISTERED = "unregistered"
    STORE_FAILURE = "store_failure"


@dataclass(frozen=True)
class TelemetryEvent:
    """A decoded telemetry message: the device id plus its reported fields."""

    device_id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "TelemetryEvent":
        if not isinstance(payload, Mapping):
            raise MalformedTelemetry("telemetry payload must be a JSON object")
        raw_id = payload.get(device_state.DEVICE_ID_FIELD)
        device_id = raw_id.strip() if isinstance(raw_id, str) else ""
        if not device_id:
            raise MissingDeviceId()
        fields = {
            str(key): value
            for key, value in payload.items()
            if key != device_state.DEVICE_ID_FIELD
        }
        return cls(device_id=device_id, fields=fields)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def decode_message(raw: bytes) -> Any:
    """Decode strict JSON; NaN and Infinity literals are refused."""

    try:
        return json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)
    except ValueError as exc:
        raise MalformedTelemetry(f"undecodable telemetry: {exc}") from exc


def _default_session_factory() -> Session:
    # Resolved per call so a rebuilt session factory is picked up.
    return database.SessionLocal()


class TelemetryIngestor:
    """Subscribe to the telemetry topic and apply each event."""

    def __init__(
        self,
        *,
        topic: Optional[str] = None,
        client_id: Optional[str] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.topic = topic or settings.TELEMETRY_TOPIC
        self._session_factory = session_factory or _default_session_factory
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or settings.MQTT_CLIENT_ID,
        )
        self.client.enable_logger(_LOGGER)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self._lock = threading.Lock()
        self._counts: Dict[IngestOutcome, int] = {outcome: 0 for outcome in IngestOutcome}
        self._running = False

    # ------------------------------------------------------------------
    # MQTT lifecycle
    def start(self) -> None:
        if self._running:
            return
        connect_mqtt_client(
            self.client,
            keepalive=30,
            start_async=True,
            raise_on_failure=False,
        )
        self.client.loop_start()
        self._running = True
        _LOGGER.info("Telemetry ingestion started on topic %s", self.topic)

    def stop(self) -> None:
        if not self._running:
            return
        self.client.disconnect()
        self.client.loop_stop()
        self._running = False
        _LOGGER.info("Telemetry ingestion stopped")

    @property
    def is_connected(self) -> bool:
        return self._running and self.client.is_connected()

    # ------------------------------------------------------------------
    # MQTT callbacks
    def _on_connect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        if getattr(reason_code, "is_failure", False):
            _LOGGER.error("MQTT connection refused: %s", reason_code)
            return
        _LOGGER.info("Connected to MQTT broker")
        client.subscribe(self.topic, qos=1)
        _LOGGER.info("Subscribed to %s topic", self.topic)

    def _on_disconnect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        if self._running:
            _LOGGER.warning("MQTT client went offline (%s); reconnecting", reason_code)

    def _on_message(self, client: mqtt.Client, userdata, msg: mqtt.MQTTMessage) -> None:  # type: ignore[override]
        try:
            payload = decode_message(msg.payload)
        except MalformedTelemetry as exc:
            _LOGGER.error("Dropping message on %s: %s", msg.topic, exc)
            self._count(IngestOutcome.MALFORMED)
            return
        _LOGGER.debug("Received MQTT message on topic %s", msg.topic)
        self.handle_payload(payload)

    # ------------------------------------------------------------------
    # Event handling
    def handle_payload(self, payload: Any) -> IngestOutcome:
        """Validate and apply one decoded event. Never raises."""

        try:
            event = TelemetryEvent.from_payload(payload)
        except MissingDeviceId:
            _LOGGER.error("Device ID is required in telemetry message")
            return self._count(IngestOutcome.MISSING_DEVICE_ID)
        except MalformedTelemetry as exc:
            _LOGGER.error("Dropping malformed telemetry: %s", exc)
            return self._count(IngestOutcome.MALFORMED)
        return self.handle_event(event)

    def handle_event(self, event: TelemetryEvent) -> IngestOutcome:
        try:
            with self._session_factory() as session:
                if identities.find_by_device_id(session, event.device_id) is None:
                    raise UnregisteredDevice(event.device_id)
                device_state.merge_upsert(session, event.device_id, event.fields)
        except UnregisteredDevice:
            _LOGGER.warning("Received data from unregistered device: %s", event.device_id)
            return self._count(IngestOutcome.UNREGISTERED)
        except Exception:
            _LOGGER.exception("Error handling device data for %s", event.device_id)
            return self._count(IngestOutcome.STORE_FAILURE)
        return self._count(IngestOutcome.STORED)

    def _count(self, outcome: IngestOutcome) -> IngestOutcome:
        with self._lock:
            self._counts[outcome] += 1
        return outcome

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {outcome.value: count for outcome, count in self._counts.items()}


telemetry_ingestor = TelemetryIngestor()

__all__ = [
    "IngestOutcome",
    "TelemetryEvent",
    "TelemetryIngestor",
    "decode_message",
    "telemetry_ingestor",
]
