import ssl
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from devicewatch import mqtt_tls
from devicewatch.config import settings


class _RecordingClient:
    def __init__(self, fail_connect=False):
        self.calls = []
        self._fail_connect = fail_connect

    def tls_set_context(self, context):
        self.calls.append(("tls", context))

    def username_pw_set(self, username, password):
        self.calls.append(("auth", username, password))

    def reconnect_delay_set(self, min_delay, max_delay):
        self.calls.append(("backoff", min_delay, max_delay))

    def connect_async(self, host, port, keepalive):
        self.calls.append(("connect_async", host, port, keepalive))

    def connect(self, host, port, keepalive):
        if self._fail_connect:
            raise OSError("connection refused")
        self.calls.append(("connect", host, port, keepalive))


@pytest.fixture()
def plain_broker(monkeypatch):
    monkeypatch.setattr(settings, "BROKER_TLS_ENABLED", False)
    monkeypatch.setattr(settings, "BROKER_HOST", "broker.local")
    monkeypatch.setattr(settings, "BROKER_CONNECT_HOST", "")
    monkeypatch.setattr(settings, "BROKER_PORT", 1883)
    monkeypatch.setattr(settings, "BROKER_USERNAME", "")
    monkeypatch.setattr(settings, "BROKER_PASSWORD", "")


def test_plain_connection_skips_tls_and_credentials(plain_broker):
    client = _RecordingClient()

    assert mqtt_tls.connect_mqtt_client(client, start_async=True) is True

    kinds = [call[0] for call in client.calls]
    assert "tls" not in kinds
    assert "auth" not in kinds
    assert ("connect_async", "broker.local", 1883, 30) in client.calls


def test_credentials_and_connect_host_override(plain_broker, monkeypatch):
    monkeypatch.setattr(settings, "BROKER_USERNAME", "ingest")
    monkeypatch.setattr(settings, "BROKER_PASSWORD", "pw")
    monkeypatch.setattr(settings, "BROKER_CONNECT_HOST", "10.0.0.5")
    client = _RecordingClient()

    mqtt_tls.connect_mqtt_client(client)

    assert ("auth", "ingest", "pw") in client.calls
    assert ("connect", "10.0.0.5", 1883, 30) in client.calls


def test_tls_context_is_applied_when_enabled(plain_broker, monkeypatch):
    monkeypatch.setattr(settings, "BROKER_TLS_ENABLED", True)
    monkeypatch.setattr(settings, "BROKER_TLS_CA_FILE", "")
    monkeypatch.setattr(settings, "BROKER_TLS_CERTFILE", "")
    monkeypatch.setattr(settings, "BROKER_TLS_VERSION", "tls1.2")
    monkeypatch.setattr(settings, "BROKER_TLS_INSECURE", True)
    client = _RecordingClient()

    mqtt_tls.configure_client_connection(client)

    context = next(call[1] for call in client.calls if call[0] == "tls")
    assert context.minimum_version == ssl.TLSVersion.TLSv1_2
    assert context.verify_mode == ssl.CERT_NONE


def test_failed_connect_is_reported_without_raising(plain_broker):
    client = _RecordingClient(fail_connect=True)

    assert mqtt_tls.connect_mqtt_client(client, raise_on_failure=False) is False
    with pytest.raises(OSError):
        mqtt_tls.connect_mqtt_client(client)


def test_unknown_tls_version_is_rejected():
    with pytest.raises(ValueError):
        mqtt_tls._parse_tls_version("ssl3")
