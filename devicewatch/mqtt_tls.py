"""Helpers for configuring MQTT clients with TLS and broker credentials."""
from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass
from typing import Optional

import paho.mqtt.client as mqtt
from .config import settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _MQTTConnection:
    """Connection parameters derived from the active configuration."""

    host: str
    port: int


_TLS_VERSION_ALIASES = {
    "": None,
    "default": None,
    "auto": None,
    "tls": None,
    "tls1.2": ssl.TLSVersion.TLSv1_2,
    "tls1.3": ssl.TLSVersion.TLSv1_3,
    "1.2": ssl.TLSVersion.TLSv1_2,
    "1.3": ssl.TLSVersion.TLSv1_3,
    "tlsv1.2": ssl.TLSVersion.TLSv1_2,
    "tlsv1.3": ssl.TLSVersion.TLSv1_3,
}


def _parse_tls_version(version: str) -> Optional[ssl.TLSVersion]:
    """Map configured TLS version strings to :class:`ssl.TLSVersion` values."""

    key = version.strip().lower()
    if key not in _TLS_VERSION_ALIASES:
        raise ValueError(
            f"Unsupported TLS version '{version}'. Expected one of: "
            + ", ".join(sorted(k for k in _TLS_VERSION_ALIASES if k)),
        )
    return _TLS_VERSION_ALIASES[key]


def build_tls_context() -> Optional[ssl.SSLContext]:
    """Return the client TLS context, or ``None`` when TLS is disabled."""

    if not settings.BROKER_TLS_ENABLED:
        return None

    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    if settings.BROKER_TLS_CA_FILE:
        context.load_verify_locations(cafile=settings.BROKER_TLS_CA_FILE)

    certfile = settings.BROKER_TLS_CERTFILE or None
    keyfile = settings.BROKER_TLS_KEYFILE or None
    if certfile:
        context.load_cert_chain(certfile=certfile, keyfile=keyfile)

    tls_version = _parse_tls_version(settings.BROKER_TLS_VERSION)
    if tls_version is not None:
        context.minimum_version = tls_version
        context.maximum_version = tls_version

    if settings.BROKER_TLS_INSECURE:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def configure_client_connection(client: mqtt.Client) -> _MQTTConnection:
    """Apply TLS and credentials to ``client`` and return the endpoint."""

    context = build_tls_context()
    if context is not None:
        try:
            client.tls_set_context(context)
        except ValueError as exc:
            if "already been configured" not in str(exc).lower():
                raise
            logger.debug("MQTT client TLS context already configured; reusing existing context")

    if settings.BROKER_USERNAME or settings.BROKER_PASSWORD:
        client.username_pw_set(settings.BROKER_USERNAME, settings.BROKER_PASSWORD or None)

    # Back off between reconnects without hammering a restarting broker.
    client.reconnect_delay_set(min_delay=1, max_delay=30)

    host = settings.BROKER_CONNECT_HOST or settings.BROKER_HOST
    return _MQTTConnection(host=host, port=settings.BROKER_PORT)


def connect_mqtt_client(
    client: mqtt.Client,
    *,
    keepalive: int = 30,
    start_async: bool = False,
    raise_on_failure: bool = True,
) -> bool:
    """Configure ``client`` and initiate a broker connection.

    When ``start_async`` is ``True`` the client uses ``connect_async`` so the
    network loop keeps retrying in the background while the broker is down.
    """

    params = configure_client_connection(client)

    try:
        if start_async:
            client.connect_async(params.host, params.port, keepalive=keepalive)
        else:
            client.connect(params.host, params.port, keepalive=keepalive)
        return True
    except Exception as exc:
        logger.error(
            "MQTT connection to %s:%d failed: %s",
            params.host,
            params.port,
            exc,
        )
        if raise_on_failure:
            raise
        return False


__all__ = ["build_tls_context", "configure_client_connection", "connect_mqtt_client"]
