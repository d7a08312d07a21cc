"""Signed, time-bounded bearer credentials."""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Tuple

from ..config import settings
from .models import Identity, IdentityRole


def token_ttl() -> timedelta:
    return timedelta(seconds=settings.TOKEN_TTL_SECONDS)


@dataclass(frozen=True)
class CredentialData:
    """Information extracted from a verified bearer credential.

    ``owned_devices`` is the snapshot taken at issuance time.
    """

    identity_id: int
    consumer_no: str
    owned_devices: Tuple[str, ...]
    role: IdentityRole
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at

    @property
    def is_admin(self) -> bool:
        return self.role == IdentityRole.ADMIN

    def owns(self, device_id: str) -> bool:
        return device_id in self.owned_devices


def create_access_token(
    identity: Identity,
    owned_devices: Iterable[str],
    *,
    expires_delta: Optional[timedelta] = None,
) -> Tuple[str, datetime]:
    """Return a signed token for ``identity`` and its expiry time."""

    if identity.id is None:
        raise ValueError("identity must be persisted before issuing a token")
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + (expires_delta or token_ttl())
    payload = {
        "sub": int(identity.id),
        "cno": identity.consumer_no,
        "dev": list(dict.fromkeys(owned_devices)),
        "role": IdentityRole(identity.role).value,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "iss": settings.TOKEN_ISSUER,
        "aud": settings.TOKEN_AUDIENCE,
        "nonce": secrets.token_hex(8),
    }
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    signature = hmac.new(_secret_key(), payload_bytes, hashlib.sha256).digest()
    return f"{_b64encode(payload_bytes)}.{_b64encode(signature)}", expires_at


def verify_access_token(token: str) -> Optional[CredentialData]:
    """Validate ``token`` and return the decoded data when successful."""

    if not token or "." not in token:
        return None
    try:
        payload_b64, signature_b64 = token.split(".", 1)
        payload_bytes = _b64decode(payload_b64)
        signature = _b64decode(signature_b64)
    except (ValueError, binascii.Error):
        return None

    expected_signature = hmac.new(
        _secret_key(), payload_bytes, hashlib.sha256
    ).digest()
    if not hmac.compare_digest(signature, expected_signature):
        return None

    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None

    if payload.get("iss") != settings.TOKEN_ISSUER:
        return None
    if payload.get("aud") != settings.TOKEN_AUDIENCE:
        return None

    identity_id = _coerce_int(payload.get("sub"))
    expires_ts = _coerce_int(payload.get("exp"))
    consumer_no = payload.get("cno")
    devices = payload.get("dev")
    if identity_id is None or expires_ts is None or not isinstance(consumer_no, str):
        return None
    if not isinstance(devices, list) or not all(isinstance(d, str) for d in devices):
        return None
    try:
        role = IdentityRole(payload.get("role", IdentityRole.OWNER.value))
    except ValueError:
        return None

    expires_at = datetime.fromtimestamp(expires_ts, tz=timezone.utc)
    if expires_at <= datetime.now(timezone.utc):
        return None

    return CredentialData(
        identity_id=identity_id,
        consumer_no=consumer_no,
        owned_devices=tuple(devices),
        role=role,
        expires_at=expires_at,
    )


def _secret_key() -> bytes:
    secret = settings.TOKEN_SECRET
    if not secret:
        raise RuntimeError("TOKEN_SECRET must be configured")
    return secret.encode("utf-8")


_PLACEHOLDER_SECRETS = {"", "change-me", settings.DEV_TOKEN_SECRET}


def ensure_token_secret() -> None:
    """Refuse to run outside development with a missing or placeholder secret."""

    if settings.is_development:
        return
    if settings.TOKEN_SECRET.strip() in _PLACEHOLDER_SECRETS:
        raise RuntimeError(
            "TOKEN_SECRET must be set to a private value when ENVIRONMENT is not development"
        )

def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _coerce_int(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


__all__ = [
    "CredentialData",
    "create_access_token",
    "ensure_token_secret",
    "token_ttl",
    "verify_access_token",
]
