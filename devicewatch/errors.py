"""Exception hierarchy shared by the request path and the ingestion path."""
from __future__ import annotations

from typing import Optional


class DeviceWatchError(Exception):
    """Base exception for all devicewatch errors.

    ``status_code`` and ``message`` describe how the error is surfaced at the
    HTTP boundary. ``message`` is deliberately generic; details belong in the
    logs.
    """

    status_code = 500
    message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ValidationFailure(DeviceWatchError, ValueError):
    """Malformed or missing input the caller can correct."""

    status_code = 400
    message = "Validation failed"


class AuthenticationFailure(DeviceWatchError):
    """Credentials or bearer token were rejected."""

    status_code = 401
    message = "Authentication failed"


class InvalidCredentials(AuthenticationFailure):
    """Login failed; never says whether the account exists."""

    message = "Invalid credentials"


class WrongCredential(AuthenticationFailure):
    """Registration against an existing profile used the wrong password."""

    message = "Wrong Password, Try Again"


class TokenMissing(AuthenticationFailure):
    message = "Access token required"


class TokenInvalid(AuthenticationFailure):
    status_code = 403
    message = "Invalid or expired token"


class AuthorizationFailure(DeviceWatchError, PermissionError):
    """Valid identity, but the resource lies outside its scope."""

    status_code = 403
    message = "Access denied"


class NotFound(DeviceWatchError, LookupError):
    status_code = 404
    message = "Not found"


class Conflict(DeviceWatchError):
    status_code = 400
    message = "Conflict"


class DuplicateDevice(Conflict):
    """The device id is already bound to another identity."""

    message = "Device ID already exists"

    def __init__(self, device_id: str, message: Optional[str] = None) -> None:
        self.device_id = device_id
        super().__init__(message)


class ConsumerConflict(Conflict):
    """The consumer number is taken by a different profile."""

    message = "Consumer number already registered with a different profile"


class RateLimited(DeviceWatchError):
    status_code = 429
    message = "Too many attempts, please try again later."

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class TransientStoreFailure(DeviceWatchError):
    """The backing store could not complete the operation."""

    status_code = 500
    message = "Internal Server Error"


class MalformedTelemetry(DeviceWatchError, ValueError):
    """Inbound telemetry could not be decoded into an event."""

    message = "Malformed telemetry"


class MissingDeviceId(MalformedTelemetry):
    message = "Device ID is required in telemetry message"


class UnregisteredDevice(DeviceWatchError, LookupError):
    """Telemetry from a device no identity owns."""

    message = "Unregistered device"

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"Unregistered device: {device_id}")


__all__ = [
    "AuthenticationFailure",
    "AuthorizationFailure",
    "Conflict",
    "ConsumerConflict",
    "DeviceWatchError",
    "DuplicateDevice",
    "InvalidCredentials",
    "MalformedTelemetry",
    "MissingDeviceId",
    "NotFound",
    "RateLimited",
    "TokenInvalid",
    "TokenMissing",
    "TransientStoreFailure",
    "UnregisteredDevice",
    "ValidationFailure",
    "WrongCredential",
]
