"""Access gateway: registration, login and password reset."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlmodel import Session

from .. import database, identities
from ..config import settings
from ..errors import (
    ConsumerConflict,
    DuplicateDevice,
    InvalidCredentials,
    RateLimited,
    TokenInvalid,
    WrongCredential,
)
from ..locks import KeyedLock
from .models import AuditLog, Identity, IdentityRole
from .passwords import hash_password, needs_rehash, verify_password
from .security import CredentialData, create_access_token
from .throttling import LOGIN, PASSWORD_RESET, get_limiter

logger = logging.getLogger(__name__)

_consumer_locks = KeyedLock()
_dummy_hash: Optional[str] = None


class RegistrationOutcome(str, Enum):
    CREATED = "created"
    DEVICE_ADDED = "device_added"
    ALREADY_BOUND = "already_bound"


_REGISTRATION_MESSAGES = {
    RegistrationOutcome.CREATED: "User created successfully",
    RegistrationOutcome.DEVICE_ADDED: "User already exists, device added successfully",
    RegistrationOutcome.ALREADY_BOUND: "Device already linked to this account",
}

RESET_MESSAGE = "If the user exists, the password has been reset"


@dataclass
class RegistrationResult:
    outcome: RegistrationOutcome
    identity: Identity
    device_id: str

    @property
    def status_code(self) -> int:
        return 201 if self.outcome == RegistrationOutcome.CREATED else 200

    @property
    def message(self) -> str:
        return _REGISTRATION_MESSAGES[self.outcome]


@dataclass
class LoginResult:
    token: str
    expires_at: datetime
    identity: Identity
    owned_devices: List[str]


def init_auth_storage() -> None:
    """Ensure tables exist and seed the optional initial admin."""

    database.init_storage()
    with database.SessionLocal() as session:
        _seed_initial_admin(session)


def _seed_initial_admin(session: Session) -> None:
    consumer_no = settings.INITIAL_ADMIN_CONSUMER_NO.strip()
    password = settings.INITIAL_ADMIN_PASSWORD
    if not consumer_no or not password:
        return
    if identities.find_by_consumer_no(session, consumer_no) is not None:
        return

    identity = identities.create(
        session,
        consumer_no=consumer_no,
        consumer_name="Administrator",
        consumer_address="-",
        hashed_password=hash_password(password),
        device_id=None,
        role=IdentityRole.ADMIN,
    )
    record_audit_event(
        session,
        actor=None,
        action="admin_bootstrap",
        summary=f"Seeded initial admin {identity.consumer_no}",
        data={"identity_id": identity.id},
        commit=True,
    )
    logger.info("Seeded initial admin identity %s", consumer_no)


def register(
    session: Session,
    *,
    device_id: str,
    password: str,
    consumer_name: str,
    consumer_address: str,
    consumer_no: str,
) -> RegistrationResult:
    """Create an identity for a new consumer or bind a device to an existing one.

    Raises :class:`DuplicateDevice` when ``device_id`` belongs to a different
    identity, :class:`WrongCredential` when the matching profile's password
    does not verify and :class:`ConsumerConflict` when ``consumer_no`` exists
    under a different name or address.
    """

    logger.info("Registration attempt for consumer: %s", consumer_no)
    with _consumer_locks.hold(consumer_no):
        owner = identities.find_by_device_id(session, device_id)
        existing = identities.find_by_profile(
            session,
            consumer_name=consumer_name,
            consumer_address=consumer_address,
            consumer_no=consumer_no,
        )

        if owner is not None and (existing is None or owner.id != existing.id):
            logger.warning("Device ID already exists: %s", device_id)
            raise DuplicateDevice(device_id)

        if existing is not None:
            if not verify_password(password, existing.hashed_password):
                logger.warning("Wrong password attempt for consumer: %s", consumer_no)
                raise WrongCredential()
            _maybe_upgrade_hash(session, existing, password)
            if owner is not None:
                return RegistrationResult(
                    RegistrationOutcome.ALREADY_BOUND, existing, device_id
                )
            added = identities.add_device(session, existing, device_id)
            outcome = (
                RegistrationOutcome.DEVICE_ADDED if added else RegistrationOutcome.ALREADY_BOUND
            )
            if added:
                record_audit_event(
                    session,
                    actor=existing,
                    action="device_bound",
                    summary=f"Device {device_id} added to {consumer_no}",
                    data={"device_id": device_id},
                    commit=True,
                )
                logger.info("Device added to existing user: %s", consumer_no)
            return RegistrationResult(outcome, existing, device_id)

        if identities.find_by_consumer_no(session, consumer_no) is not None:
            logger.warning("Consumer number registered under another profile: %s", consumer_no)
            raise ConsumerConflict()

        identity = identities.create(
            session,
            consumer_no=consumer_no,
            consumer_name=consumer_name,
            consumer_address=consumer_address,
            hashed_password=hash_password(password),
            device_id=device_id,
        )
        record_audit_event(
            session,
            actor=identity,
            action="identity_created",
            summary=f"Registered consumer {consumer_no}",
            data={"device_id": device_id},
            commit=True,
        )
        logger.info("New user created successfully: %s", consumer_no)
        return RegistrationResult(RegistrationOutcome.CREATED, identity, device_id)


def login(
    session: Session,
    *,
    consumer_no: str,
    password: str,
    client_host: str = "unknown",
) -> LoginResult:
    """Verify credentials and issue a bearer token.

    Unknown consumers and wrong passwords raise the same
    :class:`InvalidCredentials` error.
    """

    limiter = get_limiter(LOGIN)
    limiter.ensure_allowed(client_host)
    logger.info("Login attempt for consumer: %s", consumer_no)

    identity = identities.find_by_consumer_no(session, consumer_no)
    if identity is None:
        # Burn a hash comparison so response time does not reveal the miss.
        verify_password(password, _get_dummy_hash())
        reason = "user not found"
    elif not verify_password(password, identity.hashed_password):
        reason = "wrong password"
    else:
        reason = None

    if reason is not None:
        state = limiter.register_attempt(client_host)
        logger.warning("Login failed - %s: %s", reason, consumer_no)
        record_audit_event(
            session,
            actor=None,
            action="login_failed",
            summary=f"Failed login for {consumer_no}",
            data={"consumer_no": consumer_no, "ip": client_host, "rate_limited": state.blocked},
            commit=True,
        )
        if state.blocked:
            raise RateLimited(state.retry_after)
        raise InvalidCredentials()

    limiter.reset(client_host)
    _maybe_upgrade_hash(session, identity, password)
    devices = identities.owned_devices(session, identity)
    token, expires_at = create_access_token(identity, devices)
    record_audit_event(
        session,
        actor=identity,
        action="login_success",
        summary=f"Consumer {consumer_no} signed in",
        data={"ip": client_host},
        commit=True,
    )
    logger.info("Login successful for consumer: %s", consumer_no)
    return LoginResult(token=token, expires_at=expires_at, identity=identity, owned_devices=devices)


def reset_password(
    session: Session,
    *,
    consumer_no: str,
    new_password: str,
    client_host: str = "unknown",
) -> str:
    """Overwrite the credential for ``consumer_no`` if it exists.

    The requester is not re-authenticated. The returned message is the same
    whether or not the account exists.
    """

    state = get_limiter(PASSWORD_RESET).register_attempt(client_host)
    if state.blocked:
        raise RateLimited(state.retry_after)

    logger.info("Password reset attempt for consumer: %s", consumer_no)
    with _consumer_locks.hold(consumer_no):
        identity = identities.find_by_consumer_no(session, consumer_no)
        if identity is None:
            logger.warning("Password reset - user not found: %s", consumer_no)
            return RESET_MESSAGE
        identities.update_credential(session, identity, hash_password(new_password))
        record_audit_event(
            session,
            actor=identity,
            action="password_reset",
            summary=f"Password reset for {consumer_no}",
            data={"ip": client_host},
            commit=True,
        )
    logger.info("Password reset successful for consumer: %s", consumer_no)
    return RESET_MESSAGE


def refresh_credential(session: Session, credential: CredentialData) -> CredentialData:
    """Replace the token's device snapshot with the identity's current devices."""

    identity = identities.get_identity(session, credential.identity_id)
    if identity is None:
        raise TokenInvalid()
    return replace(
        credential,
        owned_devices=tuple(identities.owned_devices(session, identity)),
        role=IdentityRole(identity.role),
    )


def record_audit_event(
    session: Session,
    *,
    actor: Optional[Identity],
    action: str,
    summary: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    commit: bool = False,
) -> AuditLog:
    """Persist an :class:`AuditLog` entry."""

    entry = AuditLog(
        actor_id=actor.id if actor and actor.id is not None else None,
        action=action,
        summary=summary,
        data=data or {},
    )
    session.add(entry)
    session.flush()
    if commit:
        session.commit()
        session.refresh(entry)
    return entry


def _maybe_upgrade_hash(session: Session, identity: Identity, password: str) -> None:
    if needs_rehash(identity.hashed_password):
        identities.update_credential(session, identity, hash_password(password))


def _get_dummy_hash() -> str:
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password("devicewatch-placeholder")
    return _dummy_hash


__all__ = [
    "RESET_MESSAGE",
    "LoginResult",
    "RegistrationOutcome",
    "RegistrationResult",
    "init_auth_storage",
    "login",
    "record_audit_event",
    "refresh_credential",
    "register",
    "reset_password",
]
