"""Identity store: consumer accounts and the device ids each one owns."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .auth.models import Identity, IdentityDevice, IdentityRole
from .errors import ConsumerConflict, DuplicateDevice

logger = logging.getLogger(__name__)


@dataclass
class IdentityView:
    """Projection of an :class:`Identity` without its credential hash."""

    id: int
    consumer_no: str
    consumer_name: str
    consumer_address: str
    role: IdentityRole
    owned_devices: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def as_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deviceId": list(self.owned_devices),
            "consumerName": self.consumer_name,
            "consumerAddress": self.consumer_address,
            "consumerNo": self.consumer_no,
            "role": self.role.value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def get_identity(session: Session, identity_id: int) -> Optional[Identity]:
    return session.get(Identity, identity_id)


def find_by_device_id(session: Session, device_id: str) -> Optional[Identity]:
    """Return the identity owning ``device_id``, if any."""

    if not device_id:
        return None
    return session.exec(
        select(Identity)
        .join(IdentityDevice, IdentityDevice.identity_id == Identity.id)
        .where(IdentityDevice.device_id == device_id)
    ).first()


def find_by_consumer_no(session: Session, consumer_no: str) -> Optional[Identity]:
    if not consumer_no:
        return None
    return session.exec(
        select(Identity).where(Identity.consumer_no == consumer_no)
    ).first()


def find_by_profile(
    session: Session,
    *,
    consumer_name: str,
    consumer_address: str,
    consumer_no: str,
) -> Optional[Identity]:
    """Return the identity whose name, address and number all match."""

    return session.exec(
        select(Identity).where(
            Identity.consumer_no == consumer_no,
            Identity.consumer_name == consumer_name,
            Identity.consumer_address == consumer_address,
        )
    ).first()


def owned_devices(session: Session, identity: Identity) -> List[str]:
    """Return the device ids bound to ``identity`` in binding order."""

    if identity.id is None:
        return []
    return list(
        session.exec(
            select(IdentityDevice.device_id)
            .where(IdentityDevice.identity_id == identity.id)
            .order_by(IdentityDevice.id)
        ).all()
    )


def create(
    session: Session,
    *,
    consumer_no: str,
    consumer_name: str,
    consumer_address: str,
    hashed_password: str,
    device_id: Optional[str],
    role: IdentityRole = IdentityRole.OWNER,
) -> Identity:
    """Persist a new identity owning ``device_id``.

    Raises :class:`DuplicateDevice` when another identity already owns the
    device and :class:`ConsumerConflict` when ``consumer_no`` is taken.
    """

    if device_id and find_by_device_id(session, device_id) is not None:
        raise DuplicateDevice(device_id)

    identity = Identity(
        consumer_no=consumer_no,
        consumer_name=consumer_name,
        consumer_address=consumer_address,
        hashed_password=hashed_password,
        role=role,
    )
    session.add(identity)
    try:
        session.flush()
        if device_id:
            session.add(IdentityDevice(identity_id=identity.id, device_id=device_id))
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        # A concurrent writer won the race; report which key collided.
        if find_by_consumer_no(session, consumer_no) is not None:
            raise ConsumerConflict() from exc
        if device_id:
            raise DuplicateDevice(device_id) from exc
        raise
    session.refresh(identity)
    logger.info("Created identity %s", consumer_no)
    return identity


def add_device(session: Session, identity: Identity, device_id: str) -> bool:
    """Bind ``device_id`` to ``identity``.

    Returns ``False`` when the device was already bound to this identity.
    Raises :class:`DuplicateDevice` when it belongs to someone else.
    """

    current = find_by_device_id(session, device_id)
    if current is not None:
        if current.id == identity.id:
            return False
        raise DuplicateDevice(device_id)

    session.add(IdentityDevice(identity_id=identity.id, device_id=device_id))
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        current = find_by_device_id(session, device_id)
        if current is not None and current.id == identity.id:
            return False
        raise DuplicateDevice(device_id) from exc
    logger.info("Bound device %s to identity %s", device_id, identity.consumer_no)
    return True


def update_credential(session: Session, identity: Identity, hashed_password: str) -> None:
    identity.hashed_password = hashed_password
    session.add(identity)
    session.commit()
    session.refresh(identity)


def list_all(session: Session) -> List[IdentityView]:
    """Return every identity, newest first, without credential hashes."""

    identities: Sequence[Identity] = session.exec(
        select(Identity).order_by(Identity.created_at.desc(), Identity.id.desc())
    ).all()
    bindings = session.exec(select(IdentityDevice).order_by(IdentityDevice.id)).all()
    devices_by_identity: Dict[int, List[str]] = {}
    for binding in bindings:
        devices_by_identity.setdefault(binding.identity_id, []).append(binding.device_id)

    return [
        IdentityView(
            id=identity.id,
            consumer_no=identity.consumer_no,
            consumer_name=identity.consumer_name,
            consumer_address=identity.consumer_address,
            role=identity.role,
            owned_devices=devices_by_identity.get(identity.id, []),
            created_at=identity.created_at,
        )
        for identity in identities
    ]


__all__ = [
    "IdentityView",
    "add_device",
    "create",
    "find_by_consumer_no",
    "find_by_device_id",
    "find_by_profile",
    "get_identity",
    "list_all",
    "owned_devices",
    "update_credential",
]
