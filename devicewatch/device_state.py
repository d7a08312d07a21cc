"""Device state store: the latest merged telemetry snapshot per device.

Every accepted telemetry event is folded into a single ``payload`` mapping.
Fields present in the event overwrite fields with the same name; all other
fields are kept. No history is retained.
"""
from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .auth.models import _utcnow
from .errors import ValidationFailure
from .locks import KeyedLock
from .models import DeviceRecord

logger = logging.getLogger(__name__)

RECEIVED_AT_FIELD = "receivedAt"
DEVICE_ID_FIELD = "deviceId"

# Shared by every thread in the process (HTTP workers and the MQTT loop).
_device_locks = KeyedLock()


def find_by_id(session: Session, device_id: str) -> Optional[DeviceRecord]:
    if not device_id:
        return None
    return session.exec(
        select(DeviceRecord)
        .where(DeviceRecord.device_id == device_id)
        .execution_options(populate_existing=True)
    ).first()


def find_by_ids(session: Session, device_ids: Iterable[str]) -> List[DeviceRecord]:
    """Return the records for ``device_ids``, most recently updated first."""

    wanted = sorted({device_id for device_id in device_ids if device_id})
    if not wanted:
        return []
    return list(
        session.exec(
            select(DeviceRecord)
            .where(DeviceRecord.device_id.in_(wanted))
            .order_by(DeviceRecord.last_updated.desc(), DeviceRecord.device_id)
            .execution_options(populate_existing=True)
        ).all()
    )


def merge_upsert(
    session: Session,
    device_id: str,
    fields: Mapping[str, Any],
) -> DeviceRecord:
    """Create or shallow-merge the record for ``device_id``.

    Concurrent calls for the same device are applied one after another; the
    resulting payload is the union of all field sets with the last applied
    merge winning on overlapping keys.
    """

    if not isinstance(device_id, str) or not device_id:
        raise ValidationFailure("device id must be a non-empty string")

    patch = {
        key: copy.deepcopy(value)
        for key, value in fields.items()
        if key != DEVICE_ID_FIELD
    }

    with _device_locks.hold(device_id):
        try:
            return _merge_once(session, device_id, patch)
        except IntegrityError:
            # Another process inserted the row between our read and write.
            session.rollback()
            logger.debug("Create race for device %s; retrying as update", device_id)
            return _merge_once(session, device_id, patch)


def _merge_once(
    session: Session, device_id: str, patch: Mapping[str, Any]
) -> DeviceRecord:
    now = _utcnow()
    try:
        record = session.exec(
            select(DeviceRecord)
            .where(DeviceRecord.device_id == device_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

        payload = dict(record.payload or {}) if record is not None else {}
        payload.update(patch)
        payload[RECEIVED_AT_FIELD] = now.isoformat()

        if record is None:
            record = DeviceRecord(device_id=device_id, payload=payload, last_updated=now)
            created = True
        else:
            # Assign a fresh dict so the JSON column is flagged dirty.
            record.payload = payload
            record.last_updated = _later(record.last_updated, now)
            created = False
        session.add(record)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise

    session.refresh(record)
    if created:
        logger.info("Device %s created", device_id)
    else:
        logger.info("Device %s data updated", device_id)
    return record


def _later(previous: Optional[datetime], now: datetime) -> datetime:
    """Keep ``last_updated`` monotonic even if the wall clock steps back."""

    if previous is None:
        return now
    if previous.tzinfo is None:
        previous = previous.replace(tzinfo=now.tzinfo)
    return now if now >= previous else previous


__all__ = [
    "DEVICE_ID_FIELD",
    "RECEIVED_AT_FIELD",
    "find_by_id",
    "find_by_ids",
    "merge_upsert",
]
