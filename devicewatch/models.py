"""SQLModel table holding the merged telemetry snapshot per device."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, JSON, String
from sqlmodel import Field, SQLModel

from .auth.models import _utcnow


class DeviceRecord(SQLModel, table=True):
    __tablename__ = "device_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(
        sa_column=Column(String(128), unique=True, index=True, nullable=False)
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, default=dict),
    )
    last_updated: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )

    def as_public_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "data": dict(self.payload or {}),
            "lastUpdated": _isoformat(self.last_updated),
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


__all__ = ["DeviceRecord"]
