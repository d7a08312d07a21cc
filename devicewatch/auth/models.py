"""SQLModel tables for consumer identities and their owned devices."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
)
from sqlalchemy.sql import func
from sqlmodel import Field, SQLModel


class IdentityRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _timestamp_column(*, onupdate: bool = False) -> Column:
    return Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now() if onupdate else None,
    )


class Identity(SQLModel, table=True):
    """A consumer account. ``consumer_no`` is the login key."""

    __tablename__ = "identities"

    id: Optional[int] = Field(default=None, primary_key=True)
    consumer_no: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    consumer_name: str = Field(sa_column=Column(String(120), nullable=False))
    consumer_address: str = Field(sa_column=Column(String(255), nullable=False))
    hashed_password: str = Field(sa_column=Column(String(255), nullable=False))
    role: IdentityRole = Field(
        default=IdentityRole.OWNER,
        sa_column=Column(
            SAEnum(IdentityRole, name="identity_role"),
            nullable=False,
            default=IdentityRole.OWNER,
        ),
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamp_column(onupdate=True)
    )


class IdentityDevice(SQLModel, table=True):
    """Binding of one device id to its owning identity.

    ``device_id`` is unique across the table, so a device can belong to at
    most one identity.
    """

    __tablename__ = "identity_devices"

    id: Optional[int] = Field(default=None, primary_key=True)
    identity_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("identities.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    device_id: str = Field(
        sa_column=Column(String(128), unique=True, index=True, nullable=False)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    actor_id: Optional[int] = Field(default=None, foreign_key="identities.id")
    action: str = Field(sa_column=Column(String(120), nullable=False))
    summary: Optional[str] = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    data: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, default=dict),
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())


__all__ = [
    "AuditLog",
    "Identity",
    "IdentityDevice",
    "IdentityRole",
]
