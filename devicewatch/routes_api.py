import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlmodel import Session

from . import device_state, identities
from .auth import service as auth_service
from .auth.dependencies import get_current_credential
from .auth.passwords import check_new_password
from .auth.security import CredentialData
from .config import settings
from .database import get_session
from .errors import AuthorizationFailure, NotFound


router = APIRouter()
logger = logging.getLogger(__name__)


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _required_text(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("must be a string")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("must be a non-empty string")
    return cleaned


class RegisterPayload(BaseModel):
    """Request body for creating an identity or binding another device."""

    device_id: str = Field(..., alias="deviceId", max_length=128)
    password: str
    consumer_name: str = Field(..., alias="consumerName", max_length=120)
    consumer_address: str = Field(..., alias="consumerAddress", max_length=255)
    consumer_no: str = Field(..., alias="consumerNo", max_length=64)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("device_id", "consumer_name", "consumer_address", "consumer_no", mode="before")
    @classmethod
    def _require_value(cls, value: Any) -> str:
        return _required_text(value)

    @field_validator("password", mode="before")
    @classmethod
    def _check_password(cls, value: Any) -> str:
        return check_new_password(value)


class LoginPayload(BaseModel):
    consumer_no: str = Field(..., alias="consumerNo")
    password: str

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("consumer_no", mode="before")
    @classmethod
    def _require_consumer(cls, value: Any) -> str:
        return _required_text(value)

    @field_validator("password", mode="before")
    @classmethod
    def _require_password(cls, value: Any) -> str:
        if not isinstance(value, str) or not value:
            raise ValueError("Password is required")
        return value


class ResetPasswordPayload(BaseModel):
    consumer_no: str = Field(..., alias="consumerNo")
    new_password: str = Field(..., alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("consumer_no", mode="before")
    @classmethod
    def _require_consumer(cls, value: Any) -> str:
        return _required_text(value)

    @field_validator("new_password", mode="before")
    @classmethod
    def _check_password(cls, value: Any) -> str:
        return check_new_password(value)


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterPayload, session: Session = Depends(get_session)):
    result = auth_service.register(
        session,
        device_id=payload.device_id,
        password=payload.password,
        consumer_name=payload.consumer_name,
        consumer_address=payload.consumer_address,
        consumer_no=payload.consumer_no,
    )
    return JSONResponse(
        status_code=result.status_code,
        content={"message": result.message, "deviceId": result.device_id},
    )


@router.post("/login")
def login(
    payload: LoginPayload,
    request: Request,
    session: Session = Depends(get_session),
):
    result = auth_service.login(
        session,
        consumer_no=payload.consumer_no,
        password=payload.password,
        client_host=_client_host(request),
    )
    identity = result.identity
    return {
        "message": "Login successful",
        "token": result.token,
        "user": {
            "id": identity.id,
            "deviceId": result.owned_devices,
            "consumerName": identity.consumer_name,
            "consumerAddress": identity.consumer_address,
            "consumerNo": identity.consumer_no,
            "role": identity.role.value,
        },
        "expiresIn": settings.TOKEN_TTL_SECONDS,
        "expiresAt": result.expires_at.isoformat(),
    }


@router.post("/resetpassword")
def reset_password(
    payload: ResetPasswordPayload,
    request: Request,
    session: Session = Depends(get_session),
):
    message = auth_service.reset_password(
        session,
        consumer_no=payload.consumer_no,
        new_password=payload.new_password,
        client_host=_client_host(request),
    )
    return {"message": message}


@router.get("/users")
def list_users(
    credential: CredentialData = Depends(get_current_credential),
    session: Session = Depends(get_session),
):
    if settings.USERS_REQUIRE_ADMIN and not credential.is_admin:
        logger.warning(
            "Users list denied to non-admin identity %s", credential.identity_id
        )
        raise AuthorizationFailure("Admin role required")
    logger.info("Users list requested by identity: %s", credential.identity_id)
    users = [view.as_public_dict() for view in identities.list_all(session)]
    return {"users": users, "count": len(users), "timestamp": _timestamp_ms()}


@router.get("/devices")
def list_my_devices(
    credential: CredentialData = Depends(get_current_credential),
    session: Session = Depends(get_session),
):
    records = device_state.find_by_ids(session, credential.owned_devices)
    logger.info(
        "Retrieved %d devices for identity %s", len(records), credential.identity_id
    )
    devices = [record.as_public_dict() for record in records]
    return {"devices": devices, "count": len(devices), "timestamp": _timestamp_ms()}


@router.get("/devices/{device_id}")
def get_device(
    device_id: str,
    credential: CredentialData = Depends(get_current_credential),
    session: Session = Depends(get_session),
):
    if not credential.owns(device_id):
        logger.warning(
            "Unauthorized device access attempt by identity %s for device %s",
            credential.identity_id,
            device_id,
        )
        raise AuthorizationFailure("Access denied to this device")

    record = device_state.find_by_id(session, device_id)
    if record is None:
        logger.info("Device not found: %s", device_id)
        raise NotFound("Device not found")

    logger.info("Device data retrieved for: %s", device_id)
    return {"device": record.as_public_dict(), "timestamp": _timestamp_ms()}
