"""Authentication helpers and models."""

from .passwords import hash_password, needs_rehash, verify_password
from .security import (
    CredentialData,
    create_access_token,
    token_ttl,
    verify_access_token,
)
from .service import init_auth_storage

__all__ = [
    "CredentialData",
    "create_access_token",
    "hash_password",
    "init_auth_storage",
    "needs_rehash",
    "token_ttl",
    "verify_access_token",
    "verify_password",
]
