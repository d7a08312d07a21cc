"""Credential hashing and the password policy for new credentials."""
from passlib.context import CryptContext

from ..config import settings


_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)


def check_new_password(password: object) -> str:
    """Return ``password`` if it satisfies the policy, else raise ``ValueError``.

    Only a minimum length is enforced (``MIN_PASSWORD_LENGTH``).
    """

    if not isinstance(password, str):
        raise ValueError("must be a string")
    if len(password) < settings.MIN_PASSWORD_LENGTH:
        raise ValueError(f"must be at least {settings.MIN_PASSWORD_LENGTH} characters")
    return password


def hash_password(password: str) -> str:
    if not isinstance(password, str):
        raise TypeError("password must be a string")
    return _context.hash(password)


def verify_password(password: str, hashed_password: str) -> bool:
    """Compare ``password`` to a stored hash; malformed hashes never match."""

    if not password or not hashed_password:
        return False
    try:
        return _context.verify(password, hashed_password)
    except ValueError:
        return False


def needs_rehash(hashed_password: str) -> bool:
    # Empty hashes come from identities created before a password was set.
    if not hashed_password:
        return True
    return _context.needs_update(hashed_password)


__all__ = ["check_new_password", "hash_password", "needs_rehash", "verify_password"]
