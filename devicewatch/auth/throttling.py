"""Throttling for unauthenticated credential endpoints."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Deque, Dict, Optional

from ..config import settings
from ..errors import RateLimited


_TimeProvider = Callable[[], datetime]

LOGIN = "login"
PASSWORD_RESET = "password_reset"


def _default_time_provider() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RateLimitState:
    blocked: bool
    retry_after: int = 0


class AttemptLimiter:
    """Count attempts per identifier inside a sliding window.

    Reaching ``max_attempts`` blocks the identifier for ``block_seconds``.
    """

    def __init__(
        self,
        *,
        max_attempts: int,
        window_seconds: int,
        block_seconds: int,
        time_provider: Optional[_TimeProvider] = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be greater than zero")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be greater than zero")
        if block_seconds <= 0:
            raise ValueError("block_seconds must be greater than zero")

        self._max_attempts = max_attempts
        self._window = timedelta(seconds=window_seconds)
        self._block = timedelta(seconds=block_seconds)
        self._time_provider: _TimeProvider = time_provider or _default_time_provider
        self._attempts: Dict[str, Deque[datetime]] = {}
        self._blocked_until: Dict[str, datetime] = {}
        self._lock = Lock()

    def _prune(self, identifier: str, now: datetime) -> None:
        attempts = self._attempts.get(identifier)
        if not attempts:
            return
        threshold = now - self._window
        while attempts and attempts[0] < threshold:
            attempts.popleft()
        if not attempts:
            self._attempts.pop(identifier, None)

    def _state(self, identifier: str, now: datetime) -> RateLimitState:
        blocked_until = self._blocked_until.get(identifier)
        if blocked_until is not None:
            if blocked_until > now:
                retry_after = int((blocked_until - now).total_seconds())
                return RateLimitState(blocked=True, retry_after=max(retry_after, 1))
            self._blocked_until.pop(identifier, None)
        self._prune(identifier, now)
        return RateLimitState(blocked=False)

    def status(self, identifier: str) -> RateLimitState:
        with self._lock:
            return self._state(identifier, self._time_provider())

    def ensure_allowed(self, identifier: str) -> None:
        """Raise :class:`RateLimited` while ``identifier`` is blocked."""

        state = self.status(identifier)
        if state.blocked:
            raise RateLimited(state.retry_after)

    def register_attempt(self, identifier: str) -> RateLimitState:
        """Count one attempt and return the resulting state."""

        with self._lock:
            now = self._time_provider()
            state = self._state(identifier, now)
            if state.blocked:
                return state

            attempts = self._attempts.setdefault(identifier, deque())
            attempts.append(now)
            if len(attempts) >= self._max_attempts:
                self._blocked_until[identifier] = now + self._block
                attempts.clear()
                self._attempts.pop(identifier, None)
                retry_after = int(self._block.total_seconds())
                return RateLimitState(blocked=True, retry_after=max(retry_after, 1))
            return RateLimitState(blocked=False)

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._attempts.pop(identifier, None)
            self._blocked_until.pop(identifier, None)


_limiters: Dict[str, AttemptLimiter] = {}
_limiters_lock = Lock()


def _from_settings(name: str) -> AttemptLimiter:
    if name == LOGIN:
        return AttemptLimiter(
            max_attempts=settings.LOGIN_ATTEMPT_LIMIT,
            window_seconds=settings.LOGIN_ATTEMPT_WINDOW,
            block_seconds=settings.LOGIN_BACKOFF_SECONDS,
        )
    if name == PASSWORD_RESET:
        return AttemptLimiter(
            max_attempts=settings.RESET_ATTEMPT_LIMIT,
            window_seconds=settings.RESET_ATTEMPT_WINDOW,
            block_seconds=settings.RESET_BACKOFF_SECONDS,
        )
    raise KeyError(name)


def get_limiter(name: str) -> AttemptLimiter:
    with _limiters_lock:
        limiter = _limiters.get(name)
        if limiter is None:
            limiter = _limiters[name] = _from_settings(name)
        return limiter


def reset_limiters(**overrides: AttemptLimiter) -> None:
    """Rebuild every limiter from settings, primarily for startup and tests."""

    with _limiters_lock:
        _limiters.clear()
        for name in (LOGIN, PASSWORD_RESET):
            _limiters[name] = overrides.get(name) or _from_settings(name)


__all__ = [
    "LOGIN",
    "PASSWORD_RESET",
    "AttemptLimiter",
    "RateLimitState",
    "get_limiter",
    "reset_limiters",
]
