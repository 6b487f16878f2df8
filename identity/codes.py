"""Short-lived verification codes scoped by purpose and recipient address."""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import CodeExpired, CodeMismatch, StorageFailure

logger = logging.getLogger("identity.codes")

DEFAULT_CODE_TTL = timedelta(minutes=5)
CODE_LENGTH = 6


class Purpose(str, Enum):
    """Flow a verification code belongs to."""

    REGISTER = "register"
    UPDATE_PASSWORD = "update-password"
    UPDATE_PROFILE = "update-profile"


class CodeStore(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def close(self) -> None: ...


@dataclass
class _CodeRecord:
    value: str
    expires_at: datetime


class MemoryCodeStore:
    """Process-local key/value store with per-entry expiry."""

    def __init__(self) -> None:
        self._entries: Dict[str, _CodeRecord] = {}
        self._lock = asyncio.Lock()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._now()
        record = _CodeRecord(value=value, expires_at=now + timedelta(seconds=ttl_seconds))
        async with self._lock:
            self._purge_expired(now)
            self._entries[key] = record

    async def get(self, key: str) -> Optional[str]:
        now = self._now()
        async with self._lock:
            record = self._entries.get(key)
            if record is None:
                return None
            if record.expires_at <= now:
                self._entries.pop(key, None)
                return None
            return record.value

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        await self.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _purge_expired(self, now: datetime) -> None:
        expired = [key for key, record in self._entries.items() if record.expires_at <= now]
        for key in expired:
            del self._entries[key]

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


class RedisCodeStore:
    """Code store backed by Redis key expiry."""

    def __init__(self, client: Redis, *, key_prefix: str = "identity:") -> None:
        self._redis = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = "identity:") -> "RedisCodeStore":
        return cls(Redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(f"{self._prefix}{key}", value, ex=ttl_seconds)
        except RedisError as exc:
            raise StorageFailure(f"Failed to store verification code: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._redis.get(f"{self._prefix}{key}")
        except RedisError as exc:
            raise StorageFailure(f"Failed to read verification code: {exc}") from exc
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    async def close(self) -> None:
        await self._redis.aclose()


def code_key(purpose: Purpose | str, address: str) -> str:
    """Key a code by purpose and address, ignoring surrounding whitespace."""

    return f"{Purpose(purpose).value}_{address.strip()}"


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


class VerificationCodeGate:
    """Issue and check one-time codes.

    Issuing overwrites any outstanding code for the same purpose and address.
    Checking never consumes a code; it stays valid until it expires or is
    replaced.
    """

    def __init__(self, store: CodeStore, *, ttl: timedelta = DEFAULT_CODE_TTL) -> None:
        if ttl.total_seconds() < 1:
            raise ValueError("Verification code TTL must be at least one second")
        self._store = store
        self._ttl = ttl

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def issue(self, purpose: Purpose | str, address: str) -> str:
        code = generate_code()
        await self._store.set(code_key(purpose, address), code, int(self._ttl.total_seconds()))
        logger.debug("Issued %s verification code for %s", Purpose(purpose).value, address)
        return code

    async def verify(self, purpose: Purpose | str, address: str, candidate: str) -> bool:
        stored = await self._store.get(code_key(purpose, address))
        if not stored:
            raise CodeExpired()
        if candidate != stored:
            raise CodeMismatch()
        return True


__all__ = [
    "CODE_LENGTH",
    "DEFAULT_CODE_TTL",
    "CodeStore",
    "MemoryCodeStore",
    "Purpose",
    "RedisCodeStore",
    "VerificationCodeGate",
    "code_key",
    "generate_code",
]
