"""One-way password digests.

New digests use salted PBKDF2-SHA256. Accounts migrated from the previous
system carry unsalted hex MD5 digests; those still verify and are reported by
:meth:`CredentialHasher.needs_rehash` so callers can upgrade them.
"""
from __future__ import annotations

from typing import Dict

from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from .errors import InvalidPassword

_DEFAULT_SCHEMES = ["pbkdf2_sha256", "hex_md5"]


class CredentialHasher:
    """Hash and verify plaintext secrets."""

    def __init__(self, *, pbkdf2_rounds: int | None = None) -> None:
        options: Dict[str, int] = {}
        if pbkdf2_rounds is not None:
            options["pbkdf2_sha256__default_rounds"] = pbkdf2_rounds
        self._context = CryptContext(schemes=_DEFAULT_SCHEMES, deprecated="auto", **options)

    def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise InvalidPassword()
        return self._context.hash(plaintext)

    def matches(self, plaintext: str, digest: str) -> bool:
        if not digest:
            return False
        try:
            return self._context.verify(plaintext, digest)
        except (ValueError, TypeError, UnknownHashError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._context.needs_update(digest)
        except (ValueError, TypeError, UnknownHashError):
            return False


__all__ = ["CredentialHasher"]
