"""Typed failures raised by the identity core."""
from __future__ import annotations


class IdentityError(Exception):
    """Base class for every failure surfaced by the identity service."""

    kind = "identity_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class VerificationFailed(IdentityError):
    """A submitted verification code was not accepted."""

    kind = "verification_failed"


class CodeExpired(VerificationFailed):
    """No code is stored for the purpose/address pair."""

    kind = "code_expired"

    def __init__(self, message: str = "Verification code has expired") -> None:
        super().__init__(message)


class CodeMismatch(VerificationFailed):
    kind = "code_mismatch"

    def __init__(self, message: str = "Verification code is incorrect") -> None:
        super().__init__(message)


class DuplicateUser(IdentityError):
    kind = "duplicate_user"

    def __init__(self, message: str = "User already exists") -> None:
        super().__init__(message)


class UserNotFound(IdentityError):
    kind = "user_not_found"

    def __init__(self, message: str = "User does not exist") -> None:
        super().__init__(message)


class BadCredential(IdentityError):
    kind = "bad_credential"

    def __init__(self, message: str = "Password is incorrect") -> None:
        super().__init__(message)


class InvalidPage(IdentityError):
    kind = "invalid_page"


class InvalidPassword(IdentityError, ValueError):
    """A new password was rejected before hashing."""

    kind = "invalid_password"

    def __init__(self, message: str = "Password must not be empty") -> None:
        super().__init__(message)


class StorageFailure(IdentityError):
    """Wraps an error raised by the code store or the user database."""

    kind = "storage_failure"


class DeliveryFailure(IdentityError):
    """The mail channel could not deliver a verification code."""

    kind = "delivery_failure"


__all__ = [
    "IdentityError",
    "VerificationFailed",
    "CodeExpired",
    "CodeMismatch",
    "DuplicateUser",
    "UserNotFound",
    "BadCredential",
    "InvalidPage",
    "InvalidPassword",
    "StorageFailure",
    "DeliveryFailure",
]
