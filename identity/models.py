"""Domain records, request payloads, and read views for the identity core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_millis(value: datetime) -> int:
    """Return ``value`` as integer milliseconds since the Unix epoch."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


@dataclass(frozen=True)
class Permission:
    """A single capability, shared by every role that grants it."""

    id: int
    code: str
    name: str


@dataclass(frozen=True)
class Role:
    """Named bundle of permissions, kept in link-table order."""

    id: int
    name: str
    permissions: Tuple[Permission, ...] = ()


@dataclass
class User:
    """Represents a user account stored in the identity database."""

    username: str
    password: str
    email: str
    nickname: str
    id: Optional[int] = None
    phone_number: Optional[str] = None
    head_pic: Optional[str] = None
    is_frozen: bool = False
    is_admin: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    roles: List[Role] = field(default_factory=list)


@dataclass(frozen=True)
class RegisterRequest:
    username: str
    password: str
    email: str
    nickname: str
    captcha: str


@dataclass(frozen=True)
class UpdatePasswordRequest:
    email: str
    password: str
    captcha: str


@dataclass(frozen=True)
class UpdateUserRequest:
    """Partial profile update; ``None`` or empty fields are left untouched."""

    email: str
    captcha: str
    nickname: Optional[str] = None
    head_pic: Optional[str] = None


@dataclass(frozen=True)
class LoginUserView:
    id: int
    username: str
    nickname: str
    email: str
    phone_number: Optional[str]
    head_pic: Optional[str]
    created_at: int
    is_frozen: bool
    is_admin: bool
    roles: List[str]
    permissions: List[str]


@dataclass(frozen=True)
class UserInfoView:
    id: int
    username: str
    is_admin: bool
    roles: List[str]
    permissions: List[str]


@dataclass(frozen=True)
class UserDetailView:
    id: int
    username: str
    nickname: str
    email: str
    phone_number: Optional[str]
    head_pic: Optional[str]
    is_frozen: bool
    is_admin: bool
    created_at: datetime


@dataclass(frozen=True)
class UserSummary:
    id: int
    username: str
    nickname: str
    email: str
    phone_number: Optional[str]
    is_frozen: bool
    head_pic: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class UserPage:
    items: List[UserSummary]
    total_count: int


__all__ = [
    "Permission",
    "Role",
    "User",
    "RegisterRequest",
    "UpdatePasswordRequest",
    "UpdateUserRequest",
    "LoginUserView",
    "UserInfoView",
    "UserDetailView",
    "UserSummary",
    "UserPage",
    "to_epoch_millis",
]
