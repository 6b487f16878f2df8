"""Account registration, authentication, and guarded profile changes."""

from __future__ import annotations

import logging
from typing import Optional

from .codes import Purpose, VerificationCodeGate
from .database import Database
from .errors import BadCredential, DuplicateUser, InvalidPage, InvalidPassword, StorageFailure, UserNotFound
from .hashing import CredentialHasher
from .mail import Mailer, render_code_message
from .models import (
    LoginUserView,
    RegisterRequest,
    UpdatePasswordRequest,
    UpdateUserRequest,
    User,
    UserDetailView,
    UserInfoView,
    UserPage,
    UserSummary,
    to_epoch_millis,
)
from .permissions import aggregate_permissions, role_names

REGISTER_SUCCEEDED = "Registration succeeded"
REGISTER_FAILED = "Registration failed"
PASSWORD_UPDATED = "Password updated"
PASSWORD_UPDATE_FAILED = "Password update failed"
PROFILE_UPDATED = "Profile updated"
PROFILE_UPDATE_FAILED = "Profile update failed"
CODE_SENT = "Code sent"


class IdentityService:
    """Coordinate the code gate, credential hasher, and user database.

    Write operations (register, password and profile updates) log storage
    failures and report a failure message instead of raising. Read operations
    let :class:`StorageFailure` propagate.
    """

    def __init__(
        self,
        database: Database,
        gate: VerificationCodeGate,
        *,
        hasher: CredentialHasher | None = None,
        mailer: Mailer | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._database = database
        self._gate = gate
        self._hasher = hasher or CredentialHasher()
        self._mailer = mailer
        self._logger = logger or logging.getLogger("identity.service")

    async def send_code(self, purpose: Purpose | str, address: str) -> str:
        """Issue a code for ``purpose`` and mail it to ``address``.

        The code stays stored even when delivery fails.
        """

        normalized = address.strip()
        if not normalized:
            raise ValueError("Address must not be empty")
        if self._mailer is None:
            raise RuntimeError("No mail channel is configured for verification codes")

        code = await self._gate.issue(purpose, normalized)
        subject, html = render_code_message(purpose, code)
        await self._mailer.send(normalized, subject, html)
        self._logger.info("Sent %s code to %s", Purpose(purpose).value, normalized)
        return CODE_SENT

    async def register(self, request: RegisterRequest) -> str:
        _require_password(request.password)
        await self._gate.verify(Purpose.REGISTER, request.email, request.captcha)

        if self._database.get_user_by_username(request.username, is_admin=False) is not None:
            raise DuplicateUser()

        user = User(
            username=request.username,
            password=self._hasher.hash(request.password),
            email=request.email,
            nickname=request.nickname,
        )

        try:
            self._database.insert_user(user)
        except StorageFailure as exc:
            self._logger.error("Failed to register user %s: %s", request.username, exc)
            return REGISTER_FAILED

        self._logger.info("Registered user %s (id=%s)", user.username, user.id)
        return REGISTER_SUCCEEDED

    async def login(self, username: str, password: str, *, as_admin: bool = False) -> LoginUserView:
        user = self._database.get_user_by_username(username, is_admin=as_admin, with_roles=True)
        if user is None:
            raise UserNotFound()

        if not self._hasher.matches(password, user.password):
            self._logger.warning("Failed login attempt for %s", username)
            raise BadCredential()

        if self._hasher.needs_rehash(user.password):
            self._upgrade_digest(user, password)

        return LoginUserView(
            id=_require_id(user),
            username=user.username,
            nickname=user.nickname,
            email=user.email,
            phone_number=user.phone_number,
            head_pic=user.head_pic,
            created_at=to_epoch_millis(user.created_at),
            is_frozen=user.is_frozen,
            is_admin=user.is_admin,
            roles=role_names(user.roles),
            permissions=aggregate_permissions(user.roles),
        )

    async def find_user_by_id(self, user_id: int, *, is_admin: bool = False) -> UserInfoView:
        user = self._database.get_user(user_id, is_admin=is_admin, with_roles=True)
        if user is None:
            raise UserNotFound()
        return UserInfoView(
            id=_require_id(user),
            username=user.username,
            is_admin=user.is_admin,
            roles=role_names(user.roles),
            permissions=aggregate_permissions(user.roles),
        )

    async def find_user_detail_by_id(self, user_id: int) -> UserDetailView:
        user = self._database.get_user(user_id)
        if user is None:
            raise UserNotFound()
        return UserDetailView(
            id=_require_id(user),
            username=user.username,
            nickname=user.nickname,
            email=user.email,
            phone_number=user.phone_number,
            head_pic=user.head_pic,
            is_frozen=user.is_frozen,
            is_admin=user.is_admin,
            created_at=user.created_at,
        )

    async def update_password(self, user_id: int, request: UpdatePasswordRequest) -> str:
        _require_password(request.password)
        await self._gate.verify(Purpose.UPDATE_PASSWORD, request.email, request.captcha)

        user = self._database.get_user(user_id)
        if user is None:
            raise UserNotFound()

        user.password = self._hasher.hash(request.password)
        try:
            self._database.save_user(user)
        except StorageFailure as exc:
            self._logger.error("Failed to update password for user %s: %s", user_id, exc)
            return PASSWORD_UPDATE_FAILED

        self._logger.info("Password updated for user %s", user_id)
        return PASSWORD_UPDATED

    async def update_profile(self, user_id: int, request: UpdateUserRequest) -> str:
        await self._gate.verify(Purpose.UPDATE_PROFILE, request.email, request.captcha)

        user = self._database.get_user(user_id)
        if user is None:
            raise UserNotFound()

        if request.nickname:
            user.nickname = request.nickname
        if request.head_pic:
            user.head_pic = request.head_pic

        try:
            self._database.save_user(user)
        except StorageFailure as exc:
            self._logger.error("Failed to update profile for user %s: %s", user_id, exc)
            return PROFILE_UPDATE_FAILED

        return PROFILE_UPDATED

    async def freeze(self, user_id: int) -> None:
        user = self._database.get_user(user_id)
        if user is None:
            raise UserNotFound()
        user.is_frozen = True
        self._database.save_user(user)
        self._logger.info("Froze user %s", user_id)

    async def search(
        self,
        *,
        username: Optional[str] = None,
        nickname: Optional[str] = None,
        email: Optional[str] = None,
        page_no: int = 1,
        page_size: int = 10,
    ) -> UserPage:
        if page_no < 1:
            raise InvalidPage("Page number must be at least 1")
        if page_size < 1:
            raise InvalidPage("Page size must be at least 1")

        users, total = self._database.find_users(
            username=username,
            nickname=nickname,
            email=email,
            offset=(page_no - 1) * page_size,
            limit=page_size,
        )
        items = [
            UserSummary(
                id=_require_id(user),
                username=user.username,
                nickname=user.nickname,
                email=user.email,
                phone_number=user.phone_number,
                is_frozen=user.is_frozen,
                head_pic=user.head_pic,
                created_at=user.created_at,
            )
            for user in users
        ]
        return UserPage(items=items, total_count=total)

    def _upgrade_digest(self, user: User, password: str) -> None:
        user.password = self._hasher.hash(password)
        try:
            self._database.save_user(user)
        except StorageFailure as exc:
            self._logger.warning("Could not upgrade password digest for user %s: %s", user.id, exc)
            return
        self._logger.info("Upgraded legacy password digest for user %s", user.id)


def _require_password(password: str) -> None:
    if not password:
        raise InvalidPassword()


def _require_id(user: User) -> int:
    if user.id is None:  # pragma: no cover - rows loaded from the database always carry an id
        raise RuntimeError("User has not been persisted")
    return user.id


__all__ = [
    "IdentityService",
    "CODE_SENT",
    "PASSWORD_UPDATED",
    "PASSWORD_UPDATE_FAILED",
    "PROFILE_UPDATED",
    "PROFILE_UPDATE_FAILED",
    "REGISTER_FAILED",
    "REGISTER_SUCCEEDED",
]
