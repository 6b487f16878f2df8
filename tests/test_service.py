"""Tests for the identity service workflows."""

from __future__ import annotations

import hashlib
import re
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple
from unittest import mock

from identity.codes import MemoryCodeStore, Purpose, VerificationCodeGate
from identity.database import Database
from identity.errors import (
    BadCredential,
    CodeExpired,
    CodeMismatch,
    DeliveryFailure,
    DuplicateUser,
    InvalidPage,
    InvalidPassword,
    StorageFailure,
    UserNotFound,
)
from identity.hashing import CredentialHasher
from identity.models import RegisterRequest, UpdatePasswordRequest, UpdateUserRequest, User
from identity.service import (
    CODE_SENT,
    PASSWORD_UPDATE_FAILED,
    PASSWORD_UPDATED,
    PROFILE_UPDATE_FAILED,
    PROFILE_UPDATED,
    REGISTER_FAILED,
    REGISTER_SUCCEEDED,
    IdentityService,
)


class RecordingMailer:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: List[Tuple[str, str, str]] = []
        self.fail = fail

    async def send(self, to: str, subject: str, html: str) -> None:
        self.sent.append((to, subject, html))
        if self.fail:
            raise DeliveryFailure(f"Failed to send mail to {to}")


class IdentityServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.database = Database(Path(self._tempdir.name) / "identity.sqlite3")
        self.database.initialize()
        self.gate = VerificationCodeGate(MemoryCodeStore())
        self.hasher = CredentialHasher(pbkdf2_rounds=1000)
        self.mailer = RecordingMailer()
        self.service = IdentityService(
            self.database,
            self.gate,
            hasher=self.hasher,
            mailer=self.mailer,
        )

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    async def _register(self, username: str, password: str = "pw1", email: str | None = None) -> str:
        address = email or f"{username}@x.com"
        code = await self.gate.issue(Purpose.REGISTER, address)
        return await self.service.register(
            RegisterRequest(
                username=username,
                password=password,
                email=address,
                nickname=username.title(),
                captcha=code,
            )
        )

    def _seed_admin(self, username: str, password: str) -> User:
        return self.database.insert_user(
            User(
                username=username,
                password=self.hasher.hash(password),
                email=f"{username}@admin.example",
                nickname=username,
                is_admin=True,
            )
        )

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------
    async def test_send_code_mails_issued_code(self) -> None:
        result = await self.service.send_code(Purpose.REGISTER, "a@x.com")

        self.assertEqual(result, CODE_SENT)
        self.assertEqual(len(self.mailer.sent), 1)
        to, subject, html = self.mailer.sent[0]
        self.assertEqual(to, "a@x.com")
        self.assertEqual(subject, "Registration code")
        code = re.search(r"\d{6}", html).group(0)
        self.assertTrue(await self.gate.verify(Purpose.REGISTER, "a@x.com", code))

    async def test_delivery_failure_keeps_stored_code(self) -> None:
        self.mailer.fail = True

        with self.assertRaises(DeliveryFailure):
            await self.service.send_code(Purpose.UPDATE_PASSWORD, "a@x.com")

        code = re.search(r"\d{6}", self.mailer.sent[0][2]).group(0)
        self.assertTrue(await self.gate.verify(Purpose.UPDATE_PASSWORD, "a@x.com", code))

    async def test_send_code_requires_address(self) -> None:
        with self.assertRaises(ValueError):
            await self.service.send_code(Purpose.REGISTER, "   ")

    async def test_code_sent_to_padded_address_redeems_with_same_address(self) -> None:
        with mock.patch("identity.codes.generate_code", return_value="123456"):
            await self.service.send_code(Purpose.REGISTER, "a@x.com ")

        self.assertEqual(self.mailer.sent[0][0], "a@x.com")
        result = await self.service.register(
            RegisterRequest(username="alice", password="pw1", email="a@x.com ", nickname="Alice", captcha="123456")
        )
        self.assertEqual(result, REGISTER_SUCCEEDED)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    async def test_register_then_duplicate(self) -> None:
        with mock.patch("identity.codes.generate_code", return_value="123456"):
            code = await self.gate.issue(Purpose.REGISTER, "a@x.com")
        self.assertEqual(code, "123456")

        result = await self.service.register(
            RegisterRequest(username="alice", password="pw1", email="a@x.com", nickname="Alice", captcha="123456")
        )
        self.assertEqual(result, REGISTER_SUCCEEDED)

        stored = self.database.get_user_by_username("alice")
        self.assertIsNotNone(stored)
        self.assertNotEqual(stored.password, "pw1")
        self.assertTrue(self.hasher.matches("pw1", stored.password))
        self.assertFalse(stored.is_admin)
        self.assertFalse(stored.is_frozen)

        fresh = await self.gate.issue(Purpose.REGISTER, "a@x.com")
        with self.assertRaises(DuplicateUser):
            await self.service.register(
                RegisterRequest(username="alice", password="pw2", email="a@x.com", nickname="Alice", captcha=fresh)
            )

    async def test_register_rejects_wrong_code(self) -> None:
        code = await self.gate.issue(Purpose.REGISTER, "a@x.com")
        wrong = "000000" if code != "000000" else "999999"

        with self.assertRaises(CodeMismatch):
            await self.service.register(
                RegisterRequest(username="alice", password="pw1", email="a@x.com", nickname="A", captcha=wrong)
            )
        self.assertIsNone(self.database.get_user_by_username("alice"))

    async def test_register_without_code_is_expired(self) -> None:
        with self.assertRaises(CodeExpired):
            await self.service.register(
                RegisterRequest(username="alice", password="pw1", email="a@x.com", nickname="A", captcha="123456")
            )

    async def test_register_rejects_code_issued_for_other_purpose(self) -> None:
        code = await self.gate.issue(Purpose.UPDATE_PASSWORD, "a@x.com")

        with self.assertRaises(CodeExpired):
            await self.service.register(
                RegisterRequest(username="alice", password="pw1", email="a@x.com", nickname="A", captcha=code)
            )

    async def test_register_allows_username_taken_by_admin(self) -> None:
        self._seed_admin("root", "admin-password")
        self.assertEqual(await self._register("root"), REGISTER_SUCCEEDED)

    async def test_register_race_maps_unique_violation_to_duplicate(self) -> None:
        await self._register("alice")
        code = await self.gate.issue(Purpose.REGISTER, "late@x.com")

        with mock.patch.object(self.database, "get_user_by_username", return_value=None):
            with self.assertRaises(DuplicateUser):
                await self.service.register(
                    RegisterRequest(username="alice", password="pw", email="late@x.com", nickname="A", captcha=code)
                )

    async def test_register_storage_failure_is_soft(self) -> None:
        code = await self.gate.issue(Purpose.REGISTER, "a@x.com")

        with mock.patch.object(self.database, "insert_user", side_effect=StorageFailure("disk full")):
            with self.assertLogs("identity.service", level="ERROR"):
                result = await self.service.register(
                    RegisterRequest(username="alice", password="pw1", email="a@x.com", nickname="A", captcha=code)
                )
        self.assertEqual(result, REGISTER_FAILED)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    async def test_login_returns_view_with_permissions(self) -> None:
        await self._register("alice", password="correct-pw")
        user = self.database.get_user_by_username("alice")
        viewer = self.database.create_role("viewer")
        operator = self.database.create_role("operator")
        read = self.database.create_permission("user:read", "Read users")
        write = self.database.create_permission("user:write", "Edit users")
        freeze = self.database.create_permission("user:freeze", "Freeze users")
        self.database.grant_permission(viewer.id, read.id)
        self.database.grant_permission(viewer.id, write.id)
        self.database.grant_permission(operator.id, write.id)
        self.database.grant_permission(operator.id, freeze.id)
        self.database.assign_role(user.id, viewer.id)
        self.database.assign_role(user.id, operator.id)

        view = await self.service.login("alice", "correct-pw", as_admin=False)

        self.assertEqual(view.id, user.id)
        self.assertEqual(view.username, "alice")
        self.assertEqual(view.email, "alice@x.com")
        self.assertEqual(view.roles, ["viewer", "operator"])
        self.assertEqual(view.permissions, ["Read users", "Edit users", "Freeze users"])
        self.assertIsInstance(view.created_at, int)
        self.assertEqual(view.created_at, int(user.created_at.timestamp() * 1000))
        self.assertFalse(hasattr(view, "password"))

    async def test_login_is_isolated_by_namespace(self) -> None:
        self._seed_admin("alice", "correct-pw")

        with self.assertRaises(UserNotFound):
            await self.service.login("alice", "correct-pw", as_admin=False)

        view = await self.service.login("alice", "correct-pw", as_admin=True)
        self.assertTrue(view.is_admin)

    async def test_login_rejects_bad_password(self) -> None:
        await self._register("alice", password="correct-pw")

        with self.assertRaises(BadCredential):
            await self.service.login("alice", "wrong-pw")

    async def test_login_unknown_user(self) -> None:
        with self.assertRaises(UserNotFound):
            await self.service.login("nobody", "pw")

    async def test_login_reports_frozen_flag_without_blocking(self) -> None:
        await self._register("alice", password="pw1")
        user = self.database.get_user_by_username("alice")
        await self.service.freeze(user.id)

        view = await self.service.login("alice", "pw1")
        self.assertTrue(view.is_frozen)

    async def test_login_upgrades_legacy_digest(self) -> None:
        legacy = hashlib.md5(b"old-password").hexdigest()
        user = self.database.insert_user(
            User(username="legacy", password=legacy, email="l@x.com", nickname="Legacy")
        )

        await self.service.login("legacy", "old-password")

        upgraded = self.database.get_user(user.id)
        self.assertNotEqual(upgraded.password, legacy)
        self.assertFalse(self.hasher.needs_rehash(upgraded.password))
        self.assertTrue(self.hasher.matches("old-password", upgraded.password))

    async def test_login_storage_failure_propagates(self) -> None:
        with mock.patch.object(self.database, "get_user_by_username", side_effect=StorageFailure("offline")):
            with self.assertRaises(StorageFailure):
                await self.service.login("alice", "pw")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def test_find_user_by_id_respects_namespace(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")
        role = self.database.create_role("viewer")
        permission = self.database.create_permission("user:read")
        self.database.grant_permission(role.id, permission.id)
        self.database.assign_role(user.id, role.id)

        info = await self.service.find_user_by_id(user.id)
        self.assertEqual(info.username, "alice")
        self.assertEqual(info.roles, ["viewer"])
        self.assertEqual(info.permissions, ["user:read"])

        with self.assertRaises(UserNotFound):
            await self.service.find_user_by_id(user.id, is_admin=True)

    async def test_find_user_detail_by_id(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")

        detail = await self.service.find_user_detail_by_id(user.id)
        self.assertEqual(detail.email, "alice@x.com")
        self.assertEqual(detail.nickname, "Alice")
        self.assertFalse(hasattr(detail, "password"))

        with self.assertRaises(UserNotFound):
            await self.service.find_user_detail_by_id(user.id + 1)

    # ------------------------------------------------------------------
    # Guarded mutation
    # ------------------------------------------------------------------
    async def test_update_password(self) -> None:
        await self._register("alice", password="old-pw")
        user = self.database.get_user_by_username("alice")
        code = await self.gate.issue(Purpose.UPDATE_PASSWORD, "alice@x.com")

        result = await self.service.update_password(
            user.id, UpdatePasswordRequest(email="alice@x.com", password="new-pw", captcha=code)
        )

        self.assertEqual(result, PASSWORD_UPDATED)
        await self.service.login("alice", "new-pw")
        with self.assertRaises(BadCredential):
            await self.service.login("alice", "old-pw")

    async def test_update_password_gate_uses_request_email(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")
        code = await self.gate.issue(Purpose.UPDATE_PASSWORD, "someone-else@x.com")

        result = await self.service.update_password(
            user.id, UpdatePasswordRequest(email="someone-else@x.com", password="new-pw", captcha=code)
        )
        self.assertEqual(result, PASSWORD_UPDATED)

    async def test_update_password_rejects_register_code(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")
        code = await self.gate.issue(Purpose.REGISTER, "alice@x.com")

        with self.assertRaises(CodeExpired):
            await self.service.update_password(
                user.id, UpdatePasswordRequest(email="alice@x.com", password="new-pw", captcha=code)
            )

    async def test_empty_password_rejected_before_code_check(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")

        with self.assertRaises(InvalidPassword):
            await self.service.update_password(
                user.id, UpdatePasswordRequest(email="alice@x.com", password="", captcha="123456")
            )
        with self.assertRaises(InvalidPassword):
            await self.service.register(
                RegisterRequest(username="bob", password="", email="b@x.com", nickname="B", captcha="123456")
            )
        self.assertIsNone(self.database.get_user_by_username("bob"))

    async def test_update_password_unknown_user(self) -> None:
        code = await self.gate.issue(Purpose.UPDATE_PASSWORD, "a@x.com")

        with self.assertRaises(UserNotFound):
            await self.service.update_password(
                42, UpdatePasswordRequest(email="a@x.com", password="new-pw", captcha=code)
            )

    async def test_update_password_storage_failure_is_soft(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")
        code = await self.gate.issue(Purpose.UPDATE_PASSWORD, "alice@x.com")

        with mock.patch.object(self.database, "save_user", side_effect=StorageFailure("locked")):
            result = await self.service.update_password(
                user.id, UpdatePasswordRequest(email="alice@x.com", password="new-pw", captcha=code)
            )
        self.assertEqual(result, PASSWORD_UPDATE_FAILED)

    async def test_update_profile_applies_only_supplied_fields(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")
        user.head_pic = "avatars/original.png"
        self.database.save_user(user)
        code = await self.gate.issue(Purpose.UPDATE_PROFILE, "alice@x.com")

        result = await self.service.update_profile(
            user.id, UpdateUserRequest(email="alice@x.com", captcha=code, nickname="Ally")
        )
        self.assertEqual(result, PROFILE_UPDATED)
        reloaded = self.database.get_user(user.id)
        self.assertEqual(reloaded.nickname, "Ally")
        self.assertEqual(reloaded.head_pic, "avatars/original.png")

        result = await self.service.update_profile(
            user.id, UpdateUserRequest(email="alice@x.com", captcha=code, head_pic="avatars/new.png", nickname="")
        )
        self.assertEqual(result, PROFILE_UPDATED)
        reloaded = self.database.get_user(user.id)
        self.assertEqual(reloaded.nickname, "Ally")
        self.assertEqual(reloaded.head_pic, "avatars/new.png")

    async def test_update_profile_rejects_wrong_code(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")
        code = await self.gate.issue(Purpose.UPDATE_PROFILE, "alice@x.com")
        wrong = "000000" if code != "000000" else "111111"

        with self.assertRaises(CodeMismatch):
            await self.service.update_profile(
                user.id, UpdateUserRequest(email="alice@x.com", captcha=wrong, nickname="Ally")
            )

    async def test_update_profile_unknown_user(self) -> None:
        code = await self.gate.issue(Purpose.UPDATE_PROFILE, "a@x.com")
        with self.assertRaises(UserNotFound):
            await self.service.update_profile(7, UpdateUserRequest(email="a@x.com", captcha=code, nickname="X"))

    async def test_update_profile_storage_failure_reports_failure(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")
        code = await self.gate.issue(Purpose.UPDATE_PROFILE, "alice@x.com")

        with mock.patch.object(self.database, "save_user", side_effect=StorageFailure("locked")):
            result = await self.service.update_profile(
                user.id, UpdateUserRequest(email="alice@x.com", captcha=code, nickname="Ally")
            )
        self.assertEqual(result, PROFILE_UPDATE_FAILED)

    # ------------------------------------------------------------------
    # Freeze
    # ------------------------------------------------------------------
    async def test_freeze(self) -> None:
        await self._register("alice")
        user = self.database.get_user_by_username("alice")

        await self.service.freeze(user.id)
        self.assertTrue(self.database.get_user(user.id).is_frozen)

        await self.service.freeze(user.id)
        self.assertTrue(self.database.get_user(user.id).is_frozen)

    async def test_freeze_unknown_user(self) -> None:
        with self.assertRaises(UserNotFound):
            await self.service.freeze(123)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    async def test_search_paginates_with_total(self) -> None:
        for index in range(15):
            self.database.insert_user(
                User(username=f"alice{index}", password="x", email=f"a{index}@x.com", nickname="N")
            )
        self.database.insert_user(User(username="bob", password="x", email="bob@x.com", nickname="N"))

        page = await self.service.search(username="ali", page_no=2, page_size=10)

        self.assertEqual(page.total_count, 15)
        self.assertEqual(len(page.items), 5)
        self.assertFalse(hasattr(page.items[0], "password"))

    async def test_search_combines_filters(self) -> None:
        self.database.insert_user(User(username="alice", password="x", email="alice@corp.com", nickname="Al"))
        self.database.insert_user(User(username="alicia", password="x", email="alicia@home.com", nickname="Lis"))

        page = await self.service.search(username="ali", email="corp")
        self.assertEqual([item.username for item in page.items], ["alice"])
        self.assertEqual(page.total_count, 1)

        page = await self.service.search()
        self.assertEqual(page.total_count, 2)

    async def test_search_rejects_invalid_pages(self) -> None:
        with self.assertRaises(InvalidPage):
            await self.service.search(page_no=0, page_size=10)
        with self.assertRaises(InvalidPage):
            await self.service.search(page_no=1, page_size=0)


def test_service_uses_injected_logger(tmp_path: Path) -> None:
    import asyncio
    import logging

    database = Database(tmp_path / "identity.sqlite3")
    database.initialize()
    gate = VerificationCodeGate(MemoryCodeStore())
    injected = mock.Mock(spec=logging.Logger)
    service = IdentityService(
        database,
        gate,
        hasher=CredentialHasher(pbkdf2_rounds=1000),
        mailer=RecordingMailer(),
        logger=injected,
    )

    async def scenario() -> None:
        code = await gate.issue(Purpose.REGISTER, "a@x.com")
        await service.register(
            RegisterRequest(username="alice", password="pw1", email="a@x.com", nickname="A", captcha=code)
        )

    asyncio.run(scenario())
    injected.info.assert_called()
    assert database.get_user_by_username("alice").created_at <= datetime.now(timezone.utc)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
