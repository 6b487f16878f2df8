"""SQLite-backed persistence for users, roles, and permissions."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import DuplicateUser, StorageFailure, UserNotFound
from .models import Permission, Role, User


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class Database:
    """Simple wrapper around SQLite for persisting accounts and their roles."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self._connect()
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StorageFailure(f"Database operation failed: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL,
                    password TEXT NOT NULL,
                    email TEXT NOT NULL,
                    nickname TEXT NOT NULL,
                    phone_number TEXT,
                    head_pic TEXT,
                    is_frozen INTEGER NOT NULL DEFAULT 0,
                    is_admin INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (username, is_admin)
                );

                CREATE TABLE IF NOT EXISTS roles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS permissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    code TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_roles (
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
                    PRIMARY KEY (user_id, role_id)
                );

                CREATE TABLE IF NOT EXISTS role_permissions (
                    role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
                    permission_id INTEGER NOT NULL REFERENCES permissions(id) ON DELETE CASCADE,
                    PRIMARY KEY (role_id, permission_id)
                );

                CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
                """
            )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def insert_user(self, user: User) -> User:
        """Persist a new account and return it with its assigned id.

        Raises :class:`DuplicateUser` when the username is already taken in
        the account's admin namespace.
        """

        now = _current_timestamp()
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO users (
                        username, password, email, nickname, phone_number, head_pic,
                        is_frozen, is_admin, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user.username,
                        user.password,
                        user.email,
                        user.nickname,
                        user.phone_number,
                        user.head_pic,
                        int(user.is_frozen),
                        int(user.is_admin),
                        _serialize_datetime(user.created_at),
                        _serialize_datetime(now),
                    ),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise DuplicateUser() from exc
            raise StorageFailure(f"Failed to insert user: {exc}") from exc

        user.id = user_id
        return user

    def save_user(self, user: User) -> User:
        """Insert ``user`` when it has no id yet, otherwise update its mutable fields."""

        if user.id is None:
            return self.insert_user(user)

        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE users
                       SET password = ?, email = ?, nickname = ?, phone_number = ?,
                           head_pic = ?, is_frozen = ?, is_admin = ?, updated_at = ?
                     WHERE id = ?
                    """,
                    (
                        user.password,
                        user.email,
                        user.nickname,
                        user.phone_number,
                        user.head_pic,
                        int(user.is_frozen),
                        int(user.is_admin),
                        _serialize_datetime(_current_timestamp()),
                        user.id,
                    ),
                )
                updated = cursor.rowcount
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise DuplicateUser() from exc
            raise StorageFailure(f"Failed to update user {user.id}: {exc}") from exc

        if updated == 0:
            raise UserNotFound()
        return user

    def get_user(
        self,
        user_id: int,
        *,
        is_admin: Optional[bool] = None,
        with_roles: bool = False,
    ) -> Optional[User]:
        query = "SELECT * FROM users WHERE id = ?"
        params: List[object] = [user_id]
        if is_admin is not None:
            query += " AND is_admin = ?"
            params.append(int(is_admin))

        with self._transaction() as conn:
            row = conn.execute(query, params).fetchone()
            if row is None:
                return None
            roles = self._load_roles(conn, int(row["id"])) if with_roles else []
        return self._row_to_user(row, roles)

    def get_user_by_username(
        self,
        username: str,
        *,
        is_admin: bool = False,
        with_roles: bool = False,
    ) -> Optional[User]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = ? AND is_admin = ?",
                (username, int(is_admin)),
            ).fetchone()
            if row is None:
                return None
            roles = self._load_roles(conn, int(row["id"])) if with_roles else []
        return self._row_to_user(row, roles)

    def find_users(
        self,
        *,
        username: Optional[str] = None,
        nickname: Optional[str] = None,
        email: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[User], int]:
        """Return one page of users matching every supplied substring filter, plus the total match count."""

        clauses: List[str] = []
        params: List[object] = []
        for column, value in (("username", username), ("nickname", nickname), ("email", email)):
            if value:
                clauses.append(f"{column} LIKE ? ESCAPE '\\'")
                params.append(f"%{_escape_like(value)}%")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM users{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM users{where} ORDER BY id LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_user(row, []) for row in rows], int(total)

    def list_users(self) -> List[User]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row, []) for row in rows]

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------
    def create_role(self, name: str) -> Role:
        normalized = name.strip()
        if not normalized:
            raise ValueError("Role name must not be empty")
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO roles (name, created_at) VALUES (?, ?)",
                    (normalized, _serialize_datetime(_current_timestamp())),
                )
                role_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"A role named {normalized!r} already exists") from exc
        return Role(id=int(role_id), name=normalized)

    def create_permission(self, code: str, name: Optional[str] = None) -> Permission:
        """Create a permission; its display ``name`` defaults to ``code``."""

        normalized = code.strip()
        if not normalized:
            raise ValueError("Permission code must not be empty")
        display = (name or "").strip() or normalized
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO permissions (code, name) VALUES (?, ?)",
                    (normalized, display),
                )
                permission_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"A permission with code {normalized!r} already exists") from exc
        return Permission(id=int(permission_id), code=normalized, name=display)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM roles WHERE name = ?", (name.strip(),)).fetchone()
            if row is None:
                return None
            permissions = self._load_role_permissions(conn, int(row["id"]))
        return Role(id=int(row["id"]), name=str(row["name"]), permissions=tuple(permissions))

    def get_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM permissions WHERE code = ?", (code.strip(),)).fetchone()
        if row is None:
            return None
        return self._row_to_permission(row)

    def grant_permission(self, role_id: int, permission_id: int) -> None:
        """Attach a permission to a role; granting it twice is a no-op."""

        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO role_permissions (role_id, permission_id) VALUES (?, ?)",
                    (role_id, permission_id),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError("Role or permission not found") from exc

    def assign_role(self, user_id: int, role_id: int) -> None:
        """Add a role to a user; assigning it twice is a no-op."""

        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO user_roles (user_id, role_id) VALUES (?, ?)",
                    (user_id, role_id),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError("User or role not found") from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load_roles(self, conn: sqlite3.Connection, user_id: int) -> List[Role]:
        rows = conn.execute(
            """
            SELECT r.id AS role_id, r.name AS role_name,
                   p.id AS permission_id, p.code, p.name AS permission_name
              FROM user_roles ur
              JOIN roles r ON r.id = ur.role_id
              LEFT JOIN role_permissions rp ON rp.role_id = r.id
              LEFT JOIN permissions p ON p.id = rp.permission_id
             WHERE ur.user_id = ?
             ORDER BY ur.rowid, rp.rowid
            """,
            (user_id,),
        ).fetchall()

        names: Dict[int, str] = {}
        grants: Dict[int, List[Permission]] = {}
        for row in rows:
            role_id = int(row["role_id"])
            if role_id not in names:
                names[role_id] = str(row["role_name"])
                grants[role_id] = []
            if row["permission_id"] is not None:
                grants[role_id].append(
                    Permission(
                        id=int(row["permission_id"]),
                        code=str(row["code"]),
                        name=str(row["permission_name"]),
                    )
                )
        return [Role(id=role_id, name=name, permissions=tuple(grants[role_id])) for role_id, name in names.items()]

    def _load_role_permissions(self, conn: sqlite3.Connection, role_id: int) -> List[Permission]:
        rows = conn.execute(
            """
            SELECT p.* FROM role_permissions rp
              JOIN permissions p ON p.id = rp.permission_id
             WHERE rp.role_id = ?
             ORDER BY rp.rowid
            """,
            (role_id,),
        ).fetchall()
        return [self._row_to_permission(row) for row in rows]

    def _row_to_permission(self, row: sqlite3.Row) -> Permission:
        return Permission(id=int(row["id"]), code=str(row["code"]), name=str(row["name"]))

    def _row_to_user(self, row: sqlite3.Row, roles: List[Role]) -> User:
        return User(
            id=int(row["id"]),
            username=str(row["username"]),
            password=str(row["password"]),
            email=str(row["email"]),
            nickname=str(row["nickname"]),
            phone_number=row["phone_number"],
            head_pic=row["head_pic"],
            is_frozen=bool(row["is_frozen"]),
            is_admin=bool(row["is_admin"]),
            created_at=_parse_datetime(str(row["created_at"])),
            roles=roles,
        )


__all__ = ["Database"]
