"""Command-line interface for the identity service."""

from __future__ import annotations
import argparse
import logging
import sys
from getpass import getpass
from pathlib import Path
from typing import Sequence

from identity.config import Settings, load_settings
from identity.database import Database
from identity.errors import DuplicateUser
from identity.hashing import CredentialHasher
from identity.models import User

logger = logging.getLogger("identity.main")

_MIN_ADMIN_PASSWORD_LENGTH = 12


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Identity service utilities")
    parser.add_argument("--config", default=None, help="Path to the YAML configuration file")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the identity database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP identity service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port for the API (default: 8000)")

    admin_parser = subparsers.add_parser("create-admin", help="Create an administrator account")
    admin_parser.add_argument("username", help="Login name in the admin namespace")
    admin_parser.add_argument("email", help="Contact email address")
    admin_parser.add_argument("--nickname", default=None, help="Display name (defaults to the username)")

    grant_parser = subparsers.add_parser("grant-role", help="Assign a role, creating it if needed")
    grant_parser.add_argument("username", help="Account to receive the role")
    grant_parser.add_argument("role", help="Role name")
    grant_parser.add_argument(
        "--permission",
        dest="permissions",
        action="append",
        default=[],
        help="Permission code to grant to the role (repeatable)",
    )
    grant_parser.add_argument(
        "--admin",
        action="store_true",
        help="Look the username up in the admin namespace",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "create-admin", "grant-role"}

    if not args_list:
        args_list = ["serve"]
    else:
        leading: list[str] = []
        rest = list(args_list)
        if rest[0] == "--config" and len(rest) >= 2:
            leading, rest = rest[:2], rest[2:]
        if not rest:
            rest = ["serve"]
        elif rest[0] not in known_commands and not any(flag in rest for flag in ("-h", "--help")):
            rest = ["serve", *rest]
        args_list = [*leading, *rest]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(settings: Settings, database: Database, *, host: str, port: int) -> None:
    from identity.application import create_application
    import uvicorn

    logger.info("Starting identity API on http://%s:%s", host, port)
    app = create_application(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {_MIN_ADMIN_PASSWORD_LENGTH} characters): ")
        if len(password) < _MIN_ADMIN_PASSWORD_LENGTH:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_admin(database: Database, *, username: str, email: str, nickname: str | None) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted creating administrator.", file=sys.stderr)
        return 1

    user = User(
        username=username.strip(),
        password=CredentialHasher().hash(password),
        email=email.strip(),
        nickname=(nickname or username).strip(),
        is_admin=True,
    )
    try:
        database.insert_user(user)
    except DuplicateUser:
        print(f"Error: administrator {user.username!r} already exists", file=sys.stderr)
        return 1

    print(f"Created administrator #{user.id}: {user.username} <{user.email}>")
    return 0


def _grant_role(
    database: Database,
    *,
    username: str,
    role_name: str,
    permissions: Sequence[str],
    is_admin: bool,
) -> int:
    user = database.get_user_by_username(username, is_admin=is_admin)
    if user is None or user.id is None:
        print(f"Error: user {username!r} not found", file=sys.stderr)
        return 1

    role = database.get_role_by_name(role_name) or database.create_role(role_name)
    for code in permissions:
        permission = database.get_permission_by_code(code) or database.create_permission(code)
        database.grant_permission(role.id, permission.id)
    database.assign_role(user.id, role.id)

    print(f"Assigned role {role.name!r} to {user.username}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = load_settings(Path(args.config) if args.config else None)
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings, database, host=args.host, port=args.port)
    elif args.command == "create-admin":
        return _create_admin(database, username=args.username, email=args.email, nickname=args.nickname)
    elif args.command == "grant-role":
        return _grant_role(
            database,
            username=args.username,
            role_name=args.role,
            permissions=args.permissions,
            is_admin=args.admin,
        )
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
