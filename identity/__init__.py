"""Identity and access core: accounts, verification codes, and role permissions."""

from __future__ import annotations

from typing import Any

from .database import Database
from .config import resolve_database_path


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the configured HTTP application."""

    from .application import create_application as _create_application

    return _create_application(*args, **kwargs)


__all__ = [
    "Database",
    "resolve_database_path",
    "create_app",
]
