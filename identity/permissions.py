"""Flatten role membership into an effective permission list."""
from __future__ import annotations

from typing import Iterable, List, Set

from .models import Role


def aggregate_permissions(roles: Iterable[Role]) -> List[str]:
    """Return the names of the permissions reachable from ``roles``.

    Roles and their permissions are walked in stored order. A permission
    granted by several roles is the same row, so it is recognised by id and
    kept at its first occurrence; the result is stable for the same
    associations.
    """

    seen: Set[int] = set()
    result: List[str] = []
    for role in roles:
        for permission in role.permissions:
            if permission.id in seen:
                continue
            seen.add(permission.id)
            result.append(permission.name)
    return result


def role_names(roles: Iterable[Role]) -> List[str]:
    return [role.name for role in roles]


__all__ = ["aggregate_permissions", "role_names"]
