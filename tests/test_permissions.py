from identity.models import Permission, Role
from identity.permissions import aggregate_permissions, role_names

READ = Permission(id=1, code="user:read", name="Read users")
WRITE = Permission(id=2, code="user:write", name="Edit users")
FREEZE = Permission(id=3, code="user:freeze", name="Freeze users")


def test_aggregate_preserves_first_occurrence_order() -> None:
    roles = [
        Role(id=1, name="viewer", permissions=(READ, WRITE)),
        Role(id=2, name="operator", permissions=(WRITE, FREEZE)),
    ]

    assert aggregate_permissions(roles) == ["Read users", "Edit users", "Freeze users"]


def test_aggregate_is_stable_across_calls() -> None:
    roles = [
        Role(id=2, name="operator", permissions=(FREEZE, READ)),
        Role(id=1, name="viewer", permissions=(READ, WRITE)),
    ]

    first = aggregate_permissions(roles)
    assert first == ["Freeze users", "Read users", "Edit users"]
    assert aggregate_permissions(roles) == first


def test_aggregate_handles_empty_roles() -> None:
    assert aggregate_permissions([]) == []
    assert aggregate_permissions([Role(id=1, name="empty")]) == []


def test_aggregate_exposes_names_not_codes() -> None:
    roles = [Role(id=1, name="viewer", permissions=(READ,))]

    assert aggregate_permissions(roles) == ["Read users"]
    assert "user:read" not in aggregate_permissions(roles)


def test_aggregate_deduplicates_by_identifier() -> None:
    shared = Permission(id=1, code="user:read", name="Read users")
    roles = [Role(id=1, name="a", permissions=(READ,)), Role(id=2, name="b", permissions=(shared, WRITE))]

    assert aggregate_permissions(roles) == ["Read users", "Edit users"]


def test_role_names_projection() -> None:
    roles = [Role(id=1, name="viewer"), Role(id=2, name="operator")]
    assert role_names(roles) == ["viewer", "operator"]
