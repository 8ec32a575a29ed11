"""
auth/permissions.py -- Role-based permissions and tenant isolation.

The role table is an immutable value: built once by default_role_table(),
frozen into MappingProxyType/frozenset, and handed to PermissionEngine. There
is no module-level mutable map for anything to patch at runtime.

A grant is a (resource, action) pair. "*" in either position matches
anything, so ("*", "*") is "everything" and ("orders", "*") is "every action
on orders".

Tenant isolation is a separate check from permissions. A caller's tenant is
the one in its token. An explicitly requested tenant (path, then query, then
X-Tenant-ID header) must equal it, unless the caller is super_admin, whose
explicit tenant is honored as an override.

Layer rule: no imports from api/ or cache/. resolve_tenant() takes the
candidate values, not a request object.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from auth.models import Identity, Role
from core.errors import ForbiddenError

WILDCARD = "*"

Grant = tuple[str, str]
RoleTable = Mapping[str, frozenset[Grant]]

# Lowest first.
ROLE_HIERARCHY: tuple[str, ...] = (
    Role.VIEWER.value,
    Role.STAFF.value,
    Role.TENANT_ADMIN.value,
    Role.SUPER_ADMIN.value,
)

_METHOD_ACTIONS = MappingProxyType(
    {
        "GET": "read",
        "HEAD": "read",
        "POST": "write",
        "PUT": "write",
        "PATCH": "write",
        "DELETE": "delete",
    }
)


def _grants(resources: Iterable[str], actions: Iterable[str]) -> set[Grant]:
    actions = tuple(actions)
    return {(r, a) for r in resources for a in actions}


def default_role_table() -> RoleTable:
    """Return the built-in role -> grants table as a read-only mapping."""
    table = {
        Role.SUPER_ADMIN.value: {(WILDCARD, WILDCARD)},
        Role.TENANT_ADMIN.value: (
            _grants(("users", "orders"), ("read", "write", "delete"))
            | _grants(("products", "inventory", "reports", "settings"), ("read", "write"))
        ),
        Role.STAFF.value: (
            _grants(("users", "products", "reports"), ("read",))
            | _grants(("orders", "inventory"), ("read", "write"))
        ),
        Role.VIEWER.value: _grants(("users", "orders", "products", "inventory", "reports"), ("read",)),
    }
    return MappingProxyType({role: frozenset(grants) for role, grants in table.items()})


def role_at_least(role: str, required: str) -> bool:
    """True if role sits at or above required in ROLE_HIERARCHY. Unknown roles rank below everything."""
    if role not in ROLE_HIERARCHY or required not in ROLE_HIERARCHY:
        return False
    return ROLE_HIERARCHY.index(role) >= ROLE_HIERARCHY.index(required)


def action_from_method(method: str) -> str:
    return _METHOD_ACTIONS.get(method.upper(), "read")


def resource_from_path(path: str) -> str:
    """Map a request path to its resource name.

    "/api/v1/orders/123" -> "orders". Version prefixes ("api", "v1", ...) are
    skipped; an empty path maps to "unknown".
    """
    for segment in path.strip("/").split("/"):
        if not segment or segment == "api" or (segment[0] == "v" and segment[1:].isdigit()):
            continue
        return segment
    return "unknown"


class PermissionEngine:
    """Answers "may this identity do that?" from an injected, read-only role table."""

    def __init__(self, table: RoleTable | None = None) -> None:
        self._table = table if table is not None else default_role_table()

    @property
    def table(self) -> RoleTable:
        return self._table

    def grants_for(self, role: str) -> frozenset[Grant]:
        return self._table.get(role, frozenset())

    def has_permission(self, role: str, resource: str, action: str) -> bool:
        grants = self.grants_for(role)
        return (
            (resource, action) in grants
            or (WILDCARD, action) in grants
            or (resource, WILDCARD) in grants
            or (WILDCARD, WILDCARD) in grants
        )

    def require_permission(self, identity: Identity, resource: str, action: str) -> None:
        if not self.has_permission(identity.role, resource, action):
            raise ForbiddenError(
                f"Insufficient permissions for {action} on {resource}",
                details={"resource": resource, "action": action, "role": identity.role},
            )

    def require_role(self, identity: Identity, *allowed: str) -> None:
        if identity.role not in allowed:
            raise ForbiddenError(
                "Insufficient role",
                details={"required_roles": list(allowed), "role": identity.role},
            )

    def resolve_tenant(
        self,
        identity: Identity,
        path_tenant: str | None = None,
        query_tenant: str | None = None,
        header_tenant: str | None = None,
    ) -> str:
        """Return the tenant the request acts on.

        The first explicit candidate (path, query, header) wins. A non-admin
        caller naming a tenant other than its own gets ForbiddenError.
        """
        requested = next((t for t in (path_tenant, query_tenant, header_tenant) if t), None)
        if requested is None or requested == identity.tenant_id:
            return identity.tenant_id
        if identity.role == Role.SUPER_ADMIN.value:
            return requested
        raise ForbiddenError(
            "Access denied: tenant mismatch",
            details={"requested_tenant": requested},
        )
