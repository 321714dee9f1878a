"""
auth/permissions.py -- Role-based permission resolution.

Permissions are only reachable through roles (user -> role -> permission).
resolve() returns a frozenset de-duplicated by permission id, so two roles that
both grant the same permission contribute it once.

Fail-closed: a store failure propagates as StoreUnavailable. It is never turned
into an empty set, because an empty set means "denied" and callers need to tell
"denied" apart from "resolver unavailable".
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import Permission
from auth.ports import CredentialStore

# Permission names checked by the admin API surface.
SECURITY_CONFIG_READ = "security_config:read"
SECURITY_CONFIG_UPDATE = "security_config:update"
AUDIT_LOGS_READ = "audit_logs:read"


class PermissionResolver:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def resolve(self, user_id: str) -> frozenset[Permission]:
        by_id: dict[str, Permission] = {}
        for perm in self.store.get_permissions(user_id):
            by_id.setdefault(perm.id, perm)
        return frozenset(by_id.values())


def has_permission(permissions: Iterable[Permission], name: str) -> bool:
    return any(p.name == name for p in permissions)
