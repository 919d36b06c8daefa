"""
RBAC Permission Registry — BuildBooks

Defines the canonical role-to-permission mapping for the procurement ledger
and the single capability check every service consults before acting.
Per-actor grants/revokes travel with the actor (they are issued by the
external identity service), so nothing here reads global session state.

Permission string format: {module}.{action}
"""
from __future__ import annotations

import dataclasses
from typing import Protocol

from buildbooks.errors import PermissionDeniedError

# ---------------------------------------------------------------------------
# Modules and actions
# ---------------------------------------------------------------------------

MODULES: tuple[str, ...] = (
    "chart_of_accounts",
    "purchase_orders",
    "inventory",
    "journal_vouchers",
)

ACTIONS: tuple[str, ...] = ("view", "create", "edit", "delete")

ALL_PERMISSIONS: list[str] = sorted(
    f"{module}.{action}" for module in MODULES for action in ACTIONS
)


def _grant(module: str, *actions: str) -> set[str]:
    return {f"{module}.{action}" for action in actions}


# ---------------------------------------------------------------------------
# Role → Permissions mapping (source of truth)
# ---------------------------------------------------------------------------

ROLE_PERMISSIONS: dict[str, set[str]] = {
    # ── Administrator ────────────────────────────────────────────────────
    # Full access to everything.
    "admin": set(ALL_PERMISSIONS),

    # ── Accountant ───────────────────────────────────────────────────────
    # Maintains the chart of accounts, receives goods, posts vouchers.
    # Cannot delete purchase orders.
    "accountant": (
        _grant("chart_of_accounts", *ACTIONS)
        | _grant("purchase_orders", "view", "create", "edit")
        | _grant("inventory", *ACTIONS)
        | _grant("journal_vouchers", *ACTIONS)
    ),

    # ── Project Manager ──────────────────────────────────────────────────
    # Raises and approves purchase orders for their projects.  Cannot
    # receive goods (no inventory/journal rights), so cannot complete.
    "project_manager": (
        _grant("chart_of_accounts", "view")
        | _grant("purchase_orders", "view", "create", "edit")
        | _grant("inventory", "view")
    ),

    # ── Viewer ───────────────────────────────────────────────────────────
    # Read-only.
    "viewer": {f"{module}.view" for module in MODULES},
}

VALID_ROLES: list[str] = sorted(ROLE_PERMISSIONS.keys())


def get_role_permissions(role: str) -> set[str]:
    """Return the base permission set for a role, or empty set if unknown."""
    return ROLE_PERMISSIONS.get(role, set())


# ---------------------------------------------------------------------------
# Permission gate
# ---------------------------------------------------------------------------


class PermissionGate(Protocol):
    def has_permission(self, module: str, action: str) -> bool: ...


@dataclasses.dataclass(frozen=True)
class Actor:
    """The caller on whose behalf a core operation runs.

    Passed explicitly into every service call.
    """
    user_id: str
    username: str
    role: str
    grants: frozenset[str] = frozenset()
    revokes: frozenset[str] = frozenset()

    @property
    def permissions(self) -> set[str]:
        """Role base permissions, plus grants, minus revokes."""
        effective = get_role_permissions(self.role) | set(self.grants)
        return effective - set(self.revokes)

    def has_permission(self, module: str, action: str) -> bool:
        return f"{module}.{action}" in self.permissions


def missing_permissions(gate: PermissionGate, *permissions: str) -> list[str]:
    missing = []
    for permission in permissions:
        module, _, action = permission.rpartition(".")
        if not gate.has_permission(module, action):
            missing.append(permission)
    return sorted(missing)


def check_permissions(gate: PermissionGate, *permissions: str) -> None:
    """Raise ``PermissionDeniedError`` unless *gate* holds ALL *permissions*."""
    missing = missing_permissions(gate, *permissions)
    if missing:
        raise PermissionDeniedError(
            f"Missing permissions: {', '.join(missing)}.",
            missing=missing,
        )

