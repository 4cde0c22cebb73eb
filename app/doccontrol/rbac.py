"""
Roles, capabilities and permission checks.

Roles are rows (`roles`), capabilities are permission keys attached to roles.
ROLE_CAPABILITIES is the canonical mapping used to seed the database; runtime
checks always go through the user's persisted role permissions.

Approval policy: only superadmins hold `docs.approve` (approve + publish +
manual archive). Admins and superadmins hold `docs.review`.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify

from app.doccontrol.models import User


class RoleKey(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"

    @property
    def label(self) -> str:
        return ROLE_LABELS[self]


class Capability(str, enum.Enum):
    REVIEW = "docs.review"
    APPROVE = "docs.approve"
    MANAGE_USERS = "users.manage"


ROLE_LABELS = {
    RoleKey.USER: "User",
    RoleKey.ADMIN: "Administrator",
    RoleKey.SUPERADMIN: "Super Administrator",
}

# Ordered lowest -> highest; used for role_at_time().
ROLE_RANK = (RoleKey.USER, RoleKey.ADMIN, RoleKey.SUPERADMIN)

# Every role can use the document module; capabilities gate the lifecycle.
BASE_PERMISSIONS = ("docs.view", "docs.create", "docs.edit", "docs.download")

ROLE_CAPABILITIES: dict[RoleKey, frozenset[Capability]] = {
    RoleKey.USER: frozenset(),
    RoleKey.ADMIN: frozenset({Capability.REVIEW}),
    RoleKey.SUPERADMIN: frozenset({Capability.REVIEW, Capability.APPROVE, Capability.MANAGE_USERS}),
}

PERMISSION_NAMES = {
    "docs.view": "Docs: view",
    "docs.create": "Docs: create",
    "docs.edit": "Docs: edit drafts / attach files",
    "docs.download": "Docs: download",
    Capability.REVIEW.value: "Docs: review / verify / request revision / reject",
    Capability.APPROVE.value: "Docs: approve / publish / archive",
    Capability.MANAGE_USERS.value: "Users: manage",
}


def role_permission_keys(role: RoleKey) -> list[str]:
    return list(BASE_PERMISSIONS) + sorted(c.value for c in ROLE_CAPABILITIES[role])


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def has_capability(user: User | None, capability: Capability) -> bool:
    return user_has_permission(user, capability.value)


def role_keys(user: User | None) -> set[str]:
    if not user:
        return set()
    return {r.key for r in user.roles}


def has_role(user: User | None, role: RoleKey) -> bool:
    return role.value in role_keys(user)


def role_at_time(user: User | None) -> str:
    """Highest-ranked role the user holds right now (recorded on audit rows)."""
    if user is None:
        return "system"
    keys = role_keys(user)
    for role in reversed(ROLE_RANK):
        if role.value in keys:
            return role.value
    return RoleKey.USER.value


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return jsonify({"error": "unauthenticated", "message": "Login required."}), 401
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
