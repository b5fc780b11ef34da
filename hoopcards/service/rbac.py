"""Role grants for marketplace resources.

A grant is ``resource -> {"verb:scope"}``. ``:any`` grants apply to every
record; ``:own`` grants apply only when the acting user owns the record.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

ROLE_USER = "USER"
ROLE_SELLER = "SELLER"
ROLE_ADMIN = "ADMIN"

_USER_GRANTS: Dict[str, FrozenSet[str]] = {
    "profile": frozenset({"read:own", "update:own"}),
    "favorites": frozenset({"read:own", "create:own", "delete:own"}),
    "auth": frozenset({"request:emailVerification", "logout", "change:password"}),
    "cards": frozenset({"read:own", "create:own", "update:own", "delete:own"}),
    "search": frozenset({"read:own"}),
    "trades": frozenset({"read:own", "create:own", "update:own"}),
    "purchases": frozenset({"read:own", "create:own"}),
    "payment_methods": frozenset({"read:own", "create:own", "delete:own"}),
}

_SELLER_GRANTS: Dict[str, FrozenSet[str]] = {
    **_USER_GRANTS,
    "listings": frozenset({"manage:own"}),
}

_ADMIN_GRANTS: Dict[str, FrozenSet[str]] = {
    "profile": frozenset({"read:any", "update:any", "delete:any"}),
    "users": frozenset({"manage:any"}),
    "favorites": frozenset({"read:any", "create:any", "delete:any"}),
    "auth": frozenset({"request:emailVerification", "logout", "change:password"}),
    "cards": frozenset({"read:any", "create:any", "update:any", "delete:any"}),
    "search": frozenset({"read:any"}),
    "trades": frozenset({"read:any", "create:any", "update:any"}),
    "purchases": frozenset({"read:any", "create:any"}),
    "payment_methods": frozenset({"read:own", "create:own", "delete:own"}),
}

ROLE_GRANTS: Dict[str, Dict[str, FrozenSet[str]]] = {
    ROLE_USER: _USER_GRANTS,
    ROLE_SELLER: _SELLER_GRANTS,
    ROLE_ADMIN: _ADMIN_GRANTS,
}


def can(
    role: str,
    resource: str,
    action: str,
    *,
    actor_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> bool:
    """Whether ``role`` may perform ``action`` (a bare verb) on ``resource``.

    ``actor_id``/``owner_id`` decide ``:own`` grants; an ``:any`` grant wins
    regardless of ownership. Actions without a scope (``logout``) match as-is.
    """
    grants = ROLE_GRANTS.get(role, {}).get(resource, frozenset())
    if action in grants:
        return True
    if f"{action}:any" in grants:
        return True
    if f"{action}:own" in grants:
        return bool(actor_id) and (owner_id is None or owner_id == actor_id)
    return False


def is_admin(role: Optional[str]) -> bool:
    return role == ROLE_ADMIN
