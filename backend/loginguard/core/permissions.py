from typing import Literal

Permission = Literal[
    "activity.view",
    "blocklist.manage",
    "geo.manage",
    "rate_limits.manage",
    "settings.manage",
    "lockouts.manage",
]

PERMISSIONS_BY_ROLE: dict[str, set[Permission]] = {
    "viewer": set(),
    "auditor": {"activity.view"},
    "security-admin": {
        "activity.view",
        "blocklist.manage",
        "geo.manage",
        "rate_limits.manage",
        "lockouts.manage",
    },
    "root-admin": {
        "activity.view",
        "blocklist.manage",
        "geo.manage",
        "rate_limits.manage",
        "settings.manage",
        "lockouts.manage",
    },
}


def normalize_role(role: str | None) -> str:
    value = (role or "").strip().lower()
    if value in PERMISSIONS_BY_ROLE:
        return value
    return "viewer"


def has_permission(role: str | None, permission: Permission) -> bool:
    normalized = normalize_role(role)
    return permission in PERMISSIONS_BY_ROLE.get(normalized, set())
