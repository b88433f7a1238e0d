from enum import StrEnum
from typing import Any

from src.domain.roles.taxonomy import Role


class PermissionDomain(StrEnum):
    """Functional areas of the application that permissions are scoped to."""

    ADMIN = "ADMIN"
    USERS = "USERS"
    LISTINGS = "LISTINGS"
    MESSAGES = "MESSAGES"
    REPORTS = "REPORTS"
    SETTINGS = "SETTINGS"
    FINANCE = "FINANCE"
    INSPECTIONS = "INSPECTIONS"
    ANALYTICS = "ANALYTICS"


DOMAIN_ACTIONS: dict[PermissionDomain, tuple[str, ...]] = {
    PermissionDomain.ADMIN: (
        "ACCESS_DASHBOARD",
        "VIEW_ANALYTICS",
        "MANAGE_SYSTEM",
        "MANAGE_PERMISSIONS",
        "VIEW_LOGS",
        "IMPERSONATE_USER",
        "BULK_OPERATIONS",
    ),
    PermissionDomain.USERS: (
        "VIEW_USERS",
        "CREATE_USER",
        "EDIT_USER",
        "DELETE_USER",
        "CHANGE_ROLE",
        "VIEW_USER_DETAILS",
    ),
    PermissionDomain.LISTINGS: (
        "VIEW_OWN",
        "VIEW_ALL",
        "CREATE",
        "EDIT_OWN",
        "EDIT_ANY",
        "DELETE_OWN",
        "DELETE_ANY",
        "PUBLISH",
        "FEATURE",
        "APPROVE",
        "FLAG",
        "VIEW_DRAFT",
    ),
    PermissionDomain.MESSAGES: ("SEND", "RECEIVE", "VIEW_OWN", "VIEW_ALL", "DELETE_OWN", "DELETE_ANY"),
    PermissionDomain.REPORTS: ("GENERATE", "EXPORT", "VIEW_BASIC", "VIEW_ADVANCED"),
    PermissionDomain.SETTINGS: ("VIEW_OWN", "VIEW_SYSTEM", "EDIT_OWN", "EDIT_SYSTEM"),
    PermissionDomain.FINANCE: ("VIEW_TRANSACTIONS", "PROCESS_PAYMENTS", "ISSUE_REFUNDS", "VIEW_FINANCIAL_REPORTS"),
    PermissionDomain.INSPECTIONS: (
        "CREATE",
        "VIEW_OWN",
        "VIEW_ALL",
        "EDIT_OWN",
        "EDIT_ANY",
        "DELETE_OWN",
        "DELETE_ANY",
        "SCHEDULE",
    ),
    PermissionDomain.ANALYTICS: ("VIEW_BASIC", "VIEW_ADVANCED", "EXPORT", "CONFIGURE"),
}


def permission_id(domain: PermissionDomain | str, action: str) -> str:
    return f"{domain}:{action}"


PERMISSIONS: tuple[str, ...] = tuple(
    permission_id(domain, action) for domain, actions in DOMAIN_ACTIONS.items() for action in actions
)
_PERMISSION_SET = frozenset(PERMISSIONS)

MANAGE_PERMISSIONS = permission_id(PermissionDomain.ADMIN, "MANAGE_PERMISSIONS")
CHANGE_ROLE = permission_id(PermissionDomain.USERS, "CHANGE_ROLE")

USER_PERMISSIONS: frozenset[str] = frozenset(
    {
        "LISTINGS:VIEW_OWN",
        "LISTINGS:CREATE",
        "LISTINGS:EDIT_OWN",
        "LISTINGS:DELETE_OWN",
        "MESSAGES:SEND",
        "MESSAGES:RECEIVE",
        "MESSAGES:VIEW_OWN",
        "MESSAGES:DELETE_OWN",
        "SETTINGS:VIEW_OWN",
        "SETTINGS:EDIT_OWN",
        "INSPECTIONS:VIEW_OWN",
        "ANALYTICS:VIEW_BASIC",
    }
)

AGENT_PERMISSIONS: frozenset[str] = USER_PERMISSIONS | {
    "LISTINGS:PUBLISH",
    "LISTINGS:VIEW_DRAFT",
    "INSPECTIONS:CREATE",
    "INSPECTIONS:SCHEDULE",
    "INSPECTIONS:EDIT_OWN",
    "REPORTS:GENERATE",
    "REPORTS:VIEW_BASIC",
}

SUPPORT_PERMISSIONS: frozenset[str] = AGENT_PERMISSIONS | {
    "LISTINGS:VIEW_ALL",
    "LISTINGS:EDIT_ANY",
    "LISTINGS:FLAG",
    "LISTINGS:APPROVE",
    "MESSAGES:VIEW_ALL",
    "INSPECTIONS:VIEW_ALL",
    "REPORTS:EXPORT",
    "REPORTS:VIEW_ADVANCED",
}

ALL_PERMISSIONS: frozenset[str] = _PERMISSION_SET

# Pending agents hold the user set until approved
DEFAULT_ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.USER: USER_PERMISSIONS,
    Role.AGENT_PENDING: USER_PERMISSIONS,
    Role.AGENT: AGENT_PERMISSIONS,
    Role.SUPPORT: SUPPORT_PERMISSIONS,
    Role.ADMIN: ALL_PERMISSIONS,
    Role.SUPER_ADMIN: ALL_PERMISSIONS,
}


def is_known_permission(value: Any) -> bool:
    return isinstance(value, str) and value in _PERMISSION_SET


def split_permission(permission: str) -> tuple[str, str]:
    domain, _, action = permission.partition(":")
    return domain, action


def _humanize(action: str) -> str:
    return action.replace("_", " ").title()


def describe_catalog() -> dict[str, Any]:
    """Full permission listing for the admin permission manager."""
    permissions = []
    by_domain: dict[str, list[dict[str, str]]] = {}
    for domain, actions in DOMAIN_ACTIONS.items():
        by_domain[domain.value] = []
        for action in actions:
            entry = {
                "id": permission_id(domain, action),
                "name": _humanize(action),
                "description": f"{_humanize(action)} ({domain.value.title()})",
                "domain": domain.value,
                "action": action,
            }
            permissions.append(entry)
            by_domain[domain.value].append(entry)

    return {
        "permissions": permissions,
        "permissionsByDomain": by_domain,
        "domains": [domain.value for domain in PermissionDomain],
        "rolePermissions": {role.value: sorted(perms) for role, perms in DEFAULT_ROLE_PERMISSIONS.items()},
    }
