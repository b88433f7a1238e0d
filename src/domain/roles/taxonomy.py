from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    """Closed set of account roles, ordered by privilege in ROLE_HIERARCHY."""

    USER = "user"
    AGENT_PENDING = "agent_pending"
    AGENT = "agent"
    SUPPORT = "support"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ROLE_HIERARCHY: tuple[Role, ...] = (
    Role.USER,
    Role.AGENT_PENDING,
    Role.AGENT,
    Role.SUPPORT,
    Role.ADMIN,
    Role.SUPER_ADMIN,
)

DEFAULT_ROLE = Role.USER

_DISPLAY_NAMES: dict[Role, str] = {
    Role.USER: "User",
    Role.AGENT_PENDING: "Pending Agent",
    Role.AGENT: "Agent",
    Role.SUPPORT: "Support Staff",
    Role.ADMIN: "Administrator",
    Role.SUPER_ADMIN: "Super Administrator",
}


@dataclass(frozen=True)
class RoleTransitionRule:
    allowed: bool
    reason: str
    required_role: Role | None = None


def _allow(required_role: Role, reason: str) -> RoleTransitionRule:
    return RoleTransitionRule(allowed=True, reason=reason, required_role=required_role)


def _deny(reason: str) -> RoleTransitionRule:
    return RoleTransitionRule(allowed=False, reason=reason)


_NO_SUPER_ADMIN = _deny("Super admins cannot be created through role transitions")

ROLE_TRANSITIONS: dict[Role, dict[Role, RoleTransitionRule]] = {
    Role.USER: {
        Role.AGENT_PENDING: _allow(Role.ADMIN, "User applying to become an agent"),
        Role.AGENT: _deny("Users must go through pending agent status first"),
        Role.SUPPORT: _allow(Role.SUPER_ADMIN, "Promote user to support staff"),
        Role.ADMIN: _allow(Role.SUPER_ADMIN, "Promote user to administrator"),
        Role.SUPER_ADMIN: _NO_SUPER_ADMIN,
    },
    Role.AGENT_PENDING: {
        Role.USER: _allow(Role.ADMIN, "Reject agent application"),
        Role.AGENT: _allow(Role.ADMIN, "Approve agent application"),
        Role.SUPPORT: _deny("Pending agents must be approved first"),
        Role.ADMIN: _deny("Pending agents must be approved first"),
        Role.SUPER_ADMIN: _NO_SUPER_ADMIN,
    },
    Role.AGENT: {
        Role.USER: _allow(Role.ADMIN, "Revoke agent status"),
        Role.AGENT_PENDING: _allow(Role.ADMIN, "Suspend agent for review"),
        Role.SUPPORT: _allow(Role.SUPER_ADMIN, "Promote agent to support staff"),
        Role.ADMIN: _allow(Role.SUPER_ADMIN, "Promote agent to administrator"),
        Role.SUPER_ADMIN: _NO_SUPER_ADMIN,
    },
    Role.SUPPORT: {
        Role.USER: _allow(Role.SUPER_ADMIN, "Demote support staff to user"),
        Role.AGENT_PENDING: _deny("Support staff cannot be demoted to pending agent"),
        Role.AGENT: _allow(Role.SUPER_ADMIN, "Convert support staff to agent"),
        Role.ADMIN: _allow(Role.SUPER_ADMIN, "Promote support staff to admin"),
        Role.SUPER_ADMIN: _NO_SUPER_ADMIN,
    },
    Role.ADMIN: {
        Role.USER: _allow(Role.SUPER_ADMIN, "Demote admin to user"),
        Role.AGENT_PENDING: _deny("Admins cannot be demoted to pending agent"),
        Role.AGENT: _allow(Role.SUPER_ADMIN, "Convert admin to agent"),
        Role.SUPPORT: _allow(Role.SUPER_ADMIN, "Convert admin to support staff"),
        Role.SUPER_ADMIN: _NO_SUPER_ADMIN,
    },
    Role.SUPER_ADMIN: {
        Role.USER: _allow(Role.SUPER_ADMIN, "Demote super admin to user"),
        Role.AGENT_PENDING: _deny("Super admins cannot be demoted to pending agent"),
        Role.AGENT: _allow(Role.SUPER_ADMIN, "Convert super admin to agent"),
        Role.SUPPORT: _allow(Role.SUPER_ADMIN, "Convert super admin to support staff"),
        Role.ADMIN: _allow(Role.SUPER_ADMIN, "Demote super admin to regular admin"),
    },
}


def is_valid_role(value: Any) -> bool:
    """True only for strings naming a member of the closed role set."""
    return isinstance(value, str) and value in Role._value2member_map_


def coerce_role(value: Any) -> Role:
    """Maps any stored or transmitted value onto a Role; unknown values become USER."""
    if isinstance(value, Role):
        return value
    if is_valid_role(value):
        return Role(value)
    return DEFAULT_ROLE


def role_index(role: Any) -> int:
    """Privilege level of a role; unknown values rank with USER at 0."""
    if not is_valid_role(role):
        return 0
    return ROLE_HIERARCHY.index(Role(role))


def get_transition_rule(from_role: Any, to_role: Any) -> RoleTransitionRule | None:
    """Looks up the matrix entry for a pair of valid, distinct roles."""
    if not (is_valid_role(from_role) and is_valid_role(to_role)):
        return None
    return ROLE_TRANSITIONS.get(Role(from_role), {}).get(Role(to_role))


def role_display_name(role: Any) -> str:
    return _DISPLAY_NAMES[coerce_role(role)]


def effective_approval(role: Any, approved: Any) -> bool:
    """Approval as it applies to a role: only agents carry a stored flag, pending agents are never approved."""
    role = coerce_role(role)
    if role == Role.AGENT:
        return approved is True
    return role != Role.AGENT_PENDING
