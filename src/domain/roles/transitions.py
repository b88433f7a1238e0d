from dataclasses import dataclass
from typing import Any

from loguru import logger

from src.domain.roles.resolver import resolve
from src.domain.roles.taxonomy import Role, get_transition_rule, is_valid_role, role_index


@dataclass(frozen=True)
class TransitionDecision:
    allowed: bool
    reason: str
    required_role: Role | None = None
    insufficient_privilege: bool = False


def can_change_role(
    from_role: Any,
    new_role: Any,
    acting_admin: Any = None,
    *,
    log_rejection: bool = False,
) -> TransitionDecision:
    """Decides whether a role change is permitted by the transition matrix.

    Args:
        from_role: The user's current role value.
        new_role: The requested role value.
        acting_admin: Optional record of the actor (any shape the resolver accepts).
            When supplied, its resolved role must rank at least the rule's required role.
        log_rejection: Emit a warning for rejected decisions.

    Returns:
        TransitionDecision: ``allowed`` plus a human-readable reason suitable for
        audit logs and API error bodies. A missing matrix entry is a rejection.
    """
    decision = _decide(from_role, new_role, acting_admin)
    if log_rejection and not decision.allowed:
        logger.warning(f"Rejected role transition {from_role} -> {new_role}: {decision.reason}")
    return decision


def _decide(from_role: Any, new_role: Any, acting_admin: Any) -> TransitionDecision:
    invalid = [str(value) for value in (from_role, new_role) if not is_valid_role(value)]
    if invalid:
        return TransitionDecision(allowed=False, reason=f"Invalid roles: {', '.join(invalid)}")

    if from_role == new_role:
        return TransitionDecision(allowed=True, reason="No change")

    rule = get_transition_rule(from_role, new_role)
    if rule is None:
        return TransitionDecision(allowed=False, reason=f"Transition not defined in matrix: {from_role} → {new_role}")

    if not rule.allowed:
        return TransitionDecision(allowed=False, reason=rule.reason, required_role=rule.required_role)

    if rule.required_role is not None and acting_admin is not None:
        actor_role = resolve(acting_admin).role
        if role_index(actor_role) < role_index(rule.required_role):
            return TransitionDecision(
                allowed=False,
                reason=f"Insufficient privileges: requires {rule.required_role.value} or higher",
                required_role=rule.required_role,
                insufficient_privilege=True,
            )

    return TransitionDecision(allowed=True, reason=rule.reason, required_role=rule.required_role)
