"""
Authorization Table — who may do what to a claimable item.

Every assignment and terminal transition is checked against one explicit
table keyed by ``(role, action, ownership)``, instead of re-deriving role
rules per screen. Decisions are:

- AUTHORIZED: proceed
- NOT_OWNER: the role may perform the action, but only on items it owns
- FORBIDDEN: the role may never perform the action

Policy:
- any operator may self-claim an unowned item
- only the owner may release a claim
- only the owner may validate, reject, resolve or close
- only the admin general may force-assign an item to someone else,
  whether or not it is already owned

Desk-wide capabilities (editing operation types, recharge decisions,
commission transfers) are kept in a second table keyed by role.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from agency_desk.domain.errors import NotOwner, Unauthorized
from agency_desk.domain.schema import OPERATOR_ROLES, Actor, Role
from agency_desk.queue.claimable import TERMINAL_ACTIONS, ItemAction, OwnershipState

logger = logging.getLogger(__name__)


class AuthorizationDecision(str, Enum):
    """Result of an authorization check."""

    AUTHORIZED = "authorized"
    NOT_OWNER = "not_owner"
    FORBIDDEN = "forbidden"


@dataclass
class AuthorizationResult:
    """Result of checking one action against the table."""

    decision: AuthorizationDecision
    role: Role
    action: ItemAction
    ownership: OwnershipState
    reason: str

    @property
    def is_allowed(self) -> bool:
        return self.decision == AuthorizationDecision.AUTHORIZED


PolicyKey = tuple[Role, ItemAction, OwnershipState]


def _build_default_policy() -> dict[PolicyKey, AuthorizationDecision]:
    allow = AuthorizationDecision.AUTHORIZED
    not_owner = AuthorizationDecision.NOT_OWNER
    policy: dict[PolicyKey, AuthorizationDecision] = {}

    for role in OPERATOR_ROLES:
        policy[(role, ItemAction.ASSIGN, OwnershipState.UNOWNED)] = allow

        policy[(role, ItemAction.UNASSIGN, OwnershipState.OWNED_BY_ACTOR)] = allow
        policy[(role, ItemAction.UNASSIGN, OwnershipState.OWNED_BY_OTHER)] = not_owner
        policy[(role, ItemAction.UNASSIGN, OwnershipState.UNOWNED)] = not_owner

        for action in TERMINAL_ACTIONS:
            policy[(role, action, OwnershipState.OWNED_BY_ACTOR)] = allow
            policy[(role, action, OwnershipState.OWNED_BY_OTHER)] = not_owner
            policy[(role, action, OwnershipState.UNOWNED)] = not_owner

    for ownership in OwnershipState:
        policy[(Role.ADMIN_GENERAL, ItemAction.REASSIGN, ownership)] = allow

    return policy


DEFAULT_POLICY = _build_default_policy()

# Roles an item may be handed to.
ASSIGNABLE_ROLES = OPERATOR_ROLES


class Capability(str, Enum):
    """Desk-wide permissions that do not depend on owning an item."""

    CONFIGURE_OPERATION_TYPES = "configure_operation_types"
    REQUEST_RECHARGE = "request_recharge"
    DECIDE_RECHARGE = "decide_recharge"
    TRANSFER_COMMISSIONS = "transfer_commissions"


DEFAULT_CAPABILITIES: dict[Capability, frozenset[Role]] = {
    Capability.CONFIGURE_OPERATION_TYPES: frozenset({Role.DEVELOPPEUR, Role.ADMIN_GENERAL}),
    Capability.REQUEST_RECHARGE: frozenset({Role.AGENT}),
    Capability.DECIDE_RECHARGE: frozenset({Role.CHEF_AGENCE}),
    Capability.TRANSFER_COMMISSIONS: frozenset({Role.CHEF_AGENCE}),
}


class AuthorizationTable:
    """
    Central authorization for the Assignment and Validation services.

    Anything not listed in the table is FORBIDDEN.
    """

    def __init__(
        self,
        policy: dict[PolicyKey, AuthorizationDecision] | None = None,
        capabilities: dict[Capability, frozenset[Role]] | None = None,
    ) -> None:
        self.policy = dict(policy) if policy is not None else dict(DEFAULT_POLICY)
        self.capabilities = (
            dict(capabilities) if capabilities is not None else dict(DEFAULT_CAPABILITIES)
        )

    def check(
        self,
        role: Role,
        action: ItemAction,
        ownership: OwnershipState,
    ) -> AuthorizationResult:
        """Look up the decision for one ``(role, action, ownership)`` triple."""
        decision = self.policy.get((role, action, ownership), AuthorizationDecision.FORBIDDEN)

        if decision == AuthorizationDecision.AUTHORIZED:
            reason = f"{role.value} may {action.value} an item that is {ownership.value}"
        elif decision == AuthorizationDecision.NOT_OWNER:
            reason = f"Only the current owner may {action.value} this item"
        else:
            reason = f"Role {role.value} may not {action.value} an item that is {ownership.value}"

        return AuthorizationResult(
            decision=decision,
            role=role,
            action=action,
            ownership=ownership,
            reason=reason,
        )

    def require(
        self,
        actor: Actor,
        action: ItemAction,
        ownership: OwnershipState,
    ) -> AuthorizationResult:
        """
        Check and raise on denial.

        Raises:
            NotOwner: If the action is reserved to the item's owner.
            Unauthorized: If the role may never perform the action.
        """
        result = self.check(actor.role, action, ownership)
        if result.decision == AuthorizationDecision.NOT_OWNER:
            logger.info("Denied %s by %s: not owner", action.value, actor.id)
            raise NotOwner(result.reason)
        if result.decision == AuthorizationDecision.FORBIDDEN:
            logger.warning(
                "Denied %s by %s (%s): forbidden", action.value, actor.id, actor.role.value
            )
            raise Unauthorized(result.reason)
        return result

    def require_assignable(self, target: Actor) -> None:
        """Raise Unauthorized unless ``target`` can own queue items."""
        if target.role not in ASSIGNABLE_ROLES:
            raise Unauthorized(f"Items cannot be assigned to role {target.role.value}")

    def allows(self, role: Role, capability: Capability) -> bool:
        return role in self.capabilities.get(capability, frozenset())

    def require_capability(self, actor: Actor, capability: Capability) -> None:
        """Raise Unauthorized unless the actor's role holds ``capability``."""
        if not self.allows(actor.role, capability):
            logger.warning(
                "Denied %s to %s (%s)", capability.value, actor.id, actor.role.value
            )
            raise Unauthorized(
                f"Role {actor.role.value} does not have {capability.value.replace('_', ' ')}"
            )

    def update_rule(self, key: PolicyKey, decision: AuthorizationDecision) -> None:
        self.policy[key] = decision
        logger.info("Authorization rule updated: %s -> %s", key, decision.value)


# Shared table initialized with the default policy
authorization_table = AuthorizationTable()
