"""
Claimable Item state machines.

Transactions and support requests share one shape: an item is created
UNASSIGNED, an operator claims it (ASSIGNED), and its owner moves it to a
terminal outcome.

    Transaction:  UNASSIGNED <-> ASSIGNED -> VALIDATED | REJECTED
    Request:      UNASSIGNED <-> ASSIGNED -> RESOLVED  | CLOSED

Terminal statuses are final: no further assignment or status change.
The tables below only describe which status follows which action; who may
perform the action is decided by ``agency_desk.governance.authorization``.
"""

from __future__ import annotations

import enum

from agency_desk.domain.errors import InvalidTransition
from agency_desk.domain.schema import (
    ClaimableItem,
    ItemKind,
    RequestStatus,
    TransactionStatus,
)


class ItemAction(str, enum.Enum):
    """Everything that can happen to a claimable item."""

    ASSIGN = "assign"
    UNASSIGN = "unassign"
    REASSIGN = "reassign"
    VALIDATE = "validate"
    REJECT = "reject"
    RESOLVE = "resolve"
    CLOSE = "close"


ASSIGNMENT_ACTIONS = frozenset({ItemAction.ASSIGN, ItemAction.UNASSIGN, ItemAction.REASSIGN})
TERMINAL_ACTIONS = frozenset(
    {ItemAction.VALIDATE, ItemAction.REJECT, ItemAction.RESOLVE, ItemAction.CLOSE}
)


class OwnershipState(str, enum.Enum):
    """An item's ownership as seen by one actor."""

    UNOWNED = "unowned"
    OWNED_BY_ACTOR = "owned_by_actor"
    OWNED_BY_OTHER = "owned_by_other"


def ownership_of(item: ClaimableItem, actor_id: str) -> OwnershipState:
    if item.assigned_to is None:
        return OwnershipState.UNOWNED
    if item.assigned_to == actor_id:
        return OwnershipState.OWNED_BY_ACTOR
    return OwnershipState.OWNED_BY_OTHER


class StateMachine:
    """A transition table ``(status, action) -> status`` with terminal states."""

    def __init__(
        self,
        kind: ItemKind,
        transitions: dict[tuple[str, ItemAction], str],
        terminal: frozenset[str],
    ) -> None:
        self.kind = kind
        self.transitions = transitions
        self.terminal = terminal

    def is_terminal(self, status: str) -> bool:
        return _value(status) in self.terminal

    def can(self, status: str, action: ItemAction) -> bool:
        return (_value(status), action) in self.transitions

    def next_status(self, status: str, action: ItemAction) -> str:
        """
        Return the status reached by applying ``action`` in ``status``.

        Raises:
            InvalidTransition: If the action is not allowed in that status.
        """
        current = _value(status)
        try:
            return self.transitions[(current, action)]
        except KeyError:
            if current in self.terminal:
                raise InvalidTransition(
                    f"{self.kind.value} item is {current}; terminal statuses are final"
                ) from None
            raise InvalidTransition(
                f"Cannot {action.value} a {self.kind.value} item in status {current}"
            ) from None

    def actions_from(self, status: str) -> list[ItemAction]:
        current = _value(status)
        return [action for (source, action) in self.transitions if source == current]


def _value(status: str) -> str:
    return status.value if isinstance(status, enum.Enum) else status


def _assignment_transitions(unassigned: str, assigned: str) -> dict[tuple[str, ItemAction], str]:
    return {
        (unassigned, ItemAction.ASSIGN): assigned,
        # Admin may hand an unowned item straight to someone else.
        (unassigned, ItemAction.REASSIGN): assigned,
        (assigned, ItemAction.UNASSIGN): unassigned,
        (assigned, ItemAction.REASSIGN): assigned,
    }


TRANSACTION_MACHINE = StateMachine(
    kind=ItemKind.TRANSACTION,
    transitions={
        **_assignment_transitions(
            TransactionStatus.UNASSIGNED.value, TransactionStatus.ASSIGNED.value
        ),
        (TransactionStatus.ASSIGNED.value, ItemAction.VALIDATE): TransactionStatus.VALIDATED.value,
        (TransactionStatus.ASSIGNED.value, ItemAction.REJECT): TransactionStatus.REJECTED.value,
    },
    terminal=frozenset({TransactionStatus.VALIDATED.value, TransactionStatus.REJECTED.value}),
)

REQUEST_MACHINE = StateMachine(
    kind=ItemKind.REQUEST,
    transitions={
        **_assignment_transitions(RequestStatus.UNASSIGNED.value, RequestStatus.ASSIGNED.value),
        (RequestStatus.ASSIGNED.value, ItemAction.RESOLVE): RequestStatus.RESOLVED.value,
        (RequestStatus.ASSIGNED.value, ItemAction.CLOSE): RequestStatus.CLOSED.value,
    },
    terminal=frozenset({RequestStatus.RESOLVED.value, RequestStatus.CLOSED.value}),
)

MACHINES: dict[ItemKind, StateMachine] = {
    ItemKind.TRANSACTION: TRANSACTION_MACHINE,
    ItemKind.REQUEST: REQUEST_MACHINE,
}


def machine_for(kind: ItemKind) -> StateMachine:
    return MACHINES[ItemKind(kind)]


def is_terminal(item: ClaimableItem) -> bool:
    return machine_for(item.kind).is_terminal(item.status)
