"""
Validation Service — terminal transitions for claimed items.

    validate  transaction  ASSIGNED -> VALIDATED   ledger: commit + credit commission
    reject    transaction  ASSIGNED -> REJECTED    ledger: release reservation
    resolve   request      ASSIGNED -> RESOLVED
    close     request      ASSIGNED -> CLOSED

Only the item's owner may finish it. Repeating a transition that already
happened (same action, same operator) is a no-op success and re-delivers
the same keyed settlement instruction, which the ledger ignores; moving a
terminal item to a different outcome raises ``InvalidTransition``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from agency_desk.domain.errors import (
    InvalidTransition,
    ItemNotFound,
    MissingReason,
    NotOwner,
    StaleOwnership,
)
from agency_desk.domain.schema import (
    CLOSE_REASON_LABELS,
    Actor,
    ClaimableItem,
    CloseReason,
    ItemKind,
    ItemRef,
    Outcome,
    Request,
    RequestStatus,
    SettlementAction,
    SettlementInstruction,
    Transaction,
    TransactionStatus,
    TransitionEvent,
)
from agency_desk.governance.authorization import AuthorizationTable, authorization_table
from agency_desk.ledger.client import LedgerClient
from agency_desk.notifications.sink import Notifier
from agency_desk.queue.claimable import ItemAction, machine_for, ownership_of
from agency_desk.store.base import ItemStore

logger = logging.getLogger(__name__)

_TARGET_STATUS: dict[ItemAction, str] = {
    ItemAction.VALIDATE: TransactionStatus.VALIDATED.value,
    ItemAction.REJECT: TransactionStatus.REJECTED.value,
    ItemAction.RESOLVE: RequestStatus.RESOLVED.value,
    ItemAction.CLOSE: RequestStatus.CLOSED.value,
}


def _require_text(value: str | None, message: str) -> str:
    text = (value or "").strip()
    if not text:
        raise MissingReason(message)
    return text


def close_reason_text(reason: CloseReason | str | None, detail: str | None = None) -> str:
    """
    Final text stored when closing a request.

    A catalog code maps to its label; ``other`` requires ``detail``. Any other
    non-empty string is kept as free text.

    Raises:
        MissingReason: If no usable reason is given.
    """
    if isinstance(reason, str) and not isinstance(reason, CloseReason):
        try:
            reason = CloseReason(reason.strip())
        except ValueError:
            return _require_text(reason, "A closing reason is required")

    if reason is None:
        raise MissingReason("A closing reason is required")
    if reason == CloseReason.OTHER:
        return _require_text(detail, "Closing reason 'other' needs an explanation")
    return CLOSE_REASON_LABELS[reason]


class ValidationService:
    """
    Terminal transitions and their ledger side effects.

    Usage:
        service = ValidationService(store, ledger)
        outcome = service.validate(txn.ref, operator)
        outcome.settlement  # the commit instruction sent to the ledger
    """

    def __init__(
        self,
        store: ItemStore,
        ledger: LedgerClient,
        authorization: AuthorizationTable | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.authorization = authorization or authorization_table
        self.notifier = notifier or Notifier()

    # ── Transactions ────────────────────────────────────────────

    def validate(self, ref: ItemRef, actor: Actor) -> Outcome:
        """
        Validate a claimed transaction.

        Raises:
            NotOwner: If the caller does not own the transaction.
            InvalidTransition: If it was already rejected.
            StaleOwnership: If ownership changed before the update committed.
        """
        return self._finish(ref, actor, ItemAction.VALIDATE, {"validator_id": actor.id})

    def reject(self, ref: ItemRef, actor: Actor, reason: str) -> Outcome:
        """
        Reject a claimed transaction, restoring the agent's reservation.

        Raises:
            MissingReason: If ``reason`` is empty.
            NotOwner: If the caller does not own the transaction.
            InvalidTransition: If it was already validated.
        """
        text = _require_text(reason, "A rejection reason is required")
        return self._finish(
            ref, actor, ItemAction.REJECT,
            {"validator_id": actor.id, "rejection_reason": text},
        )

    # ── Requests ────────────────────────────────────────────────

    def resolve(self, ref: ItemRef, actor: Actor, response: str) -> Outcome:
        """Answer a claimed support request."""
        text = _require_text(response, "A response is required to resolve a request")
        return self._finish(ref, actor, ItemAction.RESOLVE, _resolution(actor, text))

    def close(
        self,
        ref: ItemRef,
        actor: Actor,
        reason: CloseReason | str,
        detail: str | None = None,
    ) -> Outcome:
        """Close a claimed support request without resolving it."""
        text = close_reason_text(reason, detail)
        return self._finish(ref, actor, ItemAction.CLOSE, _resolution(actor, text))

    # ── Internal ────────────────────────────────────────────────

    def _finish(
        self,
        ref: ItemRef,
        actor: Actor,
        action: ItemAction,
        payload: dict[str, Any],
    ) -> Outcome:
        item = self._load(ref)
        machine = machine_for(ref.kind)
        target = _TARGET_STATUS[action]

        if machine.is_terminal(item.status):
            if item.status.value != target:
                raise InvalidTransition(
                    f"Cannot {action.value} {ref}: already {item.status.value}"
                )
            if not _applied_by(item, actor):
                raise NotOwner(f"{ref} was {target} by another operator")
            logger.info("Repeated %s on %s by %s: no-op", action.value, ref, actor.id)
            return self._outcome(item, action, changed=False)

        self.authorization.require(actor, action, ownership_of(item, actor.id))
        new_status = machine.next_status(item.status, action)

        updated = self.store.set_terminal(
            ref.kind, ref.id, owner=actor.id, new_status=new_status, payload=payload
        )
        if updated is None:
            current = self._load(ref)
            if current.status.value == target and _applied_by(current, actor):
                return self._outcome(current, action, changed=False)
            raise StaleOwnership(f"{ref} changed before it could be {target}; refresh")

        logger.info("%s %s by %s", new_status.capitalize(), ref, actor.id)
        # The transition is committed; report it even if settlement fails below.
        self.notifier.notify(
            TransitionEvent(
                item_id=ref.id,
                kind=ref.kind,
                action=action.value,
                actor_id=actor.id,
                from_status=item.status.value,
                to_status=new_status,
                details=_event_details(updated),
            )
        )
        return self._outcome(updated, action, changed=True)

    def _outcome(self, item: ClaimableItem, action: ItemAction, changed: bool) -> Outcome:
        instruction = settlement_for(item, action)
        if instruction is not None:
            self.ledger.settle(instruction)
        return Outcome(
            ref=item.ref,
            status=item.status.value,
            changed=changed,
            item=item,
            settlement=instruction,
        )

    def _load(self, ref: ItemRef) -> ClaimableItem:
        item = self.store.get(ref.kind, ref.id)
        if item is None:
            raise ItemNotFound(f"No item {ref}")
        return item


def settlement_for(item: ClaimableItem, action: ItemAction) -> SettlementInstruction | None:
    """The ledger instruction a terminal transition emits, if any."""
    if not isinstance(item, Transaction):
        return None
    if action == ItemAction.VALIDATE:
        return SettlementInstruction(
            item_id=item.id,
            action=SettlementAction.COMMIT,
            amount=item.reserved_amount,
            commission=item.commission_generated,
            payee_id=item.agent_id,
        )
    if action == ItemAction.REJECT:
        return SettlementInstruction(
            item_id=item.id,
            action=SettlementAction.RELEASE,
            amount=item.reserved_amount,
            payee_id=item.agent_id,
        )
    return None


def _applied_by(item: ClaimableItem, actor: Actor) -> bool:
    if isinstance(item, Transaction):
        return item.validator_id == actor.id
    if isinstance(item, Request):
        return item.resolved_by_id == actor.id
    return False


def _resolution(actor: Actor, text: str) -> dict[str, Any]:
    return {
        "resolved_by_id": actor.id,
        "response": text,
        "resolution_date": datetime.now(timezone.utc),
    }


def _event_details(item: ClaimableItem) -> dict[str, Any]:
    if isinstance(item, Transaction):
        return {
            "agent_id": item.agent_id,
            "commission": str(item.commission_generated),
            "rejection_reason": item.rejection_reason,
        }
    if item.kind == ItemKind.REQUEST:
        return {"requester_id": item.requester_id, "response": item.response}
    return {}
