"""
Assignment Service — claim, release and reassign queue items.

Each operation is a conditional update on the store:

    claim      succeeds only if the item is still unowned
    release    succeeds only if the caller still owns it
    reassign   (admin general) succeeds whatever the owner, if still open

When the precondition no longer holds at commit time the call raises
``StaleOwnership``: another operator got there first, and the caller must
refetch before retrying. Two operators can never both believe they own the
same item. Only ``assigned_to`` and the UNASSIGNED/ASSIGNED status change;
amounts, commissions and outcomes are never touched here.
"""

from __future__ import annotations

import logging

from agency_desk.domain.errors import InvalidTransition, ItemNotFound, StaleOwnership
from agency_desk.domain.schema import Actor, ClaimableItem, ItemRef, TransitionEvent
from agency_desk.governance.authorization import AuthorizationTable, authorization_table
from agency_desk.notifications.sink import Notifier
from agency_desk.queue.claimable import ItemAction, OwnershipState, machine_for, ownership_of
from agency_desk.store.base import ItemStore

logger = logging.getLogger(__name__)


class AssignmentService:
    """
    Ownership transitions for claimable items.

    Usage:
        service = AssignmentService(store)
        item = service.claim(ItemRef(kind=ItemKind.TRANSACTION, id=txn_id), operator)
    """

    def __init__(
        self,
        store: ItemStore,
        authorization: AuthorizationTable | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.authorization = authorization or authorization_table
        self.notifier = notifier or Notifier()

    def claim(self, ref: ItemRef, actor: Actor) -> ClaimableItem:
        """
        Take ownership of an unowned item.

        Raises:
            ItemNotFound: If the item does not exist.
            InvalidTransition: If the item is already terminal.
            StaleOwnership: If someone else owns it, or claimed it first.
            Unauthorized: If the actor's role cannot claim items.
        """
        item = self._load(ref)
        _reject_if_terminal(item)
        if item.assigned_to is not None:
            raise StaleOwnership(f"{ref} is already assigned to {item.assigned_to}")

        self.authorization.require(actor, ItemAction.ASSIGN, OwnershipState.UNOWNED)

        updated = self.store.update_if(ref.kind, ref.id, expected_owner=None, new_owner=actor.id)
        if updated is None:
            raise StaleOwnership(f"{ref} was claimed by someone else; refresh and retry")

        logger.info("Claimed %s by %s", ref, actor.id)
        self._notify(item, updated, ItemAction.ASSIGN, actor)
        return updated

    def release(self, ref: ItemRef, actor: Actor) -> ClaimableItem:
        """
        Give up the caller's own claim.

        Raises:
            ItemNotFound: If the item does not exist.
            InvalidTransition: If the item is terminal.
            NotOwner: If the caller does not own the item.
            StaleOwnership: If ownership changed before the update committed.
        """
        item = self._load(ref)
        _reject_if_terminal(item)
        self.authorization.require(actor, ItemAction.UNASSIGN, ownership_of(item, actor.id))

        updated = self.store.update_if(ref.kind, ref.id, expected_owner=actor.id, new_owner=None)
        if updated is None:
            raise StaleOwnership(f"{ref} is no longer assigned to {actor.id}; refresh")

        logger.info("Released %s by %s", ref, actor.id)
        self._notify(item, updated, ItemAction.UNASSIGN, actor)
        return updated

    def reassign(self, ref: ItemRef, admin: Actor, target: Actor) -> ClaimableItem:
        """
        Hand an item to ``target``, whoever owns it now. Admin general only.

        Raises:
            ItemNotFound: If the item does not exist.
            InvalidTransition: If the item is terminal.
            Unauthorized: If ``admin`` may not reassign, or ``target`` cannot own items.
            StaleOwnership: If the item closed before the update committed.
        """
        item = self._load(ref)
        machine_for(ref.kind).next_status(item.status, ItemAction.REASSIGN)

        self.authorization.require(admin, ItemAction.REASSIGN, ownership_of(item, admin.id))
        self.authorization.require_assignable(target)

        updated = self.store.update_if(
            ref.kind, ref.id, expected_owner=None, new_owner=target.id, any_owner=True
        )
        if updated is None:
            raise StaleOwnership(f"{ref} changed before it could be reassigned; refresh")

        logger.info(
            "Reassigned %s from %s to %s by %s", ref, item.assigned_to, target.id, admin.id
        )
        self._notify(
            item, updated, ItemAction.REASSIGN, admin,
            previous_owner=item.assigned_to, new_owner=target.id,
        )
        return updated

    # ── Internal ────────────────────────────────────────────────

    def _load(self, ref: ItemRef) -> ClaimableItem:
        item = self.store.get(ref.kind, ref.id)
        if item is None:
            raise ItemNotFound(f"No item {ref}")
        return item

    def _notify(
        self,
        before: ClaimableItem,
        after: ClaimableItem,
        action: ItemAction,
        actor: Actor,
        **details: object,
    ) -> None:
        self.notifier.notify(
            TransitionEvent(
                item_id=after.id,
                kind=after.kind,
                action=action.value,
                actor_id=actor.id,
                from_status=before.status.value,
                to_status=after.status.value,
                details=dict(details),
            )
        )


def _reject_if_terminal(item: ClaimableItem) -> None:
    machine = machine_for(item.kind)
    if machine.is_terminal(item.status):
        raise InvalidTransition(
            f"{item.ref} is {item.status.value}; terminal statuses are final"
        )
