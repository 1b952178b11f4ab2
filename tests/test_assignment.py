"""
Tests for the Assignment Service.

Validates:
- Claim, release and reassign
- At most one operator wins a concurrent claim
- Stale reads are caught at commit time
- Terminal items cannot change owner
"""

from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from agency_desk.domain.errors import (
    InvalidTransition,
    ItemNotFound,
    NotOwner,
    StaleOwnership,
    Unauthorized,
)
from agency_desk.domain.schema import Actor, ItemKind, ItemRef, Request, Role, Transaction
from agency_desk.notifications.sink import MemorySink, Notifier
from agency_desk.services.assignment import AssignmentService
from agency_desk.store.service import SqlItemStore

CHEF = Actor(id="chef-1", role=Role.CHEF_AGENCE)
SOUS = Actor(id="sous-1", role=Role.SOUS_ADMIN)
ADMIN = Actor(id="admin-1", role=Role.ADMIN_GENERAL)
AGENT = Actor(id="agent-1", role=Role.AGENT)


def _new_txn() -> Transaction:
    return Transaction(agent_id=AGENT.id, op_type_id="depot", principal_amount=Decimal("5000"))


class StaleReadStore:
    """Delegates to a real store but serves one frozen snapshot on ``get``."""

    def __init__(self, store, snapshot):
        self._store = store
        self._snapshot = snapshot

    def get(self, kind, item_id):
        return self._snapshot

    def __getattr__(self, name):
        return getattr(self._store, name)


class TestClaim:
    """Claiming items from the queue."""

    def setup_method(self):
        self.store = SqlItemStore.in_memory()
        self.sink = MemorySink()
        self.service = AssignmentService(self.store, notifier=Notifier([self.sink]))
        self.txn = self.store.insert(_new_txn())
        self.ref = self.txn.ref

    def teardown_method(self):
        self.store.dispose()

    def test_claim_sets_owner(self):
        """A claim records the owner and moves the item to assigned."""
        item = self.service.claim(self.ref, CHEF)
        assert item.assigned_to == CHEF.id
        assert item.status.value == "assigned"

    def test_claim_emits_event(self):
        """A claim is reported once with its status change."""
        self.service.claim(self.ref, CHEF)
        assert len(self.sink.events) == 1
        event = self.sink.events[0]
        assert event.action == "assign"
        assert event.actor_id == CHEF.id
        assert (event.from_status, event.to_status) == ("unassigned", "assigned")

    def test_second_claim_is_stale(self):
        """A second operator loses the claim and the first keeps it."""
        self.service.claim(self.ref, CHEF)
        with pytest.raises(StaleOwnership) as excinfo:
            self.service.claim(self.ref, SOUS)
        assert excinfo.value.recoverable
        assert self.store.get(ItemKind.TRANSACTION, self.txn.id).assigned_to == CHEF.id

    def test_reclaim_own_item_is_stale(self):
        """Claiming an item already held is stale, even for its owner."""
        self.service.claim(self.ref, CHEF)
        with pytest.raises(StaleOwnership):
            self.service.claim(self.ref, CHEF)

    def test_agent_cannot_claim(self):
        """Agents are refused and the item stays unowned."""
        with pytest.raises(Unauthorized):
            self.service.claim(self.ref, AGENT)
        assert self.store.get(ItemKind.TRANSACTION, self.txn.id).assigned_to is None

    def test_missing_item(self):
        """Claiming an unknown item raises ItemNotFound."""
        with pytest.raises(ItemNotFound):
            self.service.claim(ItemRef(kind=ItemKind.TRANSACTION, id="missing"), CHEF)

    def test_stale_read_loses_at_commit(self):
        """An operator acting on an old snapshot loses at commit time."""
        snapshot = self.store.get(ItemKind.TRANSACTION, self.txn.id)
        self.service.claim(self.ref, SOUS)

        stale = AssignmentService(StaleReadStore(self.store, snapshot))
        with pytest.raises(StaleOwnership):
            stale.claim(self.ref, CHEF)
        assert self.store.get(ItemKind.TRANSACTION, self.txn.id).assigned_to == SOUS.id

    def test_terminal_item_cannot_be_claimed(self):
        """A decided item cannot be claimed."""
        self.service.claim(self.ref, CHEF)
        self.store.set_terminal(ItemKind.TRANSACTION, self.txn.id, CHEF.id, "validated", {})
        with pytest.raises(InvalidTransition):
            self.service.claim(self.ref, SOUS)

    def test_requests_use_the_same_protocol(self):
        """Support requests are claimed the same way as transactions."""
        request = self.store.insert(Request(requester_id="u1", type="general", subject="PIN"))
        item = self.service.claim(request.ref, SOUS)
        assert item.assigned_to == SOUS.id
        with pytest.raises(StaleOwnership):
            self.service.claim(request.ref, CHEF)


class TestConcurrentClaims:
    """Many operators race for the same item against a shared database file."""

    def test_exactly_one_winner(self, tmp_path):
        """Exactly one of many concurrent claims succeeds."""
        store = SqlItemStore(f"sqlite:///{tmp_path / 'desk.db'}")
        store.initialize()
        txn = store.insert(_new_txn())
        service = AssignmentService(store)

        operators = [Actor(id=f"op-{i}", role=Role.SOUS_ADMIN) for i in range(8)]
        barrier = threading.Barrier(len(operators))
        winners: list[str] = []
        losers: list[str] = []
        lock = threading.Lock()

        def attempt(actor: Actor) -> None:
            barrier.wait()
            try:
                service.claim(txn.ref, actor)
            except StaleOwnership:
                with lock:
                    losers.append(actor.id)
            else:
                with lock:
                    winners.append(actor.id)

        threads = [threading.Thread(target=attempt, args=(op,)) for op in operators]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(losers) == len(operators) - 1
        assert store.get(ItemKind.TRANSACTION, txn.id).assigned_to == winners[0]
        store.dispose()


class TestRelease:
    """Giving a claimed item back to the queue."""

    def setup_method(self):
        self.store = SqlItemStore.in_memory()
        self.service = AssignmentService(self.store)
        self.txn = self.store.insert(_new_txn())
        self.service.claim(self.txn.ref, CHEF)

    def teardown_method(self):
        self.store.dispose()

    def test_owner_releases(self):
        """The owner's release clears the assignee."""
        item = self.service.release(self.txn.ref, CHEF)
        assert item.assigned_to is None
        assert item.status.value == "unassigned"

    def test_released_item_can_be_claimed_again(self):
        """A released item is claimable by anyone."""
        self.service.release(self.txn.ref, CHEF)
        assert self.service.claim(self.txn.ref, SOUS).assigned_to == SOUS.id

    def test_non_owner_cannot_release(self):
        """Another operator cannot release the claim."""
        with pytest.raises(NotOwner):
            self.service.release(self.txn.ref, SOUS)

    def test_admin_cannot_release_for_someone_else(self):
        """The admin general does not release on someone's behalf."""
        with pytest.raises(NotOwner):
            self.service.release(self.txn.ref, ADMIN)

    def test_release_after_losing_ownership_is_stale(self):
        """Releasing after a reassignment is stale."""
        snapshot = self.store.get(ItemKind.TRANSACTION, self.txn.id)
        self.service.reassign(self.txn.ref, ADMIN, SOUS)
        stale = AssignmentService(StaleReadStore(self.store, snapshot))
        with pytest.raises(StaleOwnership):
            stale.release(self.txn.ref, CHEF)

    def test_unowned_item_cannot_be_released(self):
        """Releasing an unowned item raises NotOwner."""
        self.service.release(self.txn.ref, CHEF)
        with pytest.raises(NotOwner):
            self.service.release(self.txn.ref, CHEF)


class TestReassign:
    """Admin general reassignment."""

    def setup_method(self):
        self.store = SqlItemStore.in_memory()
        self.sink = MemorySink()
        self.service = AssignmentService(self.store, notifier=Notifier([self.sink]))
        self.txn = self.store.insert(_new_txn())

    def teardown_method(self):
        self.store.dispose()

    def test_admin_reassigns_owned_item(self):
        """The admin general moves an item and the previous owner is reported."""
        self.service.claim(self.txn.ref, CHEF)
        item = self.service.reassign(self.txn.ref, ADMIN, SOUS)
        assert item.assigned_to == SOUS.id
        event = self.sink.events[-1]
        assert event.details == {"previous_owner": CHEF.id, "new_owner": SOUS.id}

    def test_admin_assigns_unowned_item(self):
        """Reassigning an unowned item assigns it."""
        item = self.service.reassign(self.txn.ref, ADMIN, CHEF)
        assert item.assigned_to == CHEF.id
        assert item.status.value == "assigned"

    def test_only_admin_general_reassigns(self):
        """Other roles cannot reassign."""
        self.service.claim(self.txn.ref, CHEF)
        with pytest.raises(Unauthorized):
            self.service.reassign(self.txn.ref, SOUS, SOUS)

    def test_target_must_be_operator(self):
        """Items cannot be handed to an agent."""
        with pytest.raises(Unauthorized):
            self.service.reassign(self.txn.ref, ADMIN, AGENT)

    def test_terminal_item_cannot_be_reassigned(self):
        """A decided item keeps its owner."""
        self.service.claim(self.txn.ref, CHEF)
        self.store.set_terminal(ItemKind.TRANSACTION, self.txn.id, CHEF.id, "rejected", {})
        with pytest.raises(InvalidTransition):
            self.service.reassign(self.txn.ref, ADMIN, SOUS)
