"""
Queue Partitioner — the three views of the validation queue.

    unassigned      items nobody has claimed yet
    assigned_to_me  items the current operator owns
    all             the full input, for history and counts

Partitioning is pure and stable: it never mutates the input and keeps the
input order. Recompute it whenever the collection changes or an assignment
transition happens.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Iterable, Sequence, TypeVar

from agency_desk.domain.schema import Actor, ClaimableItem

ItemT = TypeVar("ItemT", bound=ClaimableItem)


@dataclass(frozen=True)
class QueuePartition(Generic[ItemT]):
    unassigned: tuple[ItemT, ...]
    assigned_to_me: tuple[ItemT, ...]
    all: tuple[ItemT, ...]

    def counts(self) -> dict[str, int]:
        """Tab badge counts."""
        return {
            "unassigned": len(self.unassigned),
            "assigned_to_me": len(self.assigned_to_me),
            "all": len(self.all),
        }

    def view(self, name: str) -> tuple[ItemT, ...]:
        if name not in ("unassigned", "assigned_to_me", "all"):
            raise ValueError(f"Unknown queue view: {name}")
        return getattr(self, name)


def partition(items: Iterable[ItemT], actor: Actor | str) -> QueuePartition[ItemT]:
    """Split ``items`` into the queue views for ``actor``."""
    actor_id = actor if isinstance(actor, str) else actor.id
    everything = tuple(items)
    return QueuePartition(
        unassigned=tuple(item for item in everything if item.assigned_to is None),
        assigned_to_me=tuple(item for item in everything if item.assigned_to == actor_id),
        all=everything,
    )


def sort_recent_first(items: Sequence[ItemT]) -> list[ItemT]:
    """Reverse-chronological by ``created_at``; ties keep their input order."""
    return sorted(items, key=lambda item: item.created_at, reverse=True)
