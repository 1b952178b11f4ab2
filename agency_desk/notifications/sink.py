"""
Transition notifications.

Every transition is reported to a sink (audit trail, operator alerts).
Delivery is fire-and-forget: a failing sink is logged and never blocks or
rolls back the transition that triggered it.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

import structlog

from agency_desk.domain.schema import TransitionEvent

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def publish(self, event: TransitionEvent) -> None: ...


class StructlogSink:
    """Writes each transition as a structured log event."""

    def __init__(self, event_name: str = "agency_desk.transition") -> None:
        self.event_name = event_name
        self._log = structlog.get_logger("agency_desk.audit")

    def publish(self, event: TransitionEvent) -> None:
        self._log.info(
            self.event_name,
            item_id=event.item_id,
            kind=event.kind.value,
            action=event.action,
            actor_id=event.actor_id,
            from_status=event.from_status,
            to_status=event.to_status,
            occurred_at=event.occurred_at.isoformat(),
            **event.details,
        )


class MemorySink:
    """Keeps events in a list."""

    def __init__(self) -> None:
        self.events: list[TransitionEvent] = []

    def publish(self, event: TransitionEvent) -> None:
        self.events.append(event)


class Notifier:
    """Fans an event out to every sink, isolating sink failures."""

    def __init__(self, sinks: Iterable[NotificationSink] | None = None) -> None:
        self.sinks = list(sinks) if sinks is not None else []
        self.failures = 0

    def notify(self, event: TransitionEvent) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event)
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                logger.warning(
                    "Notification sink %s failed for %s/%s: %s",
                    type(sink).__name__, event.kind.value, event.item_id, exc,
                )
