"""Best-effort publish/subscribe used by the state machine, watcher and coordinator.

Delivery contract: subscribers are invoked synchronously in subscription order.
A subscriber that raises is logged and skipped; it never prevents delivery to
the remaining subscribers and never propagates to the publisher.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger("events")

Subscriber = Callable[[Any], None]


class Notifier:
    def __init__(self, name: str, events: set[str] | frozenset[str]) -> None:
        self.name = name
        self._events = frozenset(events)
        self._subscribers: dict[str, list[Subscriber]] = {event: [] for event in self._events}

    def _check_event(self, event: str) -> None:
        if event not in self._events:
            raise ValueError(f"Unknown {self.name} event: {event}")

    def subscribe(self, event: str, callback: Subscriber) -> None:
        self._check_event(event)
        self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: Subscriber) -> None:
        self._check_event(event)
        try:
            self._subscribers[event].remove(callback)
        except ValueError:
            pass

    def subscriber_count(self, event: str) -> int:
        self._check_event(event)
        return len(self._subscribers[event])

    def notify(self, event: str, payload: Any) -> int:
        """Deliver *payload* to every subscriber of *event*; return the failure count."""
        self._check_event(event)
        failures = 0
        for callback in list(self._subscribers[event]):
            try:
                callback(payload)
            except Exception as exc:
                failures += 1
                log.warning(
                    "subscriber_failed",
                    notifier=self.name,
                    notify_event=event,
                    subscriber=getattr(callback, "__qualname__", repr(callback)),
                    error=str(exc),
                )
        return failures
