"""Async event bus for the control plane.

The controller, recovery engine and profile evaluator publish here;
the WebSocket stream and the evaluator's network-state hook subscribe.
Publishing assigns the sequence number (from the EventLog when one is
attached, from a counter otherwise) and schedules each matching callback
as its own task, so a slow or failing subscriber never holds up the
publisher or the other subscribers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Awaitable, Iterable
from uuid import uuid4

from netplane.events.log import EventLog

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

WILDCARD = "*"


@dataclass
class Subscription:
    id: str = field(default_factory=lambda: uuid4().hex)
    event_types: frozenset[str] = field(default_factory=frozenset)
    callback: EventCallback | None = None

    def matches(self, event_type: str) -> bool:
        return WILDCARD in self.event_types or event_type in self.event_types


class EventBus:
    """Publish/subscribe hub with optional persistence.

    Parameters
    ----------
    event_log:
        Where events are stored for replay. ``None`` keeps the bus
        memory-only: sequence numbers still increase but nothing can be
        replayed.
    """

    def __init__(self, event_log: EventLog | None = None) -> None:
        self._log = event_log
        self._subscriptions: dict[str, Subscription] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()
        self._counter = 0

    @property
    def persistent(self) -> bool:
        return self._log is not None

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        source_id: str | None = None,
    ) -> int:
        """Record an event and fan it out. Returns its sequence number."""
        async with self._lock:
            if self._log is None:
                self._counter += 1
                seq = self._counter
            else:
                seq = await self._log.append(event_type, payload, source_id=source_id)

        event = {
            "seq": seq,
            "event_type": event_type,
            "payload": payload,
            "source_id": source_id,
        }
        for sub in list(self._subscriptions.values()):
            if sub.callback is not None and sub.matches(event_type):
                self._dispatch(sub, event)
        return seq

    def _dispatch(self, sub: Subscription, event: dict[str, Any]) -> None:
        assert sub.callback is not None
        task = asyncio.ensure_future(sub.callback(event))
        self._pending.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "Subscriber %s failed on %s (seq %s)",
                    sub.id, event["event_type"], event["seq"],
                    exc_info=exc,
                )

        task.add_done_callback(_done)

    def subscribe(
        self,
        event_types: Iterable[str],
        callback: EventCallback,
    ) -> Subscription:
        """Call *callback* for every event whose type is in *event_types*.

        Pass ``["*"]`` to receive everything. Keep the returned
        ``Subscription`` to unsubscribe later.
        """
        sub = Subscription(event_types=frozenset(event_types), callback=callback)
        self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    async def drain(self) -> None:
        """Wait for callbacks that are already scheduled to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def replay(
        self,
        since_seq: int,
        event_types: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Stored events after *since_seq*; always empty for a memory-only bus."""
        if self._log is None:
            return []
        return await self._log.replay(since_seq, event_types=event_types, limit=limit)
