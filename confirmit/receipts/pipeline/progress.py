"""
Per-receipt progress channel.

A multicast group per receipt id. Subscribers join explicitly and leave on
disconnect; events go only to current members (no replay). The channel keeps
no outcome state, the receipt record stays the source of truth.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from confirmit.receipts.schemas import utc_now_iso

logger = logging.getLogger(__name__)

SUBSCRIBED = "subscribed"
PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"
TERMINAL_EVENTS = frozenset({COMPLETE, ERROR})


@dataclass(eq=False)
class Subscriber:
    """One connected client; ``send`` delivers a JSON-able message."""
    subscriber_id: str
    send: Callable[[dict], Awaitable[None]]
    receipts: set[str] = field(default_factory=set)


class ProgressChannel:
    def __init__(self) -> None:
        self._groups: dict[str, set[Subscriber]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, receipt_id: str, subscriber: Subscriber) -> dict:
        """Join ``receipt_id``'s group and acknowledge. Re-joining is a no-op join."""
        async with self._lock:
            self._groups.setdefault(receipt_id, set()).add(subscriber)
            subscriber.receipts.add(receipt_id)
        ack = {"receipt_id": receipt_id, "timestamp": utc_now_iso()}
        logger.debug("Subscriber %s joined %s", subscriber.subscriber_id, receipt_id)
        await subscriber.send({"event": SUBSCRIBED, "data": ack})
        return ack

    async def unsubscribe(self, receipt_id: str, subscriber: Subscriber) -> None:
        async with self._lock:
            self._leave(receipt_id, subscriber)

    async def disconnect(self, subscriber: Subscriber) -> None:
        async with self._lock:
            for receipt_id in list(subscriber.receipts):
                self._leave(receipt_id, subscriber)
        logger.debug("Subscriber %s disconnected", subscriber.subscriber_id)

    async def emit(self, receipt_id: str, event: str, data: dict[str, Any]) -> int:
        """Fan ``event`` out to the current members. Returns the delivery count."""
        async with self._lock:
            members = list(self._groups.get(receipt_id, ()))
        if not members:
            return 0

        message = {"event": event, "data": data}
        results = await asyncio.gather(
            *(member.send(message) for member in members), return_exceptions=True
        )
        delivered = 0
        for member, result in zip(members, results):
            if isinstance(result, Exception):
                logger.debug(
                    "Dropping subscriber %s from %s: %s", member.subscriber_id, receipt_id, result
                )
                await self.disconnect(member)
            else:
                delivered += 1
        return delivered

    def subscriber_count(self, receipt_id: str) -> int:
        return len(self._groups.get(receipt_id, ()))

    def _leave(self, receipt_id: str, subscriber: Subscriber) -> None:
        group = self._groups.get(receipt_id)
        if group is not None:
            group.discard(subscriber)
            if not group:
                del self._groups[receipt_id]
        subscriber.receipts.discard(receipt_id)
