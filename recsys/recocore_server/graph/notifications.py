"""
Change notification fan-out.

The ChangeBus hands every ChangeNotification to each subscriber in
subscription order. A failing subscriber is retried with backoff; when it
keeps failing the notification is logged and dropped for that subscriber
only. Derived views recover from such drops through the reconciliation
sweep.

Invariants:
    - Delivery is at-least-once per subscriber while it eventually succeeds
    - A subscriber failure never propagates to the graph mutation
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from ..retry import RetryPolicy, retry_async
from .models import ChangeNotification

logger = logging.getLogger(__name__)

Subscriber = Callable[[ChangeNotification], Awaitable[None]]


class ChangeBus:
    """In-process publish/subscribe for graph changes."""

    def __init__(self, retry_policy: RetryPolicy | None = None) -> None:
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay_s=0.05)
        self._subscribers: list[tuple[str, Subscriber]] = []
        self.dropped = 0

    def subscribe(self, handler: Subscriber, name: str | None = None) -> None:
        """Register a coroutine function called with each notification."""
        self._subscribers.append((name or getattr(handler, "__qualname__", repr(handler)), handler))

    async def publish(self, notification: ChangeNotification) -> None:
        for name, handler in self._subscribers:
            try:
                await retry_async(
                    lambda: handler(notification),
                    self.retry_policy,
                    retry_on=(Exception,),
                    description=f"notify {name}",
                )
            except Exception:
                self.dropped += 1
                logger.exception(
                    "Subscriber failed to handle change notification",
                    extra={
                        "subscriber": name,
                        "entity_id": notification.entity_id,
                        "version": notification.version,
                        "kind": notification.kind.value,
                    },
                )
