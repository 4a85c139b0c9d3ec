"""
Ledgerline - Match Event Publisher

In-process publication of three-way match status changes. Events are
handed over only after the state change has committed; a failing
subscriber is logged and does not affect the others.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from ledgerline.models.procurement import MatchStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchStateChanged:
    match_id: uuid.UUID
    from_status: Optional[MatchStatus]
    to_status: MatchStatus
    actor: Optional[str]
    discrepancy_summary: Dict[str, int] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


MatchEventHandler = Callable[[MatchStateChanged], Awaitable[None]]


class MatchEventPublisher:
    """Fans match events out to registered async subscribers."""

    def __init__(self):
        self._handlers: List[MatchEventHandler] = []

    def subscribe(self, handler: MatchEventHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: MatchEventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, events: List[MatchStateChanged]) -> None:
        for event in events:
            from_value = event.from_status.value if event.from_status else "new"
            logger.info(
                f"Match {event.match_id}: {from_value} -> {event.to_status.value} "
                f"by {event.actor or 'system'} {event.discrepancy_summary}"
            )
            for handler in list(self._handlers):
                try:
                    await handler(event)
                except Exception as e:
                    # The match is already committed; delivery failures are reported only
                    logger.error(f"Match event handler {handler!r} failed for {event.match_id}: {e}")


match_event_publisher = MatchEventPublisher()
