"""
Order Service Event Publishers

Runs post-commit handlers for events produced by an order write. Handlers
only see events after the write committed; a failing handler is logged and
never fails the write that produced it.
"""

import logging
from typing import Iterable, List, Sequence

from .models import OrderEvent

logger = logging.getLogger(__name__)


async def dispatch_post_commit(handlers: Sequence, events: Iterable[OrderEvent]) -> int:
    """
    Invoke every handler for every event, in order.

    Returns:
        Number of successful handler invocations
    """
    delivered = 0
    for event in events:
        for handler in handlers:
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                name = getattr(handler, "__name__", handler.__class__.__name__)
                logger.error(f"❌ Post-commit handler {name} failed for {event.event_type.value}: {e}")
    return delivered


async def log_order_event(event: OrderEvent) -> None:
    """Default handler: structured log line per event"""
    logger.info(
        f"Order event {event.event_type.value} order={event.order_id}"
        + (f" item={event.item_id}" if event.item_id else "")
        + (f" payment={event.payment_status}" if event.payment_status else "")
    )


class RecordingEventBus:
    """Keeps emitted events in memory; used by tests and local runs"""

    def __init__(self):
        self.events: List[OrderEvent] = []

    async def __call__(self, event: OrderEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List[OrderEvent]:
        return [e for e in self.events if e.event_type == event_type]
