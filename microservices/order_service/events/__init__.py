"""
Order Service Events Module

Event models and post-commit dispatch for order writes
"""

from .models import OrderEvent, OrderEventType
from .publishers import RecordingEventBus, dispatch_post_commit, log_order_event

__all__ = [
    "OrderEvent",
    "OrderEventType",
    "RecordingEventBus",
    "dispatch_post_commit",
    "log_order_event",
]
