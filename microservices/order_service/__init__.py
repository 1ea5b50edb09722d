"""
Order Service

Dropship order lifecycle for the payment engine.

Features:
- Order aggregate with items, pricing, embedded payment and timeline
- Item decisions by staff and customers
- Exactly-once hold -> ready_to_charge transition
- Post-commit handlers for order events
"""

__version__ = "1.0.0"
