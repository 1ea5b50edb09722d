"""
Component Test Mocks

In-memory replacements for the I/O dependencies: the order repository,
the lock store and the card gateway. Each one keeps the atomicity its real
counterpart gets from a single SQL statement by never awaiting between
its check and its write.
"""

from .gateway_mock import FakeGateway, gateway_result
from .lock_mock import InMemoryLockStore
from .order_mock import InMemoryOrderRepository

__all__ = [
    'FakeGateway',
    'InMemoryLockStore',
    'InMemoryOrderRepository',
    'gateway_result',
]
