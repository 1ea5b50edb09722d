#!/usr/bin/env python3
"""
Core Module

Shared infrastructure for the order and payment services.

COMPONENTS:
    - config/: Environment-driven dataclass configuration (python-dotenv)
    - logger.py: Service logger setup
    - postgres_client.py: asyncpg pool wrapper
    - distributed_lock.py: Lease-based locks shared across process instances
    - ttl_cache.py: Injected TTL cache and fixed-window rate limiter

USAGE:
    from core.config import get_settings
    from core.distributed_lock import DistributedLockManager, PostgresLockStore
"""

__version__ = "1.0.0"
