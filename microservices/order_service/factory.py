"""
Order Service Factory

Factory functions for creating service instances with real dependencies.
This is the ONLY place that imports I/O-dependent modules.

Usage:
    from .factory import create_order_service
    service = create_order_service(config, cache=cache)
"""
from typing import List, Optional

from core.config import ShopConfig
from core.distributed_lock import DistributedLockManager
from core.ttl_cache import TTLCache

from .events.publishers import log_order_event
from .order_service import OrderService


def create_order_service(
    config: Optional[ShopConfig] = None,
    cache: Optional[TTLCache] = None,
    post_commit_handlers: Optional[List] = None,
    repository=None,
    locks: Optional[DistributedLockManager] = None,
) -> OrderService:
    """
    Create OrderService with real dependencies.

    This function imports the real repository (which has I/O dependencies).
    Use this in production, NOT in tests.

    Args:
        config: Platform configuration
        cache: Shared read cache
        post_commit_handlers: Extra handlers run after each committed write
        repository: Existing repository to share (e.g. with payment service)
        locks: Charge lock manager; built over the repository's database when omitted

    Returns:
        Configured OrderService instance
    """
    if repository is None:
        # Import real repository here (not at module level)
        from .order_repository import OrderRepository

        repository = OrderRepository(config=config.infrastructure if config else None)

    if locks is None:
        from core.distributed_lock import PostgresLockStore

        locks = DistributedLockManager(
            PostgresLockStore(repository.db),
            instance_id=config.instance_id if config else None,
            default_ttl=config.scheduler.lock_ttl_seconds if config else 60,
        )

    return OrderService(
        repository=repository,
        cache=cache,
        post_commit_handlers=[log_order_event, *(post_commit_handlers or [])],
        locks=locks,
    )
