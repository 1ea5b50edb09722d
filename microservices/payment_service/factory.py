"""
Payment Service Factory

Factory functions for creating payment services with real dependencies.
This is the ONLY module that imports concrete I/O implementations.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from core.config import ShopConfig, get_settings
from core.distributed_lock import DistributedLockManager
from core.ttl_cache import TTLCache

from microservices.order_service.factory import create_order_service
from microservices.order_service.order_service import OrderService

from .charge_scheduler import ChargeScheduler
from .payment_service import PaymentService
from .protocols import PaymentGatewayProtocol
from .refund_service import RefundService
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class PaymentComponents:
    """Everything the payment microservice wires together"""
    order_service: OrderService
    payment_service: PaymentService
    refund_service: RefundService
    scheduler: ChargeScheduler
    locks: DistributedLockManager
    gateway: PaymentGatewayProtocol
    lock_store: object = None


def create_gateway(config: Optional[ShopConfig] = None) -> PaymentGatewayProtocol:
    from .clients.hyp_client import HypPayClient

    config = config or get_settings()
    if not config.gateway.is_configured:
        logger.warning("⚠️  Hyp Pay credentials missing; gateway calls will fail until HYP_MASOF/HYP_PASSP are set")
    return HypPayClient(config=config.gateway)


def create_payment_components(
    config: Optional[ShopConfig] = None,
    cache: Optional[TTLCache] = None,
    gateway: Optional[PaymentGatewayProtocol] = None,
) -> PaymentComponents:
    """
    Build payment, refund and scheduler services over the shared database.

    The order repository and the lock store share one connection pool.

    Args:
        config: Platform configuration
        cache: Shared read cache for orders
        gateway: Gateway override (defaults to HypPayClient)
    """
    from core.distributed_lock import PostgresLockStore
    from core.postgres_client import AsyncPostgresClient
    from microservices.order_service.order_repository import OrderRepository

    config = config or get_settings()
    db = AsyncPostgresClient("payment_service", config=config.infrastructure)
    repository = OrderRepository(db=db)

    lock_store = PostgresLockStore(db)
    locks = DistributedLockManager(
        lock_store,
        instance_id=config.instance_id,
        default_ttl=config.scheduler.lock_ttl_seconds,
    )
    order_service = create_order_service(config=config, cache=cache, repository=repository, locks=locks)
    gateway = gateway or create_gateway(config)
    retry_policy = RetryPolicy(
        max_retries=config.scheduler.max_retries,
        base_minutes=config.scheduler.backoff_base_minutes,
    )

    payment_service = PaymentService(order_service, gateway, locks=locks, retry_policy=retry_policy)
    refund_service = RefundService(order_service, gateway, locks=locks)
    scheduler = ChargeScheduler(repository, payment_service, locks, config=config.scheduler)

    return PaymentComponents(
        order_service=order_service,
        payment_service=payment_service,
        refund_service=refund_service,
        scheduler=scheduler,
        locks=locks,
        gateway=gateway,
        lock_store=lock_store,
    )


__all__ = ["PaymentComponents", "create_gateway", "create_payment_components"]
