"""
Charge Scheduler

Periodically captures orders that are ready_to_charge or due for retry.
Any number of instances may run concurrently against the same database;
the per-order lease lock guarantees a single capture in flight per order.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

from core.config import ChargeSchedulerConfig
from core.distributed_lock import DistributedLockManager

from microservices.order_service.models import utc_now
from microservices.order_service.protocols import OrderRepositoryProtocol

from .models import CaptureOutcome, ChargeRunStats
from .payment_service import PaymentService, charge_lock_key

logger = logging.getLogger(__name__)

CHARGE_JOB_ID = "charge_ready_orders"
LOCK_SWEEP_JOB_ID = "sweep_expired_locks"


class ChargeScheduler:
    """Batch capture of chargeable orders"""

    def __init__(
        self,
        repository: OrderRepositoryProtocol,
        payment_service: PaymentService,
        locks: DistributedLockManager,
        config: Optional[ChargeSchedulerConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.payment_service = payment_service
        self.locks = locks
        self.config = config or ChargeSchedulerConfig()
        self.sleep = sleep
        self.clock = clock
        self.running = False
        self.scheduler = None
        self.last_run: Optional[ChargeRunStats] = None

    async def run_once(self) -> ChargeRunStats:
        """
        Capture one batch of due orders.

        Returns:
            Counts for the run; ``already_running`` is set when another run
            in this process had not finished yet.
        """
        if self.running:
            logger.info("Charge run already in progress, skipping")
            return ChargeRunStats(already_running=True)

        self.running = True
        started = time.monotonic()
        stats = ChargeRunStats(started_at=self.clock())
        try:
            candidates = await self.repository.find_chargeable(self.clock(), self.config.batch_size)
            if not candidates:
                logger.debug("No orders ready to charge")
                return stats

            logger.info(f"Charge run: {len(candidates)} candidate order(s)")
            for index, order in enumerate(candidates):
                if index > 0 and self.config.inter_order_delay > 0:
                    await self.sleep(self.config.inter_order_delay)
                await self._charge_one(order.order_id, order.order_number, stats)

            return stats
        finally:
            stats.duration_seconds = round(time.monotonic() - started, 3)
            self.running = False
            self.last_run = stats
            if stats.processed or stats.skipped:
                logger.info(
                    f"Charge run finished: processed={stats.processed} succeeded={stats.succeeded} "
                    f"cancelled={stats.cancelled} retrying={stats.retrying} failed={stats.failed} "
                    f"skipped={stats.skipped} in {stats.duration_seconds}s"
                )

    async def _charge_one(self, order_id: str, order_number: str, stats: ChargeRunStats) -> None:
        key = charge_lock_key(order_id)
        try:
            acquired = await self.locks.acquire(key, self.config.lock_ttl_seconds)
        except Exception as e:
            # Lock store unavailable; leave the order for the next run
            logger.error(f"❌ Could not lock order {order_number} for charging: {e}")
            stats.failed += 1
            return
        if not acquired:
            logger.info(f"Order {order_number} is being charged by another instance, skipping")
            stats.skipped += 1
            return

        stats.processed += 1
        try:
            result = await self.payment_service.capture_payment(order_id)
            if result.kind == CaptureOutcome.CHARGED:
                stats.succeeded += 1
            elif result.kind == CaptureOutcome.CANCELLED:
                stats.cancelled += 1
            elif result.kind == CaptureOutcome.RETRY:
                stats.retrying += 1
            elif result.kind == CaptureOutcome.ERROR:
                # Status moved on since the candidate query, typically another instance won
                logger.info(f"Order {order_number} not captured: {result.error}")
                stats.skipped += 1
                stats.processed -= 1
            else:
                stats.failed += 1
        except Exception as e:
            logger.error(f"❌ Error charging order {order_number}: {e}", exc_info=True)
            stats.failed += 1
        finally:
            await self.locks.release(key)

    async def sweep_locks(self) -> int:
        try:
            return await self.locks.sweep_expired()
        except Exception as e:
            logger.error(f"❌ Lock sweep failed: {e}")
            return 0

    # ====================
    # Lifecycle
    # ====================

    def start(self) -> None:
        """Register the charge and lock-sweep jobs on an AsyncIOScheduler"""
        from apscheduler.schedulers.asyncio import AsyncIOScheduler

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.run_once,
            'interval',
            minutes=self.config.interval_minutes,
            id=CHARGE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.sweep_locks,
            'interval',
            seconds=self.config.lock_sweep_seconds,
            id=LOCK_SWEEP_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"✅ Charge scheduler started (every {self.config.interval_minutes} min)")

    def shutdown(self) -> None:
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("✅ Charge scheduler stopped")

    @property
    def is_scheduled(self) -> bool:
        return self.scheduler is not None and self.scheduler.running
