"""
Distributed Lock Manager

Lease-based mutual exclusion shared by every process instance that runs the
charge scheduler. A lock is a row keyed by an arbitrary string, owned by one
instance id and valid until ``expires_at``. Ownership is proven by matching
owner id only.

Usage:
    locks = DistributedLockManager(PostgresLockStore(db), instance_id="server-1")

    async with locks.lock(charge_lock_key(order_id), ttl_seconds=60) as acquired:
        if not acquired:
            return  # another instance is handling it
        ...
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from core.config import default_instance_id

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


CHARGE_LOCK_PREFIX = "charge_order_"


def charge_lock_key(order_id: str) -> str:
    """Lease held while an order's payment is captured or its items re-decided"""
    return f"{CHARGE_LOCK_PREFIX}{order_id}"


class LockRecord(BaseModel):
    """Persisted lease"""
    key: str
    owner_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@runtime_checkable
class LockStoreProtocol(Protocol):
    """
    Storage backend for leases.

    Every method must be a single atomic operation against the shared store;
    the manager never reads before it writes.
    """

    async def try_insert(self, record: LockRecord) -> bool:
        """Insert the record, or take over an expired one with the same key"""
        ...

    async def delete_owned(self, key: str, owner_id: str) -> bool:
        """Delete the record only if owned by owner_id"""
        ...

    async def extend_owned(self, key: str, owner_id: str, extra_seconds: int, now: datetime) -> Optional[datetime]:
        """Push a live owned lease forward, return the new expiry"""
        ...

    async def get_live(self, key: str, now: datetime) -> Optional[LockRecord]:
        """Return the record if it has not expired"""
        ...

    async def delete_expired(self, now: datetime) -> int:
        """Remove expired leases, return how many"""
        ...


class PostgresLockStore:
    """Lock store over the shared PostgreSQL database"""

    def __init__(self, db, table: str = "distributed_locks"):
        self.db = db
        self.table = f"{db.schema}.{table}"

    async def initialize(self):
        await self.db.execute(f'''
            CREATE TABLE IF NOT EXISTS {self.table} (
                lock_key TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                acquired_at TIMESTAMPTZ NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL
            )
        ''')
        await self.db.execute(
            f"CREATE INDEX IF NOT EXISTS distributed_locks_expires_idx ON {self.table} (expires_at)"
        )
        logger.info(f"Lock table {self.table} ready")

    async def try_insert(self, record: LockRecord) -> bool:
        # Plain insert wins on a fresh key; the conditional upsert takes over
        # a stale lease. A live lease matches neither and returns no row.
        row = await self.db.query_row(
            f'''
            INSERT INTO {self.table} AS l (lock_key, owner_id, acquired_at, expires_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (lock_key) DO UPDATE
                SET owner_id = EXCLUDED.owner_id,
                    acquired_at = EXCLUDED.acquired_at,
                    expires_at = EXCLUDED.expires_at
                WHERE l.expires_at <= EXCLUDED.acquired_at
            RETURNING owner_id
            ''',
            [record.key, record.owner_id, record.acquired_at, record.expires_at],
        )
        return row is not None

    async def delete_owned(self, key: str, owner_id: str) -> bool:
        count = await self.db.execute(
            f"DELETE FROM {self.table} WHERE lock_key = $1 AND owner_id = $2",
            [key, owner_id],
        )
        return count > 0

    async def extend_owned(self, key: str, owner_id: str, extra_seconds: int, now: datetime) -> Optional[datetime]:
        row = await self.db.query_row(
            f'''
            UPDATE {self.table}
               SET expires_at = expires_at + make_interval(secs => $3)
             WHERE lock_key = $1 AND owner_id = $2 AND expires_at > $4
            RETURNING expires_at
            ''',
            [key, owner_id, float(extra_seconds), now],
        )
        return row["expires_at"] if row else None

    async def get_live(self, key: str, now: datetime) -> Optional[LockRecord]:
        row = await self.db.query_row(
            f'''
            SELECT lock_key, owner_id, acquired_at, expires_at
              FROM {self.table}
             WHERE lock_key = $1 AND expires_at > $2
            ''',
            [key, now],
        )
        if not row:
            return None
        return LockRecord(
            key=row["lock_key"],
            owner_id=row["owner_id"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )

    async def delete_expired(self, now: datetime) -> int:
        return await self.db.execute(
            f"DELETE FROM {self.table} WHERE expires_at <= $1",
            [now],
        )


class DistributedLockManager:
    """Acquire, release and extend leases as one process instance"""

    def __init__(
        self,
        store: LockStoreProtocol,
        instance_id: Optional[str] = None,
        default_ttl: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.instance_id = instance_id or default_instance_id()
        self.default_ttl = default_ttl
        self.clock = clock
        logger.info(f"DistributedLockManager instance id: {self.instance_id}")

    async def acquire(self, key: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Try to take the lease for key.

        Returns:
            True if this instance now holds it, False if a live lease exists
        """
        ttl = ttl_seconds or self.default_ttl
        now = self.clock()
        record = LockRecord(
            key=key,
            owner_id=self.instance_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        acquired = await self.store.try_insert(record)
        if acquired:
            logger.debug(f"🔒 Acquired lock {key} (ttl {ttl}s)")
        else:
            logger.info(f"Lock {key} already held, skipping")
        return acquired

    async def release(self, key: str) -> None:
        """Release the lease if owned; otherwise a no-op"""
        try:
            released = await self.store.delete_owned(key, self.instance_id)
        except Exception as e:
            # The TTL sweep reclaims it
            logger.error(f"Error releasing lock {key}: {e}")
            return
        if released:
            logger.debug(f"🔓 Released lock {key}")
        else:
            logger.warning(f"⚠️  Lock {key} not found or not owned by {self.instance_id}")

    async def extend(self, key: str, extra_seconds: int = 30) -> bool:
        """Push the expiry of an owned, live lease forward"""
        new_expiry = await self.store.extend_owned(key, self.instance_id, extra_seconds, self.clock())
        if new_expiry is None:
            logger.warning(f"⚠️  Cannot extend lock {key}: not found or not owned")
            return False
        logger.debug(f"Extended lock {key} until {new_expiry.isoformat()}")
        return True

    async def check(self, key: str) -> Optional[LockRecord]:
        """Return the live lease for key, if any"""
        return await self.store.get_live(key, self.clock())

    async def sweep_expired(self) -> int:
        """Delete expired leases left behind by crashed holders"""
        removed = await self.store.delete_expired(self.clock())
        if removed:
            logger.info(f"Swept {removed} expired lock(s)")
        return removed

    @asynccontextmanager
    async def lock(self, key: str, ttl_seconds: Optional[int] = None) -> AsyncIterator[bool]:
        """Yield whether the lease was acquired; release on exit if it was"""
        acquired = await self.acquire(key, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(key)
