"""
Lock Store Mock for Component Testing

LockStoreProtocol over a dict. Shared by several DistributedLockManager
instances to stand in for several processes on one database.
"""
from datetime import datetime, timedelta
from typing import Dict, Optional

from core.distributed_lock import LockRecord


class InMemoryLockStore:
    """Mock lock store; implements LockStoreProtocol"""

    def __init__(self):
        self.records: Dict[str, LockRecord] = {}

    async def try_insert(self, record: LockRecord) -> bool:
        existing = self.records.get(record.key)
        if existing is not None and existing.expires_at > record.acquired_at:
            return False
        self.records[record.key] = record
        return True

    async def delete_owned(self, key: str, owner_id: str) -> bool:
        existing = self.records.get(key)
        if existing is None or existing.owner_id != owner_id:
            return False
        del self.records[key]
        return True

    async def extend_owned(self, key: str, owner_id: str, extra_seconds: int, now: datetime) -> Optional[datetime]:
        existing = self.records.get(key)
        if existing is None or existing.owner_id != owner_id or existing.expires_at <= now:
            return None
        existing.expires_at = existing.expires_at + timedelta(seconds=extra_seconds)
        return existing.expires_at

    async def get_live(self, key: str, now: datetime) -> Optional[LockRecord]:
        existing = self.records.get(key)
        if existing is None or existing.expires_at <= now:
            return None
        return existing

    async def delete_expired(self, now: datetime) -> int:
        expired = [k for k, r in self.records.items() if r.expires_at <= now]
        for key in expired:
            del self.records[key]
        return len(expired)
