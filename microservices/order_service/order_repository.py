"""
Order Repository

Data access layer - PostgreSQL (asyncpg)
Implements OrderRepositoryProtocol from protocols.py

The order aggregate is stored as one JSONB document. Fields the charge
scheduler filters on are mirrored into plain columns, and a version column
backs optimistic saves.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from core.config import InfraConfig
from core.postgres_client import AsyncPostgresClient

from .models import Order, PaymentStatus, TimelineEntry, utc_now
from .protocols import ConcurrentModificationError, DuplicateOrderError, OrderNotFoundError

logger = logging.getLogger(__name__)


class OrderRepository:
    """Order data repository - PostgreSQL (Async)"""

    def __init__(self, db: Optional[AsyncPostgresClient] = None, config: Optional[InfraConfig] = None):
        self.db = db or AsyncPostgresClient("order_service", config=config)
        self.schema = self.db.schema
        self.orders_table = f"{self.schema}.orders"

    async def initialize(self):
        """Connect and create the orders table if missing"""
        await self.db.connect()
        await self.db.execute(f'''
            CREATE TABLE IF NOT EXISTS {self.orders_table} (
                order_id TEXT PRIMARY KEY,
                order_number TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                payment_status TEXT NOT NULL,
                next_retry_at TIMESTAMPTZ,
                hold_at TIMESTAMPTZ,
                hyp_transaction_id TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                document JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
        ''')
        await self.db.execute(
            f"CREATE INDEX IF NOT EXISTS orders_payment_status_idx "
            f"ON {self.orders_table} (payment_status, next_retry_at, hold_at)"
        )
        logger.info("Order repository initialized with PostgreSQL")

    async def close(self):
        await self.db.close()
        logger.info("Order repository database connection closed")

    # ====================
    # Mapping
    # ====================

    @staticmethod
    def _to_document(order: Order) -> str:
        return json.dumps(order.model_dump(mode="json", exclude={"version"}))

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> Order:
        document = row["document"]
        if isinstance(document, str):
            document = json.loads(document)
        document["version"] = row["version"]
        return Order.model_validate(document)

    @staticmethod
    def _columns(order: Order) -> List[Any]:
        p = order.payment
        return [p.status.value, p.next_retry_at, p.hold_at, p.hyp_transaction_id]

    # ====================
    # Reads / writes
    # ====================

    async def create_order(self, order: Order) -> Order:
        try:
            row = await self.db.query_row(
                f'''
                INSERT INTO {self.orders_table} (
                    order_id, order_number, user_id,
                    payment_status, next_retry_at, hold_at, hyp_transaction_id,
                    version, document, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, 0, $8::jsonb, $9, $10)
                RETURNING version, document
                ''',
                [
                    order.order_id, order.order_number, order.user_id,
                    *self._columns(order),
                    self._to_document(order), order.created_at, order.updated_at,
                ],
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateOrderError(f"Order {order.order_number} already exists") from e
        return self._from_row(row)

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await self.db.query_row(
            f"SELECT version, document FROM {self.orders_table} WHERE order_id = $1",
            [order_id],
        )
        return self._from_row(row) if row else None

    async def order_number_exists(self, order_number: str) -> bool:
        row = await self.db.query_row(
            f"SELECT 1 AS found FROM {self.orders_table} WHERE order_number = $1",
            [order_number],
        )
        return row is not None

    async def save(self, order: Order) -> Order:
        expected = order.version
        order.updated_at = utc_now()
        row = await self.db.query_row(
            f'''
            UPDATE {self.orders_table}
               SET payment_status = $2, next_retry_at = $3, hold_at = $4,
                   hyp_transaction_id = $5, document = $6::jsonb,
                   updated_at = $7, version = version + 1
             WHERE order_id = $1 AND version = $8
            RETURNING version
            ''',
            [
                order.order_id, *self._columns(order),
                self._to_document(order), order.updated_at, expected,
            ],
        )
        if row is None:
            exists = await self.db.query_row(
                f"SELECT version FROM {self.orders_table} WHERE order_id = $1",
                [order.order_id],
            )
            if exists is None:
                raise OrderNotFoundError(f"Order {order.order_id} not found")
            raise ConcurrentModificationError(
                f"Order {order.order_id} changed (expected v{expected}, found v{exists['version']})"
            )
        order.version = row["version"]
        return order

    async def mark_ready_if_on_hold(self, order_id: str, message: str) -> Optional[Order]:
        now = utc_now()
        entry = TimelineEntry(status=PaymentStatus.READY_TO_CHARGE.value, message=message, timestamp=now)
        row = await self.db.query_row(
            f'''
            UPDATE {self.orders_table}
               SET payment_status = $2,
                   document = jsonb_set(
                       jsonb_set(
                           jsonb_set(
                               jsonb_set(document, '{{payment,status}}', to_jsonb($2::text)),
                               '{{payment,ready_at}}', to_jsonb($3::text)),
                           '{{updated_at}}', to_jsonb($3::text)),
                       '{{timeline}}', COALESCE(document->'timeline', '[]'::jsonb) || $4::jsonb),
                   updated_at = $5,
                   version = version + 1
             WHERE order_id = $1 AND payment_status = $6
            RETURNING version, document
            ''',
            [
                order_id,
                PaymentStatus.READY_TO_CHARGE.value,
                now.isoformat(),
                json.dumps([entry.model_dump(mode="json")]),
                now,
                PaymentStatus.HOLD.value,
            ],
        )
        return self._from_row(row) if row else None

    async def find_chargeable(self, now: datetime, limit: int) -> List[Order]:
        rows = await self.db.query(
            f'''
            SELECT version, document FROM {self.orders_table}
             WHERE (payment_status = $1
                    OR (payment_status = $2 AND next_retry_at <= $3))
               AND hyp_transaction_id IS NOT NULL
             ORDER BY hold_at ASC NULLS LAST
             LIMIT $4
            ''',
            [PaymentStatus.READY_TO_CHARGE.value, PaymentStatus.RETRY_PENDING.value, now, limit],
        )
        return [self._from_row(r) for r in rows]
