"""
Order Worker — 注文ストア

組み立て済みの注文を保存する。読み取りは業務上の orderId による 1 件検索のみ。

order_id には UNIQUE 制約があり、保存は 1 文の UPSERT で行う。
同じイベントが再配信された場合（at-least-once）は新しい行を作らず、
既存行の内容を上書きする（内部 id と created_at は最初の値を保持）。
1 レコードの書き込みは成功するか、以前の状態が残るかのどちらか。
total_amount はスケールを固定しない NUMERIC で、明細の小計の合計をそのまま保持する。
"""

import json
import logging
import uuid
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import PersistenceFailure
from .models import AssembledOrder, StoredOrder

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) PRIMARY KEY,
        order_id VARCHAR(255) NOT NULL UNIQUE,
        customer_id VARCHAR(255) NOT NULL,
        customer_name VARCHAR(255) NOT NULL,
        customer_email VARCHAR(255) NOT NULL,
        items TEXT NOT NULL,
        total_amount NUMERIC NOT NULL,
        status VARCHAR(32) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_orders_customer_created
        ON orders (customer_id, created_at)
    """,
]

_UPSERT = text("""
    INSERT INTO orders
        (id, order_id, customer_id, customer_name, customer_email,
         items, total_amount, status, created_at, updated_at)
    VALUES
        (:id, :order_id, :customer_id, :customer_name, :customer_email,
         :items, :total_amount, :status, :created_at, :updated_at)
    ON CONFLICT (order_id) DO UPDATE SET
        customer_id = excluded.customer_id,
        customer_name = excluded.customer_name,
        customer_email = excluded.customer_email,
        items = excluded.items,
        total_amount = excluded.total_amount,
        status = excluded.status,
        updated_at = excluded.updated_at
""").bindparams(
    bindparam("total_amount", type_=Numeric()),
    bindparam("created_at", type_=DateTime(timezone=True)),
    bindparam("updated_at", type_=DateTime(timezone=True)),
)

_SELECT_BY_ORDER_ID = text("""
    SELECT id, order_id, customer_id, customer_name, customer_email,
           items, total_amount, status, created_at, updated_at
    FROM orders
    WHERE order_id = :order_id
""").columns(
    created_at=DateTime(timezone=True),
    updated_at=DateTime(timezone=True),
)


async def ensure_schema(engine: AsyncEngine) -> None:
    """orders テーブルが無ければ作成する（マイグレーションは行わない）。"""
    async with engine.begin() as conn:
        for ddl in _SCHEMA:
            await conn.execute(text(ddl))


class OrderStore:
    """注文の永続化（SQLAlchemy async）"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def save(self, order: AssembledOrder) -> StoredOrder:
        """注文を UPSERT し、保存後のレコードを返す。"""
        try:
            async with self.session_factory() as session:
                await session.execute(
                    _UPSERT,
                    {
                        "id": str(uuid.uuid4()),
                        "order_id": order.order_id,
                        "customer_id": order.customer_id,
                        "customer_name": order.customer_name,
                        "customer_email": order.customer_email,
                        "items": json.dumps(
                            [item.model_dump(mode="json", by_alias=True) for item in order.items]
                        ),
                        "total_amount": order.total_amount,
                        "status": order.status.value,
                        "created_at": order.created_at,
                        "updated_at": order.updated_at,
                    },
                )
                stored = await self._select(session, order.order_id)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Error saving order %s: %s", order.order_id, e)
            raise PersistenceFailure(f"Could not save order {order.order_id}: {e}") from e

        logger.info("Order saved: %s (id: %s)", stored.order_id, stored.id)
        return stored

    async def find_by_order_id(self, order_id: str) -> StoredOrder | None:
        try:
            async with self.session_factory() as session:
                return await self._select(session, order_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Could not load order {order_id}: {e}") from e

    @staticmethod
    async def _select(session: AsyncSession, order_id: str) -> StoredOrder | None:
        result = await session.execute(_SELECT_BY_ORDER_ID, {"order_id": order_id})
        row = result.fetchone()
        if not row:
            return None
        return StoredOrder(
            id=str(row.id),
            order_id=row.order_id,
            customer_id=row.customer_id,
            customer_name=row.customer_name,
            customer_email=row.customer_email,
            items=json.loads(row.items) if isinstance(row.items, str) else row.items,
            total_amount=Decimal(str(row.total_amount)),
            status=row.status,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
