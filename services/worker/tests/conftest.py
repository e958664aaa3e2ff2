import asyncio
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from order_worker.errors import PersistenceFailure, UpstreamNotFound
from order_worker.lock import RedisLock
from order_worker.models import (
    AssembledOrder,
    Customer,
    InboundOrderEvent,
    Product,
    StoredOrder,
)


class FakeRedis:
    """SET NX PX / DEL と解放スクリプトの EVAL だけを実装したインメモリ Redis"""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.log: list[tuple[str, str]] = []
        self.busy_attempts = 0
        self.fail_set = False
        self.fail_delete = False

    async def set(self, key, value, nx=False, px=None):
        if self.fail_set:
            raise RedisConnectionError("connection refused")
        self.log.append(("set", key))
        if self.busy_attempts > 0:
            self.busy_attempts -= 1
            return None
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = px
        self.log.append(("acquired", key))
        return True

    async def delete(self, key):
        if self.fail_delete:
            raise RedisConnectionError("connection reset")
        self.log.append(("delete", key))
        return 1 if self.data.pop(key, None) is not None else 0

    async def eval(self, script, numkeys, key, token):
        # RELEASE_SCRIPT: 値が token と一致するときだけ削除する
        if self.fail_delete:
            raise RedisConnectionError("connection reset")
        self.log.append(("delete", key))
        if self.data.get(key) != token:
            return 0
        del self.data[key]
        return 1

    def count(self, op: str) -> int:
        return sum(1 for entry in self.log if entry[0] == op)


class FakeApi:
    """顧客・商品サービスの代わり。未登録の ID は UpstreamNotFound。"""

    def __init__(self, customers=(), products=(), errors=None, delay=0.0):
        self.customers = {c.customer_id: c for c in customers}
        self.products = {p.product_id: p for p in products}
        self.errors = errors or {}
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_customer(self, customer_id):
        return await self._get("customer", customer_id, self.customers)

    async def get_product(self, product_id):
        return await self._get("product", product_id, self.products)

    async def _get(self, kind, record_id, records):
        self.calls.append(f"{kind}:{record_id}")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if record_id in self.errors:
                raise self.errors[record_id]
            if record_id not in records:
                raise UpstreamNotFound(f"{kind} not found: {record_id}")
            return records[record_id]
        finally:
            self.in_flight -= 1


class FakeStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.saved: dict[str, StoredOrder] = {}

    async def save(self, order: AssembledOrder) -> StoredOrder:
        if self.fail:
            raise PersistenceFailure(f"Could not save order {order.order_id}")
        stored = StoredOrder(id=f"id-{order.order_id}", **order.model_dump())
        self.saved[order.order_id] = stored
        return stored

    async def find_by_order_id(self, order_id):
        return self.saved.get(order_id)


def make_customer(customer_id="customer-1", active=True):
    return Customer(
        customer_id=customer_id,
        name="Juan Perez",
        email="juan@example.com",
        active=active,
    )


def make_products():
    return [
        Product(
            product_id="product-1",
            name="Laptop",
            description="Laptop HP Pavilion 15",
            price=Decimal("999.99"),
            active=True,
        ),
        Product(
            product_id="product-2",
            name="Mouse",
            description="Logitech MX Master 3",
            price=Decimal("29.99"),
            active=True,
        ),
    ]


def make_event(order_id="order-1", customer_id="customer-1", product_ids=("product-1", "product-2")):
    return InboundOrderEvent(
        order_id=order_id, customer_id=customer_id, product_ids=product_ids
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def lock(fake_redis):
    return RedisLock(fake_redis, ttl=30.0, retry_interval=0, max_attempts=3)
