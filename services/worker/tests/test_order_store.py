import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from conftest import make_customer, make_event, make_products
from order_worker.assembler import assemble_order
from order_worker.errors import PersistenceFailure
from order_worker.models import Customer, Product
from order_worker.order_store import OrderStore, ensure_schema


@pytest.fixture
def run_store(tmp_path):
    """一時 SQLite に対してシナリオを実行する。"""

    def run(scenario, create_schema=True):
        async def runner():
            engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
            try:
                if create_schema:
                    await ensure_schema(engine)
                store = OrderStore(
                    sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
                )
                return await scenario(store)
            finally:
                await engine.dispose()

        return asyncio.run(runner())

    return run


def sample_order(customer=None):
    return assemble_order(make_event(), customer or make_customer(), make_products())


class TestSave:
    def test_save_returns_stored_order(self, run_store):
        stored = run_store(lambda store: store.save(sample_order()))
        assert stored.id
        assert stored.order_id == "order-1"
        assert stored.total_amount == Decimal("1029.98")
        assert stored.status.value == "COMPLETED"

    def test_saved_order_can_be_found(self, run_store):
        async def scenario(store):
            await store.save(sample_order())
            return await store.find_by_order_id("order-1")

        found = run_store(scenario)
        assert found.customer_email == "juan@example.com"
        assert [i.product_id for i in found.items] == ["product-1", "product-2"]
        assert found.items[0].unit_price == Decimal("999.99")
        assert found.items[1].subtotal == Decimal("29.99")
        assert found.total_amount == Decimal("1029.98")

    def test_unknown_order(self, run_store):
        assert run_store(lambda store: store.find_by_order_id("order-404")) is None

    def test_redelivered_order_overwrites_single_record(self, run_store):
        renamed = Customer(
            customer_id="customer-1",
            name="Juan P. Garcia",
            email="juan@example.com",
            active=True,
        )

        async def scenario(store):
            first = await store.save(sample_order())
            second = await store.save(sample_order(renamed))
            return first, second

        first, second = run_store(scenario)
        assert second.id == first.id
        assert second.customer_name == "Juan P. Garcia"

    def test_database_error_is_persistence_failure(self, run_store):
        with pytest.raises(PersistenceFailure):
            run_store(lambda store: store.save(sample_order()), create_schema=False)


class TestTotalAmount:
    def test_sub_cent_prices_are_stored_exactly(self, run_store):
        products = [
            Product(product_id="product-1", name="Resistor", price=Decimal("0.004")),
            Product(product_id="product-2", name="Mouse", price=Decimal("29.99")),
        ]
        order = assemble_order(make_event(), make_customer(), products)

        async def scenario(store):
            await store.save(order)
            return await store.find_by_order_id("order-1")

        found = run_store(scenario)
        assert found.total_amount == Decimal("29.994")
        assert found.total_amount == sum(item.subtotal for item in found.items)
