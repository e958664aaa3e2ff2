from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from conftest import make_customer, make_event, make_products
from order_worker.assembler import assemble_order, build_items, total
from order_worker.models import OrderStatus, Product


class TestBuildItems:
    def test_one_item_per_product_with_quantity_one(self):
        items = build_items(make_products())
        assert [i.product_id for i in items] == ["product-1", "product-2"]
        assert all(i.quantity == 1 for i in items)
        assert items[0].unit_price == Decimal("999.99")
        assert items[0].subtotal == Decimal("999.99")
        assert items[1].description == "Logitech MX Master 3"

    def test_empty(self):
        assert build_items([]) == ()


class TestTotal:
    def test_exact_decimal_sum(self):
        assert total(build_items(make_products())) == Decimal("1029.98")

    def test_no_float_drift(self):
        products = [
            Product(product_id=f"p-{n}", name="Cable", price=Decimal("0.10"))
            for n in range(3)
        ]
        assert total(build_items(products)) == Decimal("0.30")

    def test_empty_total_is_zero(self):
        assert total([]) == Decimal("0")


class TestAssembleOrder:
    def test_builds_completed_order(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        order = assemble_order(make_event(), make_customer(), make_products(), now=now)

        assert order.order_id == "order-1"
        assert order.customer_id == "customer-1"
        assert order.customer_name == "Juan Perez"
        assert order.customer_email == "juan@example.com"
        assert len(order.items) == 2
        assert order.total_amount == Decimal("1029.98")
        assert order.status == OrderStatus.COMPLETED
        assert order.created_at == order.updated_at == now

    def test_order_is_immutable(self):
        order = assemble_order(make_event(), make_customer(), make_products())
        with pytest.raises(ValidationError):
            order.status = "PENDING"

    def test_json_uses_camel_case(self):
        order = assemble_order(make_event(), make_customer(), make_products())
        data = order.model_dump(mode="json", by_alias=True)
        assert data["totalAmount"] == "1029.98"
        assert data["items"][0]["unitPrice"] == "999.99"
        assert data["status"] == "COMPLETED"
