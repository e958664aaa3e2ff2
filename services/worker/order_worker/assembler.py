"""
Order Worker — 注文の組み立て（純粋関数）

数量の指定はまだない。各商品は数量 1 で明細になる（既知の制約）。
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Sequence

from .models import (
    AssembledOrder,
    Customer,
    InboundOrderEvent,
    OrderLineItem,
    OrderStatus,
    Product,
)

DEFAULT_QUANTITY = 1


def build_items(products: Iterable[Product]) -> tuple[OrderLineItem, ...]:
    items = []
    for product in products:
        quantity = DEFAULT_QUANTITY
        items.append(
            OrderLineItem(
                product_id=product.product_id,
                name=product.name,
                description=product.description,
                unit_price=product.price,
                quantity=quantity,
                subtotal=product.price * quantity,
            )
        )
    return tuple(items)


def total(items: Iterable[OrderLineItem]) -> Decimal:
    """小計の合計。Decimal で計算するので丸め誤差は出ない。"""
    return sum((item.subtotal for item in items), Decimal("0"))


def assemble_order(
    event: InboundOrderEvent,
    customer: Customer,
    products: Sequence[Product],
    now: datetime | None = None,
) -> AssembledOrder:
    """
    有効な顧客と、解決済みの全商品から注文を組み立てる。

    検証（顧客が有効か、商品が揃っているか）は呼び出し側の責任。
    """
    now = now or datetime.now(timezone.utc)
    items = build_items(products)
    return AssembledOrder(
        order_id=event.order_id,
        customer_id=event.customer_id,
        customer_name=customer.name,
        customer_email=customer.email,
        items=items,
        total_amount=total(items),
        status=OrderStatus.COMPLETED,
        created_at=now,
        updated_at=now,
    )
