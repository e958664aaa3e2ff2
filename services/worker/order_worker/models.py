"""
Order Worker — モデル定義

外部とやり取りする JSON はすべて camelCase (orderId, customerId ...)。
Python 側の属性は snake_case で扱い、変換は alias で行う。

金額はすべて Decimal。float を経由すると 999.99 + 29.99 のような
合計に誤差が出るため使わない。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """camelCase の JSON と相互変換する不変モデルの基底クラス"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ── 受信メッセージ ────────────────────────────────


class InboundOrderEvent(CamelModel):
    """Kafka から受信する注文作成イベント（再配信で重複し得る）"""

    order_id: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    product_ids: tuple[str, ...]  # 空でもよい（合計 0 の注文になる）


# ── 外部サービスのレコード（読み取り専用スナップショット） ──


class Customer(CamelModel):
    customer_id: str
    name: str
    email: str
    phone: str | None = None
    active: bool


class Product(CamelModel):
    product_id: str
    name: str
    description: str = ""
    category: str | None = None
    price: Decimal = Field(ge=0)
    stock: int | None = None
    active: bool = True


# ── 注文 ─────────────────────────────────────────


class OrderStatus(str, Enum):
    COMPLETED = "COMPLETED"


class OrderLineItem(CamelModel):
    product_id: str
    name: str
    description: str
    unit_price: Decimal
    quantity: int = Field(gt=0)
    subtotal: Decimal


class AssembledOrder(CamelModel):
    """パイプラインが組み立てた注文。保存後はストアが所有する。"""

    order_id: str
    customer_id: str
    customer_name: str
    customer_email: str
    items: tuple[OrderLineItem, ...]
    total_amount: Decimal
    status: OrderStatus = OrderStatus.COMPLETED
    created_at: datetime
    updated_at: datetime


class StoredOrder(AssembledOrder):
    """ストアに保存された注文（内部 ID 付き）"""

    id: str
