"""
Order Worker — 注文パイプライン（ステートマシン）

1 件のイベントを処理する流れ:

  START → LOCKING → LOCKED → FETCHING_CUSTOMER → VALIDATING_CUSTOMER
        → FETCHING_PRODUCTS → VALIDATING_PRODUCTS → ASSEMBLING
        → PERSISTING → DONE
  (途中のどこで失敗しても FAILED)

  ┌──────────────────────────────────────────────────────────┐
  │  1. 顧客ロックを取得（取れなければ何もせず FAILED）        │
  │  2. 顧客を取得 → 有効か検証                               │
  │  3. 全商品を並行取得 → 全件揃ったか検証                   │
  │  4. 注文を組み立てて保存                                  │
  │  5. 成功・失敗・例外のどれでもロックはちょうど 1 回解放    │
  └──────────────────────────────────────────────────────────┘

ロックの解放は RedisLock.lease() のスコープで保証する。
想定内の失敗 (OrderProcessingError) は PipelineOutcome に変換して返す。
ACK の判断は呼び出し側（キューリスナー）が行う。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from .assembler import assemble_order
from .errors import (
    CustomerInactive,
    IncompleteOrder,
    OrderProcessingError,
    UpstreamFailure,
)
from .external_api import ExternalApiClient
from .lock import RedisLock
from .models import InboundOrderEvent, Product, StoredOrder
from .order_store import OrderStore

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    START = "START"
    LOCKING = "LOCKING"
    LOCKED = "LOCKED"
    FETCHING_CUSTOMER = "FETCHING_CUSTOMER"
    VALIDATING_CUSTOMER = "VALIDATING_CUSTOMER"
    FETCHING_PRODUCTS = "FETCHING_PRODUCTS"
    VALIDATING_PRODUCTS = "VALIDATING_PRODUCTS"
    ASSEMBLING = "ASSEMBLING"
    PERSISTING = "PERSISTING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ProductResolution:
    """商品 1 件の取得結果。取得できなかった場合は error に原因を持つ。"""

    product_id: str
    product: Product | None = None
    error: UpstreamFailure | None = None

    @property
    def found(self) -> bool:
        return self.product is not None


@dataclass
class PipelineOutcome:
    """パイプライン 1 回分の結果"""

    order_id: str
    customer_id: str
    state: PipelineState = PipelineState.START
    trail: list[PipelineState] = field(default_factory=lambda: [PipelineState.START])
    order: StoredOrder | None = None
    error: OrderProcessingError | None = None
    failed_in: PipelineState | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.DONE

    @property
    def reason(self) -> str | None:
        return self.error.reason if self.error else None

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.trail.append(state)

    def fail(self, error: OrderProcessingError) -> None:
        self.failed_in = self.state
        self.error = error
        self.advance(PipelineState.FAILED)


class OrderPipeline:
    """ロック・外部データ取得・組み立て・保存をまとめる"""

    def __init__(
        self,
        lock: RedisLock,
        api: ExternalApiClient,
        store: OrderStore,
    ):
        self.lock = lock
        self.api = api
        self.store = store

    async def process(self, event: InboundOrderEvent) -> PipelineOutcome:
        """
        イベントを 1 件処理して結果を返す。

        想定内の失敗はすべて FAILED の結果になる。プログラムの不具合などの
        想定外の例外は、ロックを解放したうえでそのまま送出する。
        """
        outcome = PipelineOutcome(order_id=event.order_id, customer_id=event.customer_id)
        logger.info(
            "Processing order: %s for customer: %s", event.order_id, event.customer_id
        )

        outcome.advance(PipelineState.LOCKING)
        try:
            async with self.lock.lease(event.customer_id):
                outcome.advance(PipelineState.LOCKED)
                outcome.order = await self._run_locked(event, outcome)
        except OrderProcessingError as e:
            outcome.fail(e)
            logger.error(
                "Order %s failed in %s: %s (%s)",
                event.order_id, outcome.failed_in.value, e.reason, e,
            )
            return outcome

        outcome.advance(PipelineState.DONE)
        logger.info(
            "Order completed: %s (Total: %s)", event.order_id, outcome.order.total_amount
        )
        return outcome

    async def _run_locked(
        self, event: InboundOrderEvent, outcome: PipelineOutcome
    ) -> StoredOrder:
        # ── 顧客 ─────────────────────────────────────
        outcome.advance(PipelineState.FETCHING_CUSTOMER)
        customer = await self.api.get_customer(event.customer_id)

        outcome.advance(PipelineState.VALIDATING_CUSTOMER)
        if not customer.active:
            raise CustomerInactive(f"Customer is not active: {event.customer_id}")

        # ── 商品（並行取得） ─────────────────────────
        outcome.advance(PipelineState.FETCHING_PRODUCTS)
        resolutions = await self.resolve_products(event.product_ids)

        outcome.advance(PipelineState.VALIDATING_PRODUCTS)
        resolved = sum(1 for r in resolutions if r.found)
        if resolved < len(event.product_ids):
            missing = {r.product_id: r.error for r in resolutions if not r.found}
            raise IncompleteOrder(
                f"Not all products found for order {event.order_id}: "
                f"{resolved}/{len(event.product_ids)} resolved",
                missing,
            )

        # ── 組み立て・保存 ───────────────────────────
        outcome.advance(PipelineState.ASSEMBLING)
        order = assemble_order(event, customer, [r.product for r in resolutions])

        outcome.advance(PipelineState.PERSISTING)
        return await self.store.save(order)

    async def resolve_products(self, product_ids: tuple[str, ...]) -> list[ProductResolution]:
        """全商品を並行して取得する。個々の失敗は ProductResolution に残す。"""
        return list(
            await asyncio.gather(*(self._resolve_product(pid) for pid in product_ids))
        )

    async def _resolve_product(self, product_id: str) -> ProductResolution:
        try:
            product = await self.api.get_product(product_id)
        except UpstreamFailure as e:
            logger.error("Error fetching product %s: %s", product_id, e)
            return ProductResolution(product_id=product_id, error=e)
        return ProductResolution(product_id=product_id, product=product)
