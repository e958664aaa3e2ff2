"""
Order Worker — 外部データクライアント

顧客サービス・商品サービスから参照データを取得する。

  GET {base_url}/api/customers/{id}  → Customer
  GET {base_url}/api/products/{id}   → Product

リトライ方針:
  - タイムアウト・接続失敗・5xx・429 は一時障害としてバックオフ付きで再試行
  - 404 は終端条件。リトライせず UpstreamNotFound を即座に返す
  - その他の 4xx や不正なレスポンス本文は UpstreamFailure（リトライしない）
  - 再試行を使い切ったら UpstreamTransientFailure
部分的に埋まったレコードを返すことはない。
"""

import asyncio
import logging
from decimal import Decimal
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .errors import UpstreamFailure, UpstreamNotFound, UpstreamTransientFailure
from .models import Customer, Product

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

RETRYABLE_STATUS = {429}


class ExternalApiClient:
    """顧客・商品サービスへの HTTP クライアント"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_attempts: int = 3,
        backoff: float = 1.0,
        max_backoff: float = 10.0,
    ):
        self.client = client
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.max_backoff = max_backoff

    async def get_customer(self, customer_id: str) -> Customer:
        customer = await self._fetch(
            "customer", f"/api/customers/{customer_id}", customer_id, Customer
        )
        logger.info("Customer fetched: %s - %s", customer_id, customer.name)
        return customer

    async def get_product(self, product_id: str) -> Product:
        product = await self._fetch(
            "product", f"/api/products/{product_id}", product_id, Product
        )
        logger.info("Product fetched: %s - %s", product_id, product.name)
        return product

    def backoff_delay(self, attempt: int) -> float:
        """attempt 回目の失敗後に待つ秒数（指数バックオフ、上限あり）"""
        return min(self.backoff * 2 ** (attempt - 1), self.max_backoff)

    async def _fetch(
        self,
        kind: str,
        path: str,
        record_id: str,
        model: type[RecordT],
    ) -> RecordT:
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = await self.client.get(path)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if resp.status_code == 404:
                    logger.error("%s not found: %s", kind.capitalize(), record_id)
                    raise UpstreamNotFound(f"{kind.capitalize()} not found: {record_id}")
                if resp.status_code >= 500 or resp.status_code in RETRYABLE_STATUS:
                    last_error = f"HTTP {resp.status_code}"
                elif resp.is_error:
                    raise UpstreamFailure(
                        f"{kind.capitalize()} request rejected: {record_id} "
                        f"(HTTP {resp.status_code})"
                    )
                else:
                    return self._decode(kind, record_id, resp, model)

            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Retrying %s fetch for %s in %.2fs (attempt %d/%d): %s",
                    kind, record_id, delay, attempt + 1, self.max_attempts, last_error,
                )
                await asyncio.sleep(delay)

        logger.error(
            "Error fetching %s %s after %d attempts: %s",
            kind, record_id, self.max_attempts, last_error,
        )
        raise UpstreamTransientFailure(
            f"{kind.capitalize()} service unavailable for {record_id}: {last_error}"
        )

    @staticmethod
    def _decode(
        kind: str,
        record_id: str,
        resp: httpx.Response,
        model: type[RecordT],
    ) -> RecordT:
        # 価格を float を経由せず Decimal で読む
        try:
            return model.model_validate(resp.json(parse_float=Decimal))
        except (ValueError, ValidationError) as e:
            raise UpstreamFailure(f"Invalid {kind} payload for {record_id}: {e}") from e
