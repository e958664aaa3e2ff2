"""
Order Worker — 分散ロック (Redis)

同じ顧客のイベントが並行して処理されないよう、顧客単位で排他する。

  取得: SET lock:customer:{id} {token} NX PX {ttl}
  解放: 値が自分の token と一致する場合だけ DEL（Lua で原子的に比較・削除）

注意: TTL 付きのリース（助言的ロック）であり、厳密な線形化可能性はない。
処理が TTL を超えると排他が失われるので、TTL は最悪の処理時間より
十分長く設定すること。プロセスが落ちても TTL で自動的に解放される。
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import LockUnavailable

logger = logging.getLogger(__name__)

KEY_PREFIX = "lock:customer:"

# TTL 切れの後に別の実行が取り直したロックを消さないための compare-and-delete
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def customer_lock_key(customer_id: str) -> str:
    return KEY_PREFIX + customer_id


@dataclass(frozen=True)
class LockHandle:
    """取得済みロック。作成したパイプライン実行だけが所有する。"""

    key: str
    token: str
    expiry: datetime


class RedisLock:
    """Redis による顧客単位の分散ロック"""

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl: float = 30.0,
        retry_interval: float = 0.1,
        max_attempts: int = 3,
    ):
        self.redis = redis
        self.ttl = ttl
        self.retry_interval = retry_interval
        self.max_attempts = max_attempts

    async def acquire(self, key: str, ttl: float, token: str | None = None) -> bool:
        """
        キーが存在しない場合だけ TTL 付きでセットする。

        この呼び出しがエントリを作成した場合のみ True。
        Redis との通信障害は False（未取得）として扱い、例外は投げない。
        """
        value = token or uuid.uuid4().hex
        try:
            created = await self.redis.set(key, value, nx=True, px=int(ttl * 1000))
        except RedisError as e:
            logger.error("Error acquiring lock %s: %s", key, e)
            return False

        if created:
            logger.info("Lock acquired: %s", key)
            return True
        logger.warning("Lock already held: %s", key)
        return False

    async def release(self, key: str, token: str | None = None) -> bool:
        """
        キーを削除する。削除した場合 True。

        token を渡すと、値がその token のときだけ削除する（所有者による解放）。
        """
        try:
            if token is None:
                deleted = await self.redis.delete(key)
            else:
                deleted = await self.redis.eval(RELEASE_SCRIPT, 1, key, token)
        except RedisError as e:
            logger.error("Error releasing lock %s: %s", key, e)
            return False

        if deleted:
            logger.info("Lock released: %s", key)
            return True
        logger.warning("No owned lock found to release: %s", key)
        return False

    async def acquire_with_retry(
        self,
        key: str,
        ttl: float,
        max_attempts: int,
        retry_delay: float,
        token: str | None = None,
    ) -> bool:
        """
        取得に失敗するたびに retry_delay 待って再試行する。

        max_attempts 回すべて失敗したら False を返す（エラーではない）。
        呼び出し側は False を「排他を得られなかった」として処理を中断すること。
        """
        for attempt in range(1, max_attempts + 1):
            if await self.acquire(key, ttl, token):
                return True
            if attempt < max_attempts:
                logger.debug(
                    "Retrying lock %s (attempt %d/%d)", key, attempt + 1, max_attempts
                )
                await asyncio.sleep(retry_delay)

        logger.error("Failed to acquire lock %s after %d attempts", key, max_attempts)
        return False

    @asynccontextmanager
    async def lease(self, customer_id: str) -> AsyncIterator[LockHandle]:
        """
        顧客ロックを取得してブロックの間だけ保持する。

        取得できなければ LockUnavailable（何も取得していないので解放もしない）。
        ブロックをどのように抜けても（例外を含む）解放はちょうど 1 回。
        """
        key = customer_lock_key(customer_id)
        token = uuid.uuid4().hex
        acquired = await self.acquire_with_retry(
            key, self.ttl, self.max_attempts, self.retry_interval, token
        )
        if not acquired:
            raise LockUnavailable(f"Could not acquire lock for customer: {customer_id}")

        handle = LockHandle(
            key=key,
            token=token,
            expiry=datetime.now(timezone.utc) + timedelta(seconds=self.ttl),
        )
        try:
            yield handle
        finally:
            await self.release(key, token)
