"""
Order Worker — FastAPI エントリーポイント

Kafka の orders トピックを購読し、注文を組み立てて保存するワーカー。
購読ループは lifespan でバックグラウンドタスクとして起動する。

HTTP では次だけを公開する:
  - ヘルスチェック
  - 保存済み注文の照会（業務上の orderId で 1 件）

依存関係はここで明示的に組み立てる:
  RedisLock (Redis)          ─┐
  ExternalApiClient (httpx)  ─┼─▶ OrderPipeline ─▶ OrderEventListener ─▶ KafkaOrderConsumer
  OrderStore (SQLAlchemy)    ─┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from aiokafka import AIOKafkaProducer
from fastapi import FastAPI, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import load_config
from .consumer import (
    KafkaDeadLetterPublisher,
    KafkaOrderConsumer,
    OrderEventListener,
    create_kafka_consumer,
)
from .external_api import ExternalApiClient
from .lock import RedisLock
from .order_store import OrderStore, ensure_schema
from .pipeline import OrderPipeline

logger = logging.getLogger(__name__)

order_store: OrderStore | None = None
consumer_task: asyncio.Task | None = None


def _on_consumer_done(task: asyncio.Task) -> None:
    """購読ループが終了したら理由を記録する（/health はこの後 503 を返す）。"""
    if task.cancelled():
        logger.warning("Kafka consumer task was cancelled")
    elif task.exception() is not None:
        logger.error("Kafka consumer task crashed: %r", task.exception())
    else:
        logger.info("Kafka consumer task finished")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に依存関係を組み立て、Kafka 購読をバックグラウンドで開始する。"""
    global order_store, consumer_task
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    engine = create_async_engine(config.database_url, echo=False)
    await ensure_schema(engine)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    order_store = OrderStore(async_session)

    redis_pool = aioredis.from_url(config.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(base_url=config.api_base_url, timeout=config.api_timeout)

    pipeline = OrderPipeline(
        RedisLock(
            redis_pool,
            ttl=config.lock_ttl,
            retry_interval=config.lock_retry_interval,
            max_attempts=config.lock_max_attempts,
        ),
        ExternalApiClient(
            http_client,
            max_attempts=config.api_max_attempts,
            backoff=config.api_backoff,
            max_backoff=config.api_max_backoff,
        ),
        order_store,
    )

    producer = None
    dead_letters = None
    if config.dead_letter_topic:
        producer = AIOKafkaProducer(bootstrap_servers=config.kafka_bootstrap_servers)
        await producer.start()
        dead_letters = KafkaDeadLetterPublisher(producer, config.dead_letter_topic)

    listener = OrderEventListener(
        pipeline,
        dead_letters=dead_letters,
        redelivery_attempts=config.redelivery_attempts,
        redelivery_delay=config.redelivery_delay,
    )
    kafka_consumer = create_kafka_consumer(config)
    await kafka_consumer.start()
    logger.info(
        "Subscribed to %s (group: %s, bootstrap: %s)",
        config.orders_topic, config.group_id, config.kafka_bootstrap_servers,
    )

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(
        KafkaOrderConsumer(
            kafka_consumer,
            listener,
            concurrency=config.concurrency,
            max_records=config.max_poll_records,
        ).run(shutdown_event)
    )
    consumer_task.add_done_callback(_on_consumer_done)
    yield
    shutdown_event.set()
    try:
        await asyncio.wait_for(consumer_task, timeout=config.lock_ttl)
    except asyncio.TimeoutError:
        # wait_for がタスクをキャンセル済み
        logger.warning("Consumer did not stop within %.0fs; cancelled", config.lock_ttl)
    finally:
        await kafka_consumer.stop()
        if producer is not None:
            await producer.stop()
        await http_client.aclose()
        await redis_pool.aclose()
        await engine.dispose()


app = FastAPI(title="Order Worker", lifespan=lifespan)


# ── Query Endpoints ──────────────────────────────


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str):
    """保存済み注文を orderId で取得"""
    order = await order_store.find_by_order_id(order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order.model_dump(mode="json", by_alias=True)


@app.get("/health")
async def health():
    if consumer_task is not None and consumer_task.done():
        raise HTTPException(503, "Consumer stopped")
    return {"status": "ok", "service": "order-worker"}
