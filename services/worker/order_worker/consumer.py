"""
Order Worker — キューリスナー (Kafka)

orders トピックを購読し、受信したイベントを注文パイプラインに渡す。

  Kafka (orders)
    └─▶ KafkaOrderConsumer   poll / オフセットコミット
          └─▶ OrderEventListener   デコード / ACK 判断
                └─▶ OrderPipeline

ACK 方針（オフセットは手動コミット、at-least-once）:
  - 成功            → ACK
  - パイプライン失敗 → 一時障害なら回数上限付きで再実行し、それでも失敗なら
                       デッドレタートピックへ送ったうえで ACK
  - デコード失敗・想定外の例外 → デッドレターへ送って ACK
キューを毒メッセージで止めないため、どのケースでも ACK はちょうど 1 回。

並行性:
  同じパーティションのメッセージは順番に処理し、パーティション同士は
  並行に処理する（上限 concurrency）。処理中のパーティションは pause して
  おくので、遅い顧客が他のパーティションの処理を止めることはない。
  同じ顧客の直列化はロックが担う（リスナーではない）。
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Protocol

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError
from pydantic import ValidationError

from .config import WorkerConfig
from .errors import MalformedMessage
from .models import InboundOrderEvent
from .pipeline import OrderPipeline, PipelineOutcome

logger = logging.getLogger(__name__)

Ack = Callable[[], Awaitable[None]]


# ── デッドレター ─────────────────────────────────


class DeadLetterPublisher(Protocol):
    async def publish(
        self, payload: bytes, reason: str, detail: str, partition: int, offset: int
    ) -> None: ...


class KafkaDeadLetterPublisher:
    """処理できなかったメッセージを原因付きでデッドレタートピックに送る。"""

    def __init__(self, producer: AIOKafkaProducer, topic: str):
        self.producer = producer
        self.topic = topic

    async def publish(
        self, payload: bytes, reason: str, detail: str, partition: int, offset: int
    ) -> None:
        record = {
            "payload": payload.decode("utf-8", errors="replace"),
            "reason": reason,
            "detail": detail,
            "partition": partition,
            "offset": offset,
            "failedAt": datetime.now(timezone.utc).isoformat(),
        }
        await self.producer.send_and_wait(self.topic, json.dumps(record).encode("utf-8"))


# ── リスナー ─────────────────────────────────────


class OrderEventListener:
    """1 メッセージを受け取り、パイプラインを実行して ACK する。"""

    def __init__(
        self,
        pipeline: OrderPipeline,
        dead_letters: DeadLetterPublisher | None = None,
        redelivery_attempts: int = 0,
        redelivery_delay: float = 1.0,
    ):
        self.pipeline = pipeline
        self.dead_letters = dead_letters
        self.redelivery_attempts = redelivery_attempts
        self.redelivery_delay = redelivery_delay

    @staticmethod
    def decode(payload: bytes | str) -> InboundOrderEvent:
        try:
            return InboundOrderEvent.model_validate_json(payload)
        except ValidationError as e:
            raise MalformedMessage(f"Invalid message format: {e}") from e

    async def on_message(
        self,
        payload: bytes,
        partition: int,
        offset: int,
        ack: Ack,
    ) -> PipelineOutcome | None:
        started = time.monotonic()
        logger.info("Received message - Partition: %d, Offset: %d", partition, offset)

        outcome = None
        try:
            event = self.decode(payload)
            logger.info(
                "Order ID: %s, Customer ID: %s, Products: %d",
                event.order_id, event.customer_id, len(event.product_ids),
            )
            outcome = await self._process(event)
            elapsed_ms = (time.monotonic() - started) * 1000
            if outcome.succeeded:
                logger.info(
                    "Order processed: %s (Total: %s, Time: %.0fms)",
                    outcome.order_id, outcome.order.total_amount, elapsed_ms,
                )
            else:
                logger.error(
                    "Order processing failed: %s - %s (Time: %.0fms)",
                    outcome.order_id, outcome.error, elapsed_ms,
                )
                await self._dead_letter(
                    payload, outcome.reason, str(outcome.error), partition, offset
                )
        except MalformedMessage as e:
            logger.error(
                "Malformed message - Partition: %d, Offset: %d: %s", partition, offset, e
            )
            await self._dead_letter(payload, e.reason, str(e), partition, offset)
        except Exception as e:
            logger.exception(
                "Unexpected error processing message - Partition: %d, Offset: %d",
                partition, offset,
            )
            await self._dead_letter(payload, "unexpected error", repr(e), partition, offset)

        await ack()
        logger.info("Message acknowledged (partition: %d, offset: %d)", partition, offset)
        return outcome

    async def _process(self, event: InboundOrderEvent) -> PipelineOutcome:
        """一時障害による失敗だけ、回数上限付きで再実行する。"""
        outcome = await self.pipeline.process(event)
        redeliveries = 0
        while (
            not outcome.succeeded
            and outcome.retryable
            and redeliveries < self.redelivery_attempts
        ):
            redeliveries += 1
            logger.warning(
                "Redelivering order %s (%d/%d) after: %s",
                event.order_id, redeliveries, self.redelivery_attempts, outcome.reason,
            )
            await asyncio.sleep(self.redelivery_delay)
            outcome = await self.pipeline.process(event)
        return outcome

    async def _dead_letter(
        self, payload: bytes | str, reason: str, detail: str, partition: int, offset: int
    ) -> None:
        if self.dead_letters is None:
            return
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        try:
            await self.dead_letters.publish(payload, reason, detail, partition, offset)
        except KafkaError as e:
            logger.error(
                "Could not publish dead letter (partition: %d, offset: %d): %s",
                partition, offset, e,
            )


# ── Kafka ポーリングループ ────────────────────────


def create_kafka_consumer(config: WorkerConfig) -> AIOKafkaConsumer:
    return AIOKafkaConsumer(
        config.orders_topic,
        bootstrap_servers=config.kafka_bootstrap_servers,
        group_id=config.group_id,
        auto_offset_reset=config.auto_offset_reset,
        enable_auto_commit=False,
        max_poll_records=config.max_poll_records,
        session_timeout_ms=30000,
        heartbeat_interval_ms=10000,
    )


class KafkaOrderConsumer:
    """aiokafka のポーリングとオフセットコミットを担当する。"""

    def __init__(
        self,
        consumer: AIOKafkaConsumer,
        listener: OrderEventListener,
        concurrency: int = 3,
        max_records: int = 10,
        poll_timeout_ms: int = 1000,
        poll_error_delay: float = 1.0,
    ):
        self.consumer = consumer
        self.listener = listener
        self.concurrency = concurrency
        self.max_records = max_records
        self.poll_timeout_ms = poll_timeout_ms
        self.poll_error_delay = poll_error_delay

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまでポーリングを続ける。"""
        semaphore = asyncio.Semaphore(self.concurrency)
        in_flight: set[asyncio.Task] = set()
        logger.info("Consuming with concurrency %d", self.concurrency)

        try:
            while not shutdown_event.is_set():
                try:
                    batches = await self.consumer.getmany(
                        timeout_ms=self.poll_timeout_ms, max_records=self.max_records
                    )
                except KafkaError as e:
                    # ブローカー切断・リバランス中など。ループは止めずに再ポーリングする。
                    logger.error("Poll failed, retrying in %.1fs: %s", self.poll_error_delay, e)
                    await asyncio.sleep(self.poll_error_delay)
                    continue
                for tp, messages in batches.items():
                    # 処理が終わるまでこのパーティションからは取得しない
                    self.consumer.pause(tp)
                    task = asyncio.create_task(self._drain(tp, messages, semaphore))
                    in_flight.add(task)
                    task.add_done_callback(partial(self._on_drained, tp, in_flight))
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def _drain(
        self, tp: TopicPartition, messages: list, semaphore: asyncio.Semaphore
    ) -> None:
        async with semaphore:
            for msg in messages:
                await self.listener.on_message(
                    msg.value,
                    msg.partition,
                    msg.offset,
                    partial(self._commit, tp, msg.offset),
                )

    async def _commit(self, tp: TopicPartition, offset: int) -> None:
        try:
            await self.consumer.commit({tp: offset + 1})
        except KafkaError as e:
            # リバランスでパーティションを失った場合など。再配信で再処理される。
            logger.error("Offset commit failed for %s at %d: %s", tp, offset, e)

    def _on_drained(
        self, tp: TopicPartition, in_flight: set[asyncio.Task], task: asyncio.Task
    ) -> None:
        in_flight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Partition %s drain failed: %r", tp, task.exception())
        if tp in self.consumer.assignment():
            self.consumer.resume(tp)
