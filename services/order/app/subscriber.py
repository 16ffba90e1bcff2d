"""
Order Service — Redis Streams サブスクライバー

上流サービスのイベント Stream をコンシューマーグループで購読し、
受信したメッセージを EventHandlerRegistry に渡す。

配信は at-least-once:
  - 処理成功 / 未知のルーティングキー → XACK
  - ペイロードが壊れている            → デッドレター Stream に移して XACK
  - その他の失敗                      → ACK せず pending のまま残す
pending のまま claim_idle_ms を過ぎたメッセージは XCLAIM で取り直して再処理し、
max_deliveries 回配信しても終わらなければデッドレターに移す。

Stream エントリのフィールドは publisher.Envelope.to_fields() と同じ形
(routing_key / body / message_id / correlation_id ...)。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from .config import Settings
from .errors import DeserializationError
from .registry import EventHandlerRegistry

logger = logging.getLogger(__name__)


class StreamConsumer:
    def __init__(
        self,
        redis: aioredis.Redis,
        registry: EventHandlerRegistry,
        *,
        stream: str,
        group: str,
        consumer: str,
        dead_letter_stream: str,
        block_ms: int = 1000,
        batch_size: int = 10,
        max_deliveries: int = 5,
        claim_idle_ms: int = 60000,
    ) -> None:
        self.redis = redis
        self.registry = registry
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.dead_letter_stream = dead_letter_stream
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.max_deliveries = max_deliveries
        self.claim_idle_ms = claim_idle_ms

    @classmethod
    def from_settings(
        cls, redis: aioredis.Redis, registry: EventHandlerRegistry, settings: Settings
    ) -> "StreamConsumer":
        return cls(
            redis,
            registry,
            stream=settings.inbound_stream,
            group=settings.consumer_group,
            consumer=settings.consumer_name,
            dead_letter_stream=settings.dead_letter_stream,
            block_ms=settings.worker_block_ms,
            batch_size=settings.worker_batch_size,
            max_deliveries=settings.worker_max_deliveries,
            claim_idle_ms=settings.worker_claim_idle_ms,
        )

    async def ensure_group(self) -> None:
        """コンシューマーグループを作る (既にあれば何もしない)。"""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s on stream %s", self.group, self.stream)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def process_message(self, entry_id: str, fields: dict[str, str]) -> bool:
        """1 件処理する。ACK したら True、pending に残したら False。"""
        routing_key = fields.get("routing_key", "")
        body = fields.get("body", "")
        try:
            handled = await self.registry.dispatch(routing_key, body)
        except DeserializationError as e:
            await self.dead_letter(entry_id, fields, str(e))
            return True
        except Exception:
            logger.exception(
                "Failed to process message %s (%s); leaving it pending", entry_id, routing_key
            )
            return False

        await self.redis.xack(self.stream, self.group, entry_id)
        if handled:
            logger.info("Processed message %s (%s)", entry_id, routing_key)
        else:
            logger.info("Discarded message %s with unbound routing key %s", entry_id, routing_key)
        return True

    async def dead_letter(self, entry_id: str, fields: dict[str, str], reason: str) -> None:
        dead = dict(fields)
        dead["original_id"] = entry_id
        dead["original_stream"] = self.stream
        dead["error"] = reason
        await self.redis.xadd(self.dead_letter_stream, dead)
        await self.redis.xack(self.stream, self.group, entry_id)
        logger.warning(
            "Moved message %s to dead-letter stream %s: %s",
            entry_id, self.dead_letter_stream, reason,
        )

    async def poll_once(self) -> int:
        """新着メッセージを 1 回読み込んで処理する。処理した件数を返す。"""
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: ">"},
            count=self.batch_size,
            block=self.block_ms,
        )
        count = 0
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                await self.process_message(entry_id, fields or {})
                count += 1
        return count

    async def reclaim_stale(self) -> int:
        """放置された pending メッセージを取り直して再処理する。"""
        pending = await self.redis.xpending_range(
            self.stream,
            self.group,
            min="-",
            max="+",
            count=self.batch_size,
            idle=self.claim_idle_ms,
        )
        if not pending:
            return 0

        deliveries = {p["message_id"]: p["times_delivered"] for p in pending}
        claimed = await self.redis.xclaim(
            self.stream,
            self.group,
            self.consumer,
            min_idle_time=self.claim_idle_ms,
            message_ids=list(deliveries),
        )
        count = 0
        for entry_id, fields in claimed:
            if fields is None:
                # Stream から削除済み
                await self.redis.xack(self.stream, self.group, entry_id)
                continue
            if deliveries.get(entry_id, 0) >= self.max_deliveries:
                await self.dead_letter(
                    entry_id, fields, f"Exceeded {self.max_deliveries} delivery attempts"
                )
            else:
                await self.process_message(entry_id, fields)
            count += 1
        return count

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで読み込みを繰り返す。"""
        await self.ensure_group()
        logger.info(
            "Subscribed to %s as %s/%s. Routing keys: %s",
            self.stream, self.group, self.consumer, ", ".join(self.registry.routing_keys()),
        )
        while not shutdown_event.is_set():
            try:
                await self.reclaim_stale()
                await self.poll_once()
            except Exception:
                logger.exception("Failed to read from stream %s", self.stream)
                await asyncio.sleep(1.0)


async def run_subscriber(
    redis_conn: aioredis.Redis,
    registry: EventHandlerRegistry,
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> None:
    consumer = StreamConsumer.from_settings(redis_conn, registry, settings)
    try:
        await consumer.run(shutdown_event)
    finally:
        await redis_conn.aclose()
