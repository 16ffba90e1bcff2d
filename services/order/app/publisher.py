"""
Order Service — イベントパブリッシャー

ドメインイベントを JSON にしてブローカーへ発行する。
バックエンドは起動時の設定 (BROKER_PROVIDER) で 1 つ選ぶ:

  redis-streams : XADD で Stream に追記。返ってきたエントリ ID が確認応答
  redis-pubsub  : PUBLISH でチャネルに送信。受信者が 1 人以上いれば確認応答
                  (Pub/Sub は fire-and-forget。購読者がいなければ消える)
  http          : メッセージブローカーサービスへ HTTP で中継。2xx が確認応答

共通の発行プロトコル:
  1. ペイロードを camelCase の JSON にする (ここで失敗したら即 PublishError)
  2. 毎回新しいエンベロープ (message_id / timestamp / content_type) を作って送信
  3. publisher confirms が有効なら確認応答を confirm_timeout まで待つ
  4. 一時的な失敗 (接続断・タイムアウト・未確認) は指数バックオフでリトライ (tenacity)
  5. リトライを使い切るか締め切り (deadline) を過ぎたら PublishError
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

import httpx
import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .errors import PublishError

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"


class UnconfirmedPublish(Exception):
    """ブローカーが確認応答を返さなかった (一時的な失敗としてリトライ対象)"""


class RejectedPublish(Exception):
    """ブローカーがメッセージを拒否した (リトライしても結果は変わらない)"""


TRANSIENT_ERRORS = (
    UnconfirmedPublish,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    RedisConnectionError,
    RedisTimeoutError,
    httpx.TransportError,
)


@dataclass(frozen=True)
class Envelope:
    """1 回の発行試行で送るメッセージ (試行ごとに作り直す)"""

    exchange: str
    routing_key: str
    body: str
    message_type: str
    correlation_id: str = ""
    message_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    content_type: str = CONTENT_TYPE

    def to_fields(self) -> dict[str, str]:
        return {
            "message_id": self.message_id,
            "routing_key": self.routing_key,
            "message_type": self.message_type,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp,
            "content_type": self.content_type,
            "body": self.body,
        }

    def to_json(self) -> str:
        return json.dumps(
            {
                "event_type": self.routing_key,
                "message_id": self.message_id,
                "message_type": self.message_type,
                "correlation_id": self.correlation_id,
                "timestamp": self.timestamp,
                "content_type": self.content_type,
                "data": json.loads(self.body),
            }
        )


def serialize_payload(payload) -> tuple[str, str, str]:
    """ペイロードを (body, message_type, correlation_id) にする。"""
    try:
        if isinstance(payload, BaseModel):
            body = payload.model_dump_json(by_alias=True)
            correlation_id = getattr(payload, "correlation_id", "") or ""
        elif isinstance(payload, Mapping):
            body = json.dumps(dict(payload), default=str)
            correlation_id = str(payload.get("correlationId", "") or "")
        else:
            raise TypeError(f"Unsupported payload type: {type(payload).__name__}")
    except (TypeError, ValueError) as e:
        raise PublishError(f"Failed to serialize payload: {e}") from e
    return body, type(payload).__name__, correlation_id


class EventPublisher(ABC):
    """
    発行プロトコル (シリアライズ・確認応答待ち・リトライ) の共通実装。
    バックエンドは _send() だけを実装する。
    """

    def __init__(
        self,
        *,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        confirms: bool = True,
        confirm_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.confirms = confirms
        self.confirm_timeout = confirm_timeout
        self._sleep = sleep

    @abstractmethod
    async def _send(self, envelope: Envelope) -> bool:
        """1 回送信し、ブローカーの確認応答があれば True を返す。"""

    async def close(self) -> None:
        return None

    async def publish(
        self,
        topic: str,
        routing_key: str,
        payload,
        *,
        deadline: float | None = None,
    ) -> str:
        """
        topic (exchange / stream / channel) に routing_key 付きで発行し、
        確認された message_id を返す。失敗時は PublishError。
        """
        body, message_type, correlation_id = serialize_payload(payload)
        loop = asyncio.get_running_loop()

        def past_deadline(retry_state: RetryCallState) -> bool:
            # 次のバックオフ後に締め切りを過ぎるならリトライしない
            if deadline is None:
                return False
            delay = self.retry_base_delay * 2 ** (retry_state.attempt_number - 1)
            return loop.time() + delay >= deadline

        def log_failure(retry_state: RetryCallState) -> None:
            logger.warning(
                "Failed to publish message (attempt %d/%d). Exchange: %s, RoutingKey: %s: %r",
                retry_state.attempt_number, self.retry_attempts, topic, routing_key,
                retry_state.outcome.exception(),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(self.retry_attempts) | past_deadline,
            wait=wait_exponential(multiplier=self.retry_base_delay),
            sleep=self._sleep,
            after=log_failure,
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if deadline is not None and loop.time() >= deadline:
                        raise PublishError(
                            f"Deadline exceeded before publishing {topic}/{routing_key}",
                            attempts - 1,
                        )
                    envelope = Envelope(
                        exchange=topic,
                        routing_key=routing_key,
                        body=body,
                        message_type=message_type,
                        correlation_id=correlation_id,
                    )
                    logger.debug(
                        "Publishing message to exchange: %s, routing key: %s, type: %s",
                        topic, routing_key, message_type,
                    )
                    await self._attempt(envelope, deadline)
        except RejectedPublish as e:
            raise PublishError(f"Broker rejected {topic}/{routing_key}: {e}", attempts) from e
        except TRANSIENT_ERRORS as e:
            logger.error("Failed to publish message after %d attempts", attempts)
            raise PublishError(
                f"Failed to publish {topic}/{routing_key} after {attempts} attempts", attempts
            ) from e

        logger.info(
            "Successfully published message to %s/%s. MessageId: %s",
            topic, routing_key, envelope.message_id,
        )
        return envelope.message_id

    async def _attempt(self, envelope: Envelope, deadline: float | None) -> None:
        timeout = self.confirm_timeout if self.confirms else None
        if deadline is not None:
            remaining = max(deadline - asyncio.get_running_loop().time(), 0.0)
            timeout = remaining if timeout is None else min(timeout, remaining)

        acknowledged = await asyncio.wait_for(self._send(envelope), timeout)
        if self.confirms and not acknowledged:
            raise UnconfirmedPublish(
                f"Message {envelope.message_id} was not confirmed by the broker"
            )


# ── バックエンド ─────────────────────────────────


class RedisStreamPublisher(EventPublisher):
    def __init__(self, redis: aioredis.Redis, *, maxlen: int | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.redis = redis
        self.maxlen = maxlen

    async def _send(self, envelope: Envelope) -> bool:
        entry_id = await self.redis.xadd(
            envelope.exchange,
            envelope.to_fields(),
            maxlen=self.maxlen,
            approximate=True,
        )
        return bool(entry_id)

    async def close(self) -> None:
        await self.redis.aclose()


class RedisPubSubPublisher(EventPublisher):
    def __init__(self, redis: aioredis.Redis, **kwargs) -> None:
        super().__init__(**kwargs)
        self.redis = redis

    async def _send(self, envelope: Envelope) -> bool:
        receivers = await self.redis.publish(envelope.exchange, envelope.to_json())
        return receivers > 0

    async def close(self) -> None:
        await self.redis.aclose()


class HttpRelayPublisher(EventPublisher):
    """メッセージブローカーサービス (HTTP) 経由で発行する"""

    PUBLISH_PATH = "/api/events/publish"

    def __init__(self, client: httpx.AsyncClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.client = client

    async def _send(self, envelope: Envelope) -> bool:
        resp = await self.client.post(
            self.PUBLISH_PATH,
            json={
                "exchange": envelope.exchange,
                "routingKey": envelope.routing_key,
                "message": json.loads(envelope.body),
                "timestamp": envelope.timestamp,
                "messageId": envelope.message_id,
                "messageType": envelope.message_type,
                "correlationId": envelope.correlation_id,
                "contentType": envelope.content_type,
            },
        )
        if resp.status_code >= 500:
            raise UnconfirmedPublish(f"Relay returned {resp.status_code}")
        if resp.status_code >= 400:
            raise RejectedPublish(f"Relay returned {resp.status_code}: {resp.text}")
        return True

    async def close(self) -> None:
        await self.client.aclose()


def create_publisher(settings: Settings) -> EventPublisher:
    """設定された BROKER_PROVIDER のパブリッシャーを作る。"""
    options = {
        "retry_attempts": settings.publish_retry_attempts,
        "retry_base_delay": settings.publish_retry_base_delay,
        "confirms": settings.publisher_confirms,
        "confirm_timeout": settings.publish_confirm_timeout,
    }
    if settings.broker_provider == "http":
        headers = {"X-API-Key": settings.relay_api_key} if settings.relay_api_key else {}
        client = httpx.AsyncClient(
            base_url=settings.relay_url, timeout=settings.relay_timeout, headers=headers
        )
        publisher: EventPublisher = HttpRelayPublisher(client, **options)
    elif settings.broker_provider == "redis-pubsub":
        publisher = RedisPubSubPublisher(
            aioredis.from_url(settings.redis_url, decode_responses=True), **options
        )
    else:
        publisher = RedisStreamPublisher(
            aioredis.from_url(settings.redis_url, decode_responses=True), **options
        )
    logger.info(
        "Event publisher initialized. Provider: %s, Exchange: %s",
        settings.broker_provider, settings.broker_exchange,
    )
    return publisher
