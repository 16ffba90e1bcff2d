import asyncio
import json

import httpx
import pytest

from app.config import Settings
from app.errors import PublishError
from app.events import OrderCreatedEvent
from app.publisher import (
    Envelope,
    EventPublisher,
    HttpRelayPublisher,
    RedisPubSubPublisher,
    RedisStreamPublisher,
    RejectedPublish,
    create_publisher,
)
from factories import make_order


class ScriptedPublisher(EventPublisher):
    """_send の結果を順番に返す (例外なら送出する)"""

    def __init__(self, results, **kwargs) -> None:
        self.delays: list[float] = []

        async def record_sleep(delay: float) -> None:
            self.delays.append(delay)

        kwargs.setdefault("sleep", record_sleep)
        super().__init__(**kwargs)
        self.results = list(results)
        self.envelopes: list[Envelope] = []

    async def _send(self, envelope: Envelope) -> bool:
        self.envelopes.append(envelope)
        result = self.results.pop(0) if self.results else True
        if isinstance(result, BaseException):
            raise result
        return result


def created_event():
    return OrderCreatedEvent.from_order(make_order(), "corr-123")


# ── 発行プロトコル ───────────────────────────────


@pytest.mark.asyncio
async def test_unconfirmed_publish_retries_then_fails():
    publisher = ScriptedPublisher([False, False, False, False], retry_attempts=3)

    with pytest.raises(PublishError) as exc_info:
        await publisher.publish("orders.events", "order.created", created_event())

    assert len(publisher.envelopes) == 3
    assert exc_info.value.attempts == 3
    assert publisher.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_transient_failure_then_success():
    publisher = ScriptedPublisher([ConnectionError("reset"), True], retry_base_delay=0.5)

    message_id = await publisher.publish("orders.events", "order.created", created_event())

    assert len(publisher.envelopes) == 2
    assert message_id == publisher.envelopes[-1].message_id
    # 試行ごとに新しいエンベロープ
    assert publisher.envelopes[0].message_id != publisher.envelopes[1].message_id
    assert publisher.delays == [0.5]


@pytest.mark.asyncio
async def test_rejected_publish_is_not_retried():
    publisher = ScriptedPublisher([RejectedPublish("bad routing key")])

    with pytest.raises(PublishError):
        await publisher.publish("orders.events", "order.created", created_event())
    assert len(publisher.envelopes) == 1


@pytest.mark.asyncio
async def test_unserializable_payload_fails_without_sending():
    publisher = ScriptedPublisher([])

    with pytest.raises(PublishError):
        await publisher.publish("orders.events", "order.created", object())
    assert publisher.envelopes == []


@pytest.mark.asyncio
async def test_expired_deadline_fails_without_sending():
    publisher = ScriptedPublisher([])
    deadline = asyncio.get_running_loop().time() - 1

    with pytest.raises(PublishError):
        await publisher.publish("orders.events", "order.created", created_event(), deadline=deadline)
    assert publisher.envelopes == []


@pytest.mark.asyncio
async def test_deadline_stops_backoff():
    publisher = ScriptedPublisher([ConnectionError("down")] * 3, retry_base_delay=60.0)
    deadline = asyncio.get_running_loop().time() + 5

    with pytest.raises(PublishError):
        await publisher.publish("orders.events", "order.created", created_event(), deadline=deadline)
    assert len(publisher.envelopes) == 1
    assert publisher.delays == []


@pytest.mark.asyncio
async def test_confirm_timeout_is_transient():
    class SlowPublisher(ScriptedPublisher):
        async def _send(self, envelope):
            self.envelopes.append(envelope)
            await asyncio.sleep(10)
            return True

    publisher = SlowPublisher([], retry_attempts=2, confirm_timeout=0.01)

    with pytest.raises(PublishError):
        await publisher.publish("orders.events", "order.created", created_event())
    assert len(publisher.envelopes) == 2


@pytest.mark.asyncio
async def test_without_confirms_unacknowledged_send_succeeds():
    publisher = ScriptedPublisher([False], confirms=False)
    await publisher.publish("orders.events", "order.created", created_event())
    assert len(publisher.envelopes) == 1


@pytest.mark.asyncio
async def test_body_is_camel_case_and_carries_correlation_id():
    publisher = ScriptedPublisher([True])
    await publisher.publish("orders.events", "order.created", created_event())

    envelope = publisher.envelopes[0]
    body = json.loads(envelope.body)
    assert envelope.correlation_id == "corr-123"
    assert envelope.message_type == "OrderCreatedEvent"
    assert envelope.content_type == "application/json"
    assert body["orderNumber"] == "ORD-20260101-00000001"
    assert body["totalAmount"] == 74.78
    assert body["shippingAddress"]["zipCode"] == "150-0002"


@pytest.mark.asyncio
async def test_mapping_payload():
    publisher = ScriptedPublisher([True])
    await publisher.publish("orders.events", "order.updated", {"orderId": "x", "correlationId": "c-1"})
    assert publisher.envelopes[0].correlation_id == "c-1"


# ── バックエンド ─────────────────────────────────


class FakeRedis:
    def __init__(self, receivers: int = 1) -> None:
        self.streams: list[tuple[str, dict]] = []
        self.channels: list[tuple[str, str]] = []
        self.receivers = receivers
        self.closed = False

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        self.streams.append((name, fields))
        return f"{len(self.streams)}-0"

    async def publish(self, channel, message):
        self.channels.append((channel, message))
        return self.receivers

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_redis_stream_publisher():
    redis = FakeRedis()
    publisher = RedisStreamPublisher(redis, retry_base_delay=0.0)

    message_id = await publisher.publish("orders.events", "order.created", created_event())

    name, fields = redis.streams[0]
    assert name == "orders.events"
    assert fields["routing_key"] == "order.created"
    assert fields["message_id"] == message_id
    assert json.loads(fields["body"])["correlationId"] == "corr-123"

    await publisher.close()
    assert redis.closed


@pytest.mark.asyncio
async def test_redis_pubsub_publisher():
    redis = FakeRedis(receivers=2)
    publisher = RedisPubSubPublisher(redis)

    await publisher.publish("orders.events", "order.created", created_event())

    channel, message = redis.channels[0]
    payload = json.loads(message)
    assert channel == "orders.events"
    assert payload["event_type"] == "order.created"
    assert payload["data"]["orderNumber"] == "ORD-20260101-00000001"


@pytest.mark.asyncio
async def test_redis_pubsub_without_subscribers_is_unconfirmed():
    redis = FakeRedis(receivers=0)
    publisher = RedisPubSubPublisher(redis, retry_attempts=2, retry_base_delay=0.0)

    with pytest.raises(PublishError):
        await publisher.publish("orders.events", "order.created", created_event())
    assert len(redis.channels) == 2


def relay(handler) -> HttpRelayPublisher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://relay")
    return HttpRelayPublisher(client, retry_base_delay=0.0)


@pytest.mark.asyncio
async def test_http_relay_publisher():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"status": "published"})

    publisher = relay(handler)
    await publisher.publish("orders.events", "order.created", created_event())
    await publisher.close()

    assert requests[0].url.path == "/api/events/publish"
    sent = json.loads(requests[0].content)
    assert sent["exchange"] == "orders.events"
    assert sent["routingKey"] == "order.created"
    assert sent["message"]["orderNumber"] == "ORD-20260101-00000001"
    assert "timestamp" in sent


@pytest.mark.asyncio
async def test_http_relay_retries_server_errors():
    statuses = [503, 200]

    def handler(request):
        return httpx.Response(statuses.pop(0))

    publisher = relay(handler)
    await publisher.publish("orders.events", "order.created", created_event())
    await publisher.close()
    assert statuses == []


@pytest.mark.asyncio
async def test_http_relay_client_error_is_rejected():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text="unknown exchange")

    publisher = relay(handler)
    with pytest.raises(PublishError):
        await publisher.publish("orders.events", "order.created", created_event())
    await publisher.close()
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "provider,expected",
    [
        ("redis-streams", RedisStreamPublisher),
        ("redis-pubsub", RedisPubSubPublisher),
        ("http", HttpRelayPublisher),
    ],
)
async def test_create_publisher_selects_backend(provider, expected):
    publisher = create_publisher(Settings(broker_provider=provider, publish_retry_attempts=5))
    try:
        assert isinstance(publisher, expected)
        assert publisher.retry_attempts == 5
    finally:
        await publisher.close()
