"""
Order Service — イベントハンドラ・レジストリ

ルーティングキー → (イベントの型, ハンドラ) の対応表。
対応表は RoutingKey の列挙と 1 対 1 の閉じた集合で、実行時に追加はしない。
新しいイベントを扱うには RoutingKey と ROUTES の両方に追加する。

dispatch() の結果:
  - 未知のルーティングキー      → ログを出して破棄 (False を返す。エラーではない)
  - ペイロードが壊れている      → DeserializationError
  - ハンドラの失敗 (注文なし等) → そのまま送出
  - 正常                        → True
"""

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from . import handlers
from .context import OperationContext
from .errors import DeserializationError
from .events import (
    InboundEvent,
    InventoryReservedEvent,
    OrderCompletedEvent,
    OrderFailedEvent,
    PaymentProcessedEvent,
    ShippingPreparedEvent,
)
from .service import OrderService

logger = logging.getLogger(__name__)

WORKER_ACTOR = "order-worker"


class RoutingKey(str, Enum):
    ORDER_COMPLETED = "order.completed"
    ORDER_FAILED = "order.failed"
    PAYMENT_PROCESSED = "payment.processed"
    INVENTORY_RESERVED = "inventory.reserved"
    SHIPPING_PREPARED = "shipping.prepared"


Handler = Callable[[OrderService, Any, OperationContext], Awaitable[None]]


@dataclass(frozen=True)
class Route:
    event_type: type[InboundEvent]
    handler: Handler


ROUTES: Mapping[RoutingKey, Route] = MappingProxyType(
    {
        RoutingKey.ORDER_COMPLETED: Route(OrderCompletedEvent, handlers.handle_order_completed),
        RoutingKey.ORDER_FAILED: Route(OrderFailedEvent, handlers.handle_order_failed),
        RoutingKey.PAYMENT_PROCESSED: Route(PaymentProcessedEvent, handlers.handle_payment_processed),
        RoutingKey.INVENTORY_RESERVED: Route(InventoryReservedEvent, handlers.handle_inventory_reserved),
        RoutingKey.SHIPPING_PREPARED: Route(ShippingPreparedEvent, handlers.handle_shipping_prepared),
    }
)


class EventHandlerRegistry:
    def __init__(
        self,
        service: OrderService,
        handler_timeout: float | None = None,
        routes: Mapping[RoutingKey, Route] = ROUTES,
    ) -> None:
        self.service = service
        self.handler_timeout = handler_timeout
        self._routes = routes

    def routing_keys(self) -> list[str]:
        return [key.value for key in self._routes]

    async def dispatch(self, routing_key: str, raw_message: str | bytes) -> bool:
        """ルーティングキーに対応するハンドラでメッセージを処理する。"""
        try:
            key = RoutingKey(routing_key)
        except ValueError:
            logger.warning("No handler registered for routing key: %s", routing_key)
            return False
        route = self._routes[key]

        try:
            event = route.event_type.model_validate_json(raw_message)
        except PydanticValidationError as e:
            logger.error("Failed to deserialize %s message: %s", routing_key, e)
            raise DeserializationError(routing_key, str(e)) from e

        ctx = OperationContext.start(
            correlation_id=event.correlation_id or None,
            actor=WORKER_ACTOR,
            timeout=self.handler_timeout,
            tags=(("routing_key", routing_key), ("order_id", str(event.order_id))),
        )
        try:
            await route.handler(self.service, event, ctx)
        except Exception:
            ctx.logger(logger).exception("Error handling %s event", routing_key)
            raise
        return True
