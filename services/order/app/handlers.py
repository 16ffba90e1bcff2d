"""
Order Service — 受信イベントのハンドラ

上流サービス (決済・在庫・配送・注文処理) のイベントを受け取り、
OrderService を通して注文ステータスを 1 段階進める。

各ハンドラが行う状態更新は 1 回だけ。遷移先は state_machine.EVENT_TRANSITIONS で決まる。
注文が見つからない等の失敗は握りつぶさずに送出する (ack するかは呼び出し側が決める)。
"""

import logging

from .context import OperationContext
from .events import (
    InventoryReservedEvent,
    OrderCompletedEvent,
    OrderFailedEvent,
    PaymentProcessedEvent,
    ShippingPreparedEvent,
)
from .service import OrderService
from .state_machine import EVENT_TRANSITIONS

logger = logging.getLogger(__name__)


async def handle_payment_processed(
    service: OrderService, event: PaymentProcessedEvent, ctx: OperationContext
) -> None:
    log = ctx.logger(logger)
    log.info(
        "Processing payment processed event for order: %s [Amount: %s %s]",
        event.order_id, event.amount, event.currency,
    )
    _, changed = await service.advance_from_event(
        event.order_id,
        EVENT_TRANSITIONS["payment.processed"],
        f"Payment {event.payment_id} processed",
        ctx,
    )
    if changed:
        log.info("Updated order %s status to Confirmed (payment processed)", event.order_id)


async def handle_inventory_reserved(
    service: OrderService, event: InventoryReservedEvent, ctx: OperationContext
) -> None:
    log = ctx.logger(logger)
    log.info(
        "Processing inventory reserved event for order: %s [Reservation: %s]",
        event.order_id, event.reservation_id,
    )
    _, changed = await service.advance_from_event(
        event.order_id,
        EVENT_TRANSITIONS["inventory.reserved"],
        f"Inventory reservation {event.reservation_id}",
        ctx,
    )
    if changed:
        log.info("Updated order %s status to Processing (inventory reserved)", event.order_id)


async def handle_shipping_prepared(
    service: OrderService, event: ShippingPreparedEvent, ctx: OperationContext
) -> None:
    log = ctx.logger(logger)
    log.info(
        "Processing shipping prepared event for order: %s [Tracking: %s]",
        event.order_id, event.tracking_number,
    )
    _, changed = await service.advance_from_event(
        event.order_id,
        EVENT_TRANSITIONS["shipping.prepared"],
        f"Shipment {event.shipping_id} prepared, tracking {event.tracking_number}",
        ctx,
    )
    if changed:
        log.info("Updated order %s status to Shipped (shipping prepared)", event.order_id)


async def handle_order_completed(
    service: OrderService, event: OrderCompletedEvent, ctx: OperationContext
) -> None:
    log = ctx.logger(logger)
    log.info("Processing order completed event for order: %s", event.order_id)
    _, changed = await service.advance_from_event(
        event.order_id, EVENT_TRANSITIONS["order.completed"], "Order completed", ctx
    )
    if changed:
        log.info("Updated order %s status to Delivered (order completed)", event.order_id)


async def handle_order_failed(
    service: OrderService, event: OrderFailedEvent, ctx: OperationContext
) -> None:
    log = ctx.logger(logger)
    log.info(
        "Processing order failed event for order: %s [Reason: %s]", event.order_id, event.reason
    )
    _, changed = await service.advance_from_event(
        event.order_id, EVENT_TRANSITIONS["order.failed"], event.reason, ctx
    )
    if changed:
        log.info("Updated order %s status to Cancelled due to: %s", event.order_id, event.reason)
