"""
Order Service — 注文ステータスの状態遷移

状態遷移:
    Created → Confirmed → Processing → Shipped → Delivered
    Cancelled / Refunded は終端以外のどの状態からでも遷移できる

    終端状態: Delivered, Cancelled, Refunded

上流サービスのイベントはそれぞれ 1 本の遷移に対応する:
    payment.processed  → Confirmed
    inventory.reserved → Processing
    shipping.prepared  → Shipped
    order.completed    → Delivered
    order.failed       → Cancelled

transition() は注文オブジェクトを書き換えて返すだけで、
保存や イベント発行は行わない (呼び出し側 = service.py の責務)。
"""

import logging
from datetime import datetime, timezone

from .aggregate import Order, OrderStatus, PaymentStatus, ShippingStatus
from .errors import InvalidTransitionError

logger = logging.getLogger(__name__)

S = OrderStatus

# 正常系の一本道
LIFECYCLE: tuple[OrderStatus, ...] = (
    S.CREATED,
    S.CONFIRMED,
    S.PROCESSING,
    S.SHIPPED,
    S.DELIVERED,
)

TERMINAL_STATES = frozenset({S.DELIVERED, S.CANCELLED, S.REFUNDED})

_SIDE_BRANCHES = frozenset({S.CANCELLED, S.REFUNDED})

VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.CREATED: frozenset({S.CONFIRMED}) | _SIDE_BRANCHES,
    S.CONFIRMED: frozenset({S.PROCESSING}) | _SIDE_BRANCHES,
    S.PROCESSING: frozenset({S.SHIPPED}) | _SIDE_BRANCHES,
    S.SHIPPED: frozenset({S.DELIVERED}) | _SIDE_BRANCHES,
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

EVENT_TRANSITIONS: dict[str, OrderStatus] = {
    "payment.processed": S.CONFIRMED,
    "inventory.reserved": S.PROCESSING,
    "shipping.prepared": S.SHIPPED,
    "order.completed": S.DELIVERED,
    "order.failed": S.CANCELLED,
}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in VALID_TRANSITIONS[current]


def has_reached(current: OrderStatus, target: OrderStatus) -> bool:
    """
    current がすでに target に到達済み (または通過済み) かどうか。

    再配送されたイベントの判定に使う。終端状態の注文は
    どの target に対しても到達済みとみなす。
    """
    if current == target or is_terminal(current):
        return True
    if current in LIFECYCLE and target in LIFECYCLE:
        return LIFECYCLE.index(current) >= LIFECYCLE.index(target)
    return False


def _apply_sub_statuses(order: Order, target: OrderStatus) -> None:
    if target == S.CONFIRMED:
        order.payment_status = PaymentStatus.CAPTURED
    elif target == S.PROCESSING:
        order.shipping_status = ShippingStatus.PREPARING
    elif target == S.SHIPPED:
        order.shipping_status = ShippingStatus.SHIPPED
    elif target == S.DELIVERED:
        order.shipping_status = ShippingStatus.DELIVERED
    elif target == S.CANCELLED:
        if order.payment_status != PaymentStatus.CAPTURED:
            order.payment_status = PaymentStatus.CANCELLED
    elif target == S.REFUNDED:
        order.payment_status = PaymentStatus.REFUNDED


def transition(
    order: Order,
    target: OrderStatus,
    reason: str | None = None,
    *,
    actor: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    注文を target に遷移させる。

    - 遷移表にない遷移は InvalidTransitionError。注文は一切変更しない。
    - 終端状態への同じ遷移の再適用は何もせず成功 (再配送対策)。
    """
    current = order.status
    if current == target and is_terminal(current):
        return order
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)

    order.status = target
    order.updated_at = now or datetime.now(timezone.utc)
    if actor:
        order.updated_by = actor
    _apply_sub_statuses(order, target)
    logger.debug(
        "Order %s transitioned %s -> %s (reason: %s)",
        order.id, current.value, target.value, reason or "-",
    )
    return order
