"""
Order Service — イベント定義

送信イベント (Outbound):
    order.created / order.updated / order.cancelled / order.shipped /
    order.delivered / order.deleted

受信イベント (Inbound, 上流サービスから):
    payment.processed / inventory.reserved / shipping.prepared /
    order.completed / order.failed

イベントは過去形で命名し、不変 (frozen) として扱う。
JSON のフィールド名は camelCase に固定する (他サービスとの契約)。
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel

from .aggregate import Address, Order, OrderStatus

# JSON では数値として出す (Decimal のままだと文字列になる)
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class EventModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ── 送信イベント ─────────────────────────────────


class AddressSnapshot(EventModel):
    address_line1: str
    address_line2: str = ""
    city: str
    state: str
    zip_code: str
    country: str

    @classmethod
    def from_address(cls, address: Address) -> "AddressSnapshot":
        return cls(**address.to_dict())


class OrderItemSnapshot(EventModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Money
    total_price: Money


class OrderCreatedEvent(EventModel):
    """注文が作成された"""

    order_id: UUID
    order_number: str
    customer_id: str
    status: OrderStatus
    total_amount: Money
    currency: str
    items: tuple[OrderItemSnapshot, ...]
    shipping_address: AddressSnapshot
    billing_address: AddressSnapshot
    created_at: datetime
    created_by: str
    correlation_id: str

    @classmethod
    def from_order(cls, order: Order, correlation_id: str) -> "OrderCreatedEvent":
        return cls(
            order_id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            status=order.status,
            total_amount=order.total_amount,
            currency=order.currency,
            items=tuple(
                OrderItemSnapshot(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.total_price,
                )
                for item in order.items
            ),
            shipping_address=AddressSnapshot.from_address(order.shipping_address),
            billing_address=AddressSnapshot.from_address(order.billing_address),
            created_at=order.created_at,
            created_by=order.created_by,
            correlation_id=correlation_id,
        )


class OrderStatusChangedEvent(EventModel):
    """注文ステータスが変わった (更新・キャンセル・出荷・配達の通知に使う)"""

    order_id: UUID
    order_number: str
    customer_id: str
    previous_status: OrderStatus
    new_status: OrderStatus
    payment_status: str
    shipping_status: str
    updated_at: datetime
    updated_by: str
    reason: str | None = None
    correlation_id: str


class OrderDeletedEvent(EventModel):
    """注文が削除された"""

    order_id: UUID
    order_number: str
    customer_id: str
    status: OrderStatus
    deleted_at: datetime
    deleted_by: str
    reason: str | None = None
    correlation_id: str


# ── 受信イベント ─────────────────────────────────


class InboundEvent(EventModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    order_id: UUID
    correlation_id: str = ""


class PaymentProcessedEvent(InboundEvent):
    """決済が完了した"""

    payment_id: str
    amount: Money
    currency: str
    processed_at: datetime


class InventoryReservedEvent(InboundEvent):
    """在庫が引き当てられた"""

    reservation_id: str
    reserved_at: datetime


class ShippingPreparedEvent(InboundEvent):
    """出荷準備が完了した"""

    shipping_id: str
    tracking_number: str
    prepared_at: datetime


class OrderCompletedEvent(InboundEvent):
    """注文処理が完了した (配達済み)"""

    completed_at: datetime


class OrderFailedEvent(InboundEvent):
    """注文処理が失敗した"""

    reason: str
    failed_at: datetime
