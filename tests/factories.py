"""テスト用の注文データ"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from app.aggregate import Address, Order, OrderItem, OrderStatus

CUSTOMER_ID = "507f1f77bcf86cd799439011"
OTHER_CUSTOMER_ID = "507f1f77bcf86cd799439012"
PRODUCT_A = "507f191e810c19729de860ea"
PRODUCT_B = "507f191e810c19729de860eb"


def address(**overrides) -> Address:
    values = dict(
        address_line1="1-2-3 Shibuya",
        city="Tokyo",
        state="Tokyo",
        zip_code="150-0002",
        country="JP",
    )
    values.update(overrides)
    return Address(**values)


def item(product_id: str = PRODUCT_A, unit_price: str = "29.99", quantity: int = 2, **kw) -> OrderItem:
    return OrderItem(
        product_id=product_id,
        product_name=kw.pop("product_name", "Widget"),
        unit_price=Decimal(unit_price),
        quantity=quantity,
        **kw,
    )


def make_order(
    status: OrderStatus = OrderStatus.CREATED,
    customer_id: str = CUSTOMER_ID,
    created_at: datetime | None = None,
    total: str = "74.78",
    number: str = "ORD-20260101-00000001",
) -> Order:
    now = created_at or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    return Order(
        customer_id=customer_id,
        order_number=number,
        shipping_address=address(),
        billing_address=address(),
        created_at=now,
        updated_at=now,
        items=[
            item(
                tax_amount=Decimal("4.80"),
                total_price=Decimal("64.78"),
            )
        ],
        status=status,
        subtotal=Decimal("59.98"),
        tax_amount=Decimal("4.80"),
        shipping_cost=Decimal("10.00"),
        total_amount=Decimal(total),
    )


# ── 受信イベントのペイロード ─────────────────────


def payment_processed(order_id: UUID, correlation_id: str = "corr-payment") -> str:
    return json.dumps(
        {
            "orderId": str(order_id),
            "correlationId": correlation_id,
            "paymentId": "pay-001",
            "amount": 74.78,
            "currency": "USD",
            "processedAt": "2026-01-01T12:05:00Z",
        }
    )


def inventory_reserved(order_id: UUID) -> str:
    return json.dumps(
        {
            "orderId": str(order_id),
            "correlationId": "corr-inventory",
            "reservationId": "res-001",
            "reservedAt": "2026-01-01T12:10:00Z",
        }
    )


def shipping_prepared(order_id: UUID) -> str:
    return json.dumps(
        {
            "orderId": str(order_id),
            "correlationId": "corr-shipping",
            "shippingId": "ship-001",
            "trackingNumber": "TRK123456",
            "preparedAt": "2026-01-02T09:00:00Z",
        }
    )


def order_completed(order_id: UUID) -> str:
    return json.dumps(
        {
            "orderId": str(order_id),
            "correlationId": "corr-completed",
            "completedAt": "2026-01-03T15:00:00Z",
        }
    )


def order_failed(order_id: UUID, reason: str = "Payment declined") -> str:
    return json.dumps(
        {
            "orderId": str(order_id),
            "correlationId": "corr-failed",
            "reason": reason,
            "failedAt": "2026-01-01T12:06:00Z",
        }
    )
