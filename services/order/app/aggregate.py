"""
Order Service — 注文集約 (Order Aggregate)

注文と明細、住所スナップショットを表すドメインモデル。
永続化 (repository.py) や HTTP (schemas.py) の形式からは独立している。

状態遷移のルールは state_machine.py にまとめてあり、
この集約自身は status を勝手に書き換えない。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4


class OrderStatus(str, Enum):
    CREATED = "Created"
    CONFIRMED = "Confirmed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    AUTHORIZED = "Authorized"
    CAPTURED = "Captured"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class ShippingStatus(str, Enum):
    NOT_SHIPPED = "NotShipped"
    PREPARING = "Preparing"
    SHIPPED = "Shipped"
    IN_TRANSIT = "InTransit"
    DELIVERED = "Delivered"
    RETURNED = "Returned"


@dataclass(frozen=True)
class Address:
    """注文時点の住所。顧客の住所が後で変わってもこの値は変わらない。"""

    address_line1: str
    city: str
    state: str
    zip_code: str
    country: str
    address_line2: str = ""

    def to_dict(self) -> dict:
        return {
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Address":
        return cls(
            address_line1=data["address_line1"],
            address_line2=data.get("address_line2") or "",
            city=data["city"],
            state=data["state"],
            zip_code=data["zip_code"],
            country=data["country"],
        )


@dataclass
class OrderItem:
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    product_sku: str | None = None
    discount_amount: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    total_price: Decimal = Decimal("0.00")
    id: UUID = field(default_factory=uuid4)


@dataclass
class Order:
    customer_id: str
    order_number: str
    shipping_address: Address
    billing_address: Address
    created_at: datetime
    updated_at: datetime
    items: list[OrderItem] = field(default_factory=list)
    status: OrderStatus = OrderStatus.CREATED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    shipping_status: ShippingStatus = ShippingStatus.NOT_SHIPPED
    subtotal: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    shipping_cost: Decimal = Decimal("0.00")
    discount_amount: Decimal = Decimal("0.00")
    total_amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    created_by: str = "system"
    updated_by: str | None = None
    version: int = 1
    id: UUID = field(default_factory=uuid4)

    def __repr__(self) -> str:
        return (
            f"<Order(number='{self.order_number}', status='{self.status.value}', "
            f"total={self.total_amount})>"
        )
