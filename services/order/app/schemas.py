"""
Order Service — API の Request / Response モデル

JSON のフィールド名は camelCase (イベントと同じ規約)。
snake_case でも受け付ける (populate_by_name)。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .aggregate import Address, Order, OrderItem, OrderStatus
from .events import Money
from .repository import Page

OBJECT_ID_PATTERN = r"^[0-9a-fA-F]{24}$"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddressModel(ApiModel):
    address_line1: str = Field(min_length=1, max_length=200)
    address_line2: str = Field(default="", max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    zip_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=1, max_length=100)

    def to_address(self) -> Address:
        return Address(**self.model_dump())

    @classmethod
    def from_address(cls, address: Address) -> "AddressModel":
        return cls(**address.to_dict())


# ── Request ──────────────────────────────────────


class CreateOrderItemRequest(ApiModel):
    product_id: str = Field(pattern=OBJECT_ID_PATTERN)
    product_name: str = Field(min_length=1, max_length=200)
    product_sku: str | None = Field(default=None, max_length=100)
    unit_price: Decimal = Field(gt=0, lt=1_000_000, decimal_places=2)
    quantity: int = Field(gt=0, le=10_000)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)

    def to_item(self) -> OrderItem:
        return OrderItem(
            product_id=self.product_id,
            product_name=self.product_name,
            product_sku=self.product_sku,
            unit_price=self.unit_price,
            quantity=self.quantity,
            discount_amount=self.discount_amount,
        )


class CreateOrderRequest(ApiModel):
    customer_id: str = Field(pattern=OBJECT_ID_PATTERN)
    items: list[CreateOrderItemRequest] = Field(min_length=1)
    shipping_address: AddressModel
    billing_address: AddressModel


class UpdateStatusRequest(ApiModel):
    status: OrderStatus
    reason: str | None = Field(default=None, max_length=500)


# ── Response ─────────────────────────────────────


class OrderItemResponse(ApiModel):
    id: str
    product_id: str
    product_name: str
    product_sku: str | None
    unit_price: Money
    quantity: int
    discount_amount: Money
    tax_amount: Money
    total_price: Money


class OrderResponse(ApiModel):
    id: str
    order_number: str
    customer_id: str
    status: OrderStatus
    payment_status: str
    shipping_status: str
    items: list[OrderItemResponse]
    shipping_address: AddressModel
    billing_address: AddressModel
    subtotal: Money
    tax_amount: Money
    shipping_cost: Money
    discount_amount: Money
    total_amount: Money
    currency: str
    created_at: datetime
    updated_at: datetime
    created_by: str
    updated_by: str | None
    version: int

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=str(order.id),
            order_number=order.order_number,
            customer_id=order.customer_id,
            status=order.status,
            payment_status=order.payment_status.value,
            shipping_status=order.shipping_status.value,
            items=[
                OrderItemResponse(
                    id=str(item.id),
                    product_id=item.product_id,
                    product_name=item.product_name,
                    product_sku=item.product_sku,
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                    discount_amount=item.discount_amount,
                    tax_amount=item.tax_amount,
                    total_price=item.total_price,
                )
                for item in order.items
            ],
            shipping_address=AddressModel.from_address(order.shipping_address),
            billing_address=AddressModel.from_address(order.billing_address),
            subtotal=order.subtotal,
            tax_amount=order.tax_amount,
            shipping_cost=order.shipping_cost,
            discount_amount=order.discount_amount,
            total_amount=order.total_amount,
            currency=order.currency,
            created_at=order.created_at,
            updated_at=order.updated_at,
            created_by=order.created_by,
            updated_by=order.updated_by,
            version=order.version,
        )


class PagedOrdersResponse(ApiModel):
    items: list[OrderResponse]
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_previous: bool
    has_next: bool

    @classmethod
    def from_page(cls, page: Page) -> "PagedOrdersResponse":
        return cls(
            items=[OrderResponse.from_order(order) for order in page.items],
            page=page.page,
            page_size=page.page_size,
            total_items=page.total_items,
            total_pages=page.total_pages,
            has_previous=page.has_previous,
            has_next=page.has_next,
        )


class OrderStatsResponse(ApiModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    total_revenue: Money
    new_this_month: int
    new_last_month: int
    growth_percentage: float
    recent_orders: list[OrderResponse] = []

    @classmethod
    def from_stats(cls, stats: dict) -> "OrderStatsResponse":
        return cls(
            total_orders=stats["total"],
            pending_orders=stats["pending"],
            completed_orders=stats["completed"],
            total_revenue=stats["revenue"],
            new_this_month=stats["new_this_month"],
            new_last_month=stats["new_last_month"],
            growth_percentage=stats["growth"],
            recent_orders=[OrderResponse.from_order(o) for o in stats.get("recent_orders", [])],
        )
