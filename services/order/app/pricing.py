"""
Order Service — 金額計算

合計金額はクライアントから受け取らず、常に明細からサーバー側で計算する。

  明細:  total_price = unit_price × quantity − discount + tax
         tax         = (unit_price × quantity − discount) × tax_rate
  注文:  total       = subtotal + tax + shipping − discount
         shipping    = 値引き後小計が無料配送ライン超えなら 0

単価は計算の前に 1 セント単位へ丸める (保存される値と同じにする)。
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .aggregate import OrderItem
from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    """金額を小数点以下 2 桁に丸める"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total_amount: Decimal


def price_item(item: OrderItem, tax_rate: Decimal) -> OrderItem:
    """明細の税額と合計を計算して item に設定する。"""
    item.unit_price = money(item.unit_price)
    if item.quantity <= 0:
        raise ValidationError(f"Quantity for product {item.product_id} must be greater than 0")
    if item.unit_price <= 0:
        raise ValidationError(f"Unit price for product {item.product_id} must be greater than 0")
    if item.discount_amount < 0:
        raise ValidationError(f"Discount for product {item.product_id} must be non-negative")

    gross = money(item.unit_price * item.quantity)
    discount = money(item.discount_amount)
    if discount > gross:
        raise ValidationError(
            f"Discount for product {item.product_id} exceeds the line amount {gross}"
        )
    item.discount_amount = discount
    item.tax_amount = money((gross - discount) * tax_rate)
    item.total_price = gross - discount + item.tax_amount
    return item


def calculate_totals(
    items: list[OrderItem],
    tax_rate: Decimal,
    free_shipping_threshold: Decimal,
    default_shipping_cost: Decimal,
) -> OrderTotals:
    """明細から注文の金額を組み立てる。各明細の税額・合計もここで確定する。"""
    if not items:
        raise ValidationError("At least one order item is required")

    subtotal = ZERO
    discount = ZERO
    tax = ZERO
    for item in items:
        price_item(item, tax_rate)
        subtotal += money(item.unit_price * item.quantity)
        discount += item.discount_amount
        tax += item.tax_amount

    shipping = ZERO if subtotal - discount > free_shipping_threshold else money(default_shipping_cost)
    return OrderTotals(
        subtotal=subtotal,
        tax_amount=tax,
        shipping_cost=shipping,
        discount_amount=discount,
        total_amount=subtotal + tax + shipping - discount,
    )
