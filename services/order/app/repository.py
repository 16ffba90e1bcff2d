"""
Order Service — リポジトリ (注文の永続化)

注文ヘッダ (orders) と明細 (order_items) を読み書きし、
常に明細込みの Order 集約を返す。

- コミットは呼び出し側 (service.py) が行う
- 更新は version を比較する楽観的ロック:
  読み込み後に他の処理が更新していれば ConcurrencyConflictError
- DB のタイムアウトや接続断は TransientStoreError に変換する
"""

import asyncio
import logging
import math
from collections.abc import Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from uuid import UUID

from sqlalchemy import case, delete, func, insert, select, update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Address, Order, OrderItem, OrderStatus, PaymentStatus, ShippingStatus
from .db import order_items, orders
from .errors import ConcurrencyConflictError, TransientStoreError, ValidationError
from .pricing import money

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class OrderSortBy(str, Enum):
    ORDER_DATE_ASC = "OrderDateAsc"
    ORDER_DATE_DESC = "OrderDateDesc"
    TOTAL_AMOUNT_ASC = "TotalAmountAsc"
    TOTAL_AMOUNT_DESC = "TotalAmountDesc"
    STATUS_ASC = "StatusAsc"
    STATUS_DESC = "StatusDesc"


_SORT_COLUMNS = {
    OrderSortBy.ORDER_DATE_ASC: orders.c.created_at.asc(),
    OrderSortBy.ORDER_DATE_DESC: orders.c.created_at.desc(),
    OrderSortBy.TOTAL_AMOUNT_ASC: orders.c.total_amount.asc(),
    OrderSortBy.TOTAL_AMOUNT_DESC: orders.c.total_amount.desc(),
    OrderSortBy.STATUS_ASC: orders.c.status.asc(),
    OrderSortBy.STATUS_DESC: orders.c.status.desc(),
}


@dataclass(frozen=True)
class OrderQuery:
    """一覧取得の条件 (フィルタ・並び順・ページ)"""

    page: int = 1
    page_size: int = 10
    status: OrderStatus | None = None
    customer_id: str | None = None
    date_from: datetime | None = None
    date_to: date | None = None
    sort_by: OrderSortBy = OrderSortBy.ORDER_DATE_DESC

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValidationError("Page must be greater than 0")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"Page size must be between 1 and {MAX_PAGE_SIZE}")
        if self.date_from and self.date_to and self.date_from.date() > self.date_to:
            raise ValidationError("Order date from must be less than or equal to order date to")

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class Page:
    items: list = field(default_factory=list)
    page: int = 1
    page_size: int = 10
    total_items: int = 0

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_items / self.page_size) if self.page_size else 0

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@asynccontextmanager
async def _store_errors():
    try:
        yield
    except (OperationalError, PoolTimeoutError, asyncio.TimeoutError) as e:
        raise TransientStoreError(f"Order store unavailable: {e}") from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientStoreError(f"Order store connection lost: {e}") from e
        raise


# ── 行 ⇔ 集約の変換 ──────────────────────────────


def _utc(value: datetime) -> datetime:
    # SQLite はタイムゾーンを保持しない
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_item(row) -> OrderItem:
    return OrderItem(
        id=row.id,
        product_id=row.product_id,
        product_name=row.product_name,
        product_sku=row.product_sku,
        unit_price=money(row.unit_price),
        quantity=row.quantity,
        discount_amount=money(row.discount_amount),
        tax_amount=money(row.tax_amount),
        total_price=money(row.total_price),
    )


def _to_order(row, items: list[OrderItem]) -> Order:
    return Order(
        id=row.id,
        customer_id=row.customer_id,
        order_number=row.order_number,
        status=OrderStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        shipping_status=ShippingStatus(row.shipping_status),
        subtotal=money(row.subtotal),
        tax_amount=money(row.tax_amount),
        shipping_cost=money(row.shipping_cost),
        discount_amount=money(row.discount_amount),
        total_amount=money(row.total_amount),
        currency=row.currency,
        shipping_address=Address.from_dict(row.shipping_address),
        billing_address=Address.from_dict(row.billing_address),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
        created_by=row.created_by,
        updated_by=row.updated_by,
        version=row.version,
        items=items,
    )


async def _load_orders(session: AsyncSession, rows: Sequence) -> list[Order]:
    """注文ヘッダの行に明細をまとめて読み込んで集約にする。"""
    if not rows:
        return []
    ids = [row.id for row in rows]
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(ids))
        .order_by(order_items.c.order_id, order_items.c.position)
    )
    items_by_order: dict[UUID, list[OrderItem]] = {order_id: [] for order_id in ids}
    for item_row in result.fetchall():
        items_by_order[item_row.order_id].append(_to_item(item_row))
    return [_to_order(row, items_by_order[row.id]) for row in rows]


# ── 読み取り ─────────────────────────────────────


async def get_order_by_id(session: AsyncSession, order_id: UUID) -> Order | None:
    logger.debug("Fetching order with ID: %s", order_id)
    async with _store_errors():
        result = await session.execute(select(orders).where(orders.c.id == order_id))
        row = result.fetchone()
        if not row:
            return None
        loaded = await _load_orders(session, [row])
    return loaded[0]


async def get_orders_by_customer(session: AsyncSession, customer_id: str) -> list[Order]:
    logger.debug("Fetching orders for customer: %s", customer_id)
    async with _store_errors():
        result = await session.execute(
            select(orders)
            .where(orders.c.customer_id == customer_id)
            .order_by(orders.c.created_at.desc())
        )
        return await _load_orders(session, result.fetchall())


async def get_all_orders(session: AsyncSession) -> list[Order]:
    logger.debug("Fetching all orders")
    async with _store_errors():
        result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
        return await _load_orders(session, result.fetchall())


async def get_orders_by_status(session: AsyncSession, status: OrderStatus) -> list[Order]:
    logger.debug("Fetching orders with status: %s", status.value)
    async with _store_errors():
        result = await session.execute(
            select(orders)
            .where(orders.c.status == status.value)
            .order_by(orders.c.created_at.desc())
        )
        return await _load_orders(session, result.fetchall())


async def query_orders(session: AsyncSession, query: OrderQuery) -> tuple[list[Order], int]:
    """フィルタ・並び替え・ページングした注文と、フィルタ後の総件数を返す。"""
    conditions = []
    if query.status is not None:
        conditions.append(orders.c.status == query.status.value)
    if query.customer_id:
        conditions.append(orders.c.customer_id == query.customer_id)
    if query.date_from is not None:
        conditions.append(orders.c.created_at >= query.date_from)
    if query.date_to is not None:
        # 終了日は丸一日を含める
        end = datetime.combine(query.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        conditions.append(orders.c.created_at < end)

    async with _store_errors():
        total = await session.scalar(
            select(func.count()).select_from(orders).where(*conditions)
        )
        result = await session.execute(
            select(orders)
            .where(*conditions)
            .order_by(_SORT_COLUMNS[query.sort_by], orders.c.id)
            .offset(query.skip)
            .limit(query.page_size)
        )
        page = await _load_orders(session, result.fetchall())

    logger.debug("Retrieved %d orders out of %d total", len(page), total)
    return page, total or 0


async def order_exists(session: AsyncSession, order_id: UUID) -> bool:
    async with _store_errors():
        found = await session.scalar(select(orders.c.id).where(orders.c.id == order_id))
    return found is not None


async def order_stats(session: AsyncSession, now: datetime) -> dict:
    """管理画面向けの集計 (件数・今月の新規・売上)"""
    first_this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    first_last_month = (first_this_month - timedelta(days=1)).replace(day=1)
    pending = [OrderStatus.CREATED.value, OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value]
    revenue_states = [OrderStatus.DELIVERED.value, OrderStatus.SHIPPED.value]

    stmt = select(
        func.count().label("total"),
        func.sum(case((orders.c.status.in_(pending), 1), else_=0)).label("pending"),
        func.sum(case((orders.c.status == OrderStatus.DELIVERED.value, 1), else_=0)).label("completed"),
        func.sum(case((orders.c.created_at >= first_this_month, 1), else_=0)).label("new_this_month"),
        func.sum(
            case(
                (
                    (orders.c.created_at >= first_last_month)
                    & (orders.c.created_at < first_this_month),
                    1,
                ),
                else_=0,
            )
        ).label("new_last_month"),
        func.sum(
            case((orders.c.status.in_(revenue_states), orders.c.total_amount), else_=0)
        ).label("revenue"),
    )
    async with _store_errors():
        row = (await session.execute(stmt)).one()
    return {
        "total": row.total or 0,
        "pending": int(row.pending or 0),
        "completed": int(row.completed or 0),
        "new_this_month": int(row.new_this_month or 0),
        "new_last_month": int(row.new_last_month or 0),
        "revenue": money(row.revenue or 0),
    }


async def recent_orders(session: AsyncSession, limit: int) -> list[Order]:
    async with _store_errors():
        result = await session.execute(
            select(orders).order_by(orders.c.created_at.desc()).limit(limit)
        )
        return await _load_orders(session, result.fetchall())


# ── 書き込み ─────────────────────────────────────


async def create_order(session: AsyncSession, order: Order) -> Order:
    logger.debug("Creating new order for customer: %s", order.customer_id)
    async with _store_errors():
        await session.execute(
            insert(orders).values(
                id=order.id,
                customer_id=order.customer_id,
                order_number=order.order_number,
                status=order.status.value,
                payment_status=order.payment_status.value,
                shipping_status=order.shipping_status.value,
                subtotal=order.subtotal,
                tax_amount=order.tax_amount,
                shipping_cost=order.shipping_cost,
                discount_amount=order.discount_amount,
                total_amount=order.total_amount,
                currency=order.currency,
                shipping_address=order.shipping_address.to_dict(),
                billing_address=order.billing_address.to_dict(),
                created_at=order.created_at,
                updated_at=order.updated_at,
                created_by=order.created_by,
                updated_by=order.updated_by,
                version=order.version,
            )
        )
        await session.execute(
            insert(order_items),
            [
                {
                    "id": item.id,
                    "order_id": order.id,
                    "position": position,
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "product_sku": item.product_sku,
                    "unit_price": item.unit_price,
                    "quantity": item.quantity,
                    "discount_amount": item.discount_amount,
                    "tax_amount": item.tax_amount,
                    "total_price": item.total_price,
                }
                for position, item in enumerate(order.items)
            ],
        )
    logger.info("Created order: %s", order.order_number)
    return order


async def update_order(session: AsyncSession, order: Order, expected_version: int) -> Order:
    """
    注文ヘッダの可変項目を更新する。

    WHERE version = expected_version で更新し、0 行なら
    読み込み後に別の処理が更新した (または削除された) とみなす。
    """
    logger.debug("Updating order: %s (version %d)", order.id, expected_version)
    async with _store_errors():
        result = await session.execute(
            update(orders)
            .where(orders.c.id == order.id, orders.c.version == expected_version)
            .values(
                status=order.status.value,
                payment_status=order.payment_status.value,
                shipping_status=order.shipping_status.value,
                updated_at=order.updated_at,
                updated_by=order.updated_by,
                version=expected_version + 1,
            )
        )
    if result.rowcount == 0:
        raise ConcurrencyConflictError(order.id, expected_version)
    order.version = expected_version + 1
    logger.info("Updated order: %s", order.order_number)
    return order


async def delete_order(session: AsyncSession, order_id: UUID) -> Order | None:
    """注文を削除し、削除前のスナップショットを返す。存在しなければ None。"""
    logger.debug("Deleting order: %s", order_id)
    existing = await get_order_by_id(session, order_id)
    if existing is None:
        logger.warning("Order not found for deletion: %s", order_id)
        return None
    async with _store_errors():
        await session.execute(delete(order_items).where(order_items.c.order_id == order_id))
        await session.execute(delete(orders).where(orders.c.id == order_id))
    logger.info("Deleted order: %s", existing.order_number)
    return existing


async def commit(session: AsyncSession) -> None:
    async with _store_errors():
        await session.commit()
