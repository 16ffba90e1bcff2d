from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app import repository
from app.aggregate import OrderStatus
from app.errors import ConcurrencyConflictError, ValidationError
from app.repository import OrderQuery, OrderSortBy, Page
from factories import CUSTOMER_ID, OTHER_CUSTOMER_ID, PRODUCT_B, item, make_order

BASE = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


async def save(session_factory, order):
    async with session_factory() as session:
        await repository.create_order(session, order)
        await repository.commit(session)
    return order


async def seed(session_factory, count=25):
    created = []
    for i in range(count):
        order = make_order(
            created_at=BASE + timedelta(hours=i),
            number=f"ORD-20260301-{i:08d}",
            customer_id=CUSTOMER_ID if i % 2 == 0 else OTHER_CUSTOMER_ID,
            status=OrderStatus.SHIPPED if i % 5 == 0 else OrderStatus.CREATED,
            total=f"{10 + i}.00",
        )
        created.append(await save(session_factory, order))
    return created


@pytest.mark.asyncio
async def test_create_and_load_round_trip(session_factory):
    order = make_order()
    order.items.append(item(PRODUCT_B, unit_price="5.00", quantity=1, product_sku="SKU-B"))
    await save(session_factory, order)

    async with session_factory() as session:
        loaded = await repository.get_order_by_id(session, order.id)

    assert loaded.order_number == order.order_number
    assert loaded.total_amount == Decimal("74.78")
    assert loaded.shipping_address == order.shipping_address
    assert [i.product_id for i in loaded.items] == [i.product_id for i in order.items]
    assert loaded.items[1].product_sku == "SKU-B"
    assert loaded.created_at == order.created_at
    assert loaded.version == 1


@pytest.mark.asyncio
async def test_missing_order(session_factory):
    async with session_factory() as session:
        assert await repository.get_order_by_id(session, make_order().id) is None
        assert not await repository.order_exists(session, make_order().id)


@pytest.mark.asyncio
async def test_second_page_of_25(session_factory):
    created = await seed(session_factory)
    newest_first = sorted(created, key=lambda o: o.created_at, reverse=True)

    async with session_factory() as session:
        orders, total = await repository.query_orders(session, OrderQuery(page=2, page_size=10))

    page = Page(items=orders, page=2, page_size=10, total_items=total)
    assert [o.id for o in orders] == [o.id for o in newest_first[10:20]]
    assert total == 25
    assert page.total_pages == 3
    assert page.has_previous and page.has_next


@pytest.mark.asyncio
async def test_all_orders_newest_first(session_factory):
    created = await seed(session_factory, count=3)

    async with session_factory() as session:
        found = await repository.get_all_orders(session)

    assert [o.id for o in found] == [o.id for o in reversed(created)]
    assert all(len(o.items) == 1 for o in found)


@pytest.mark.asyncio
async def test_filters(session_factory):
    await seed(session_factory)

    async with session_factory() as session:
        shipped, shipped_total = await repository.query_orders(
            session, OrderQuery(status=OrderStatus.SHIPPED, page_size=100)
        )
        mine, mine_total = await repository.query_orders(
            session, OrderQuery(customer_id=CUSTOMER_ID, page_size=100)
        )

    assert shipped_total == 5
    assert all(o.status == OrderStatus.SHIPPED for o in shipped)
    assert mine_total == 13
    assert all(o.customer_id == CUSTOMER_ID for o in mine)


@pytest.mark.asyncio
async def test_date_to_includes_whole_day(session_factory):
    late = make_order(created_at=datetime(2026, 3, 10, 23, 30, tzinfo=timezone.utc), number="ORD-A")
    next_day = make_order(created_at=datetime(2026, 3, 11, 0, 30, tzinfo=timezone.utc), number="ORD-B")
    await save(session_factory, late)
    await save(session_factory, next_day)

    async with session_factory() as session:
        orders, total = await repository.query_orders(
            session,
            OrderQuery(
                date_from=datetime(2026, 3, 10, tzinfo=timezone.utc), date_to=date(2026, 3, 10)
            ),
        )
    assert total == 1
    assert orders[0].id == late.id


@pytest.mark.asyncio
async def test_sort_by_total(session_factory):
    await seed(session_factory, count=5)
    async with session_factory() as session:
        orders, _ = await repository.query_orders(
            session, OrderQuery(sort_by=OrderSortBy.TOTAL_AMOUNT_ASC)
        )
    totals = [o.total_amount for o in orders]
    assert totals == sorted(totals)


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(page=0),
        dict(page_size=0),
        dict(page_size=101),
        dict(date_from=datetime(2026, 3, 2, tzinfo=timezone.utc), date_to=date(2026, 3, 1)),
    ],
)
def test_invalid_query(kwargs):
    with pytest.raises(ValidationError):
        OrderQuery(**kwargs)


def test_empty_page():
    page = Page(items=[], page=1, page_size=10, total_items=0)
    assert page.total_pages == 0
    assert not page.has_previous
    assert not page.has_next


@pytest.mark.asyncio
async def test_update_checks_version(session_factory):
    order = await save(session_factory, make_order())

    async with session_factory() as session:
        loaded = await repository.get_order_by_id(session, order.id)
        loaded.status = OrderStatus.CONFIRMED
        await repository.update_order(session, loaded, expected_version=1)
        await repository.commit(session)
    assert loaded.version == 2

    async with session_factory() as session:
        stale = await repository.get_order_by_id(session, order.id)
        stale.status = OrderStatus.CANCELLED
        with pytest.raises(ConcurrencyConflictError):
            await repository.update_order(session, stale, expected_version=1)

    async with session_factory() as session:
        current = await repository.get_order_by_id(session, order.id)
    assert current.status == OrderStatus.CONFIRMED
    assert current.version == 2


@pytest.mark.asyncio
async def test_delete_returns_snapshot(session_factory):
    order = await save(session_factory, make_order())

    async with session_factory() as session:
        deleted = await repository.delete_order(session, order.id)
        await repository.commit(session)
    assert deleted.order_number == order.order_number

    async with session_factory() as session:
        assert not await repository.order_exists(session, order.id)
        assert await repository.delete_order(session, order.id) is None


@pytest.mark.asyncio
async def test_orders_by_customer_and_status(session_factory):
    await seed(session_factory, count=6)
    async with session_factory() as session:
        mine = await repository.get_orders_by_customer(session, CUSTOMER_ID)
        shipped = await repository.get_orders_by_status(session, OrderStatus.SHIPPED)

    assert len(mine) == 3
    assert mine[0].created_at > mine[-1].created_at
    assert {o.order_number for o in shipped} == {"ORD-20260301-00000000", "ORD-20260301-00000005"}


@pytest.mark.asyncio
async def test_order_stats(session_factory):
    now = datetime(2026, 3, 15, tzinfo=timezone.utc)
    await save(session_factory, make_order(created_at=datetime(2026, 3, 2, tzinfo=timezone.utc), number="A"))
    await save(
        session_factory,
        make_order(
            status=OrderStatus.DELIVERED,
            created_at=datetime(2026, 2, 10, tzinfo=timezone.utc),
            number="B",
            total="100.00",
        ),
    )
    await save(
        session_factory,
        make_order(
            status=OrderStatus.SHIPPED,
            created_at=datetime(2026, 2, 11, tzinfo=timezone.utc),
            number="C",
            total="50.50",
        ),
    )

    async with session_factory() as session:
        stats = await repository.order_stats(session, now)

    assert stats["total"] == 3
    assert stats["pending"] == 1
    assert stats["completed"] == 1
    assert stats["new_this_month"] == 1
    assert stats["new_last_month"] == 2
    assert stats["revenue"] == Decimal("150.50")
