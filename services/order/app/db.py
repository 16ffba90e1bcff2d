"""
Order Service — テーブル定義と DB 接続

orders       : 注文ヘッダ (住所は JSON スナップショット、version は楽観的ロック用)
order_items  : 注文明細 (orders 削除時にカスケード削除)

PostgreSQL を想定しているが、型は SQLAlchemy の汎用型だけを使うので
テストでは SQLite (aiosqlite) でも同じスキーマが作れる。
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Uuid,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("customer_id", String(255), nullable=False),
    Column("order_number", String(50), nullable=False, unique=True),
    Column("status", String(20), nullable=False),
    Column("payment_status", String(20), nullable=False),
    Column("shipping_status", String(20), nullable=False),
    Column("subtotal", Numeric(12, 2), nullable=False),
    Column("tax_amount", Numeric(12, 2), nullable=False),
    Column("shipping_cost", Numeric(12, 2), nullable=False),
    Column("discount_amount", Numeric(12, 2), nullable=False),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("billing_address", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("created_by", String(255), nullable=False),
    Column("updated_by", String(255)),
    Column("version", Integer, nullable=False),
    Index("ix_orders_customer_id", "customer_id"),
    Index("ix_orders_status", "status"),
    Index("ix_orders_created_at", "created_at"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("order_id", Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("product_id", String(255), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("product_sku", String(100)),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("discount_amount", Numeric(12, 2), nullable=False),
    Column("tax_amount", Numeric(12, 2), nullable=False),
    Column("total_price", Numeric(12, 2), nullable=False),
    Index("ix_order_items_order_id", "order_id"),
)


def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
