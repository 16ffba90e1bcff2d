"""
Order Service — FastAPI エントリーポイント

    uvicorn app.main:app

顧客向け API (/api/orders) と管理者向け API (/api/admin/orders) を提供する。
ヘッダ:
  X-Correlation-ID : あれば引き継ぎ、なければ生成してレスポンスに付ける
  X-User-Id        : 操作した主体 (なければ "system")

サービス層の例外は exception handler で HTTP ステータスに変換する。
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from uuid import UUID, uuid4

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .aggregate import OrderStatus
from .config import Settings
from .context import OperationContext
from .db import create_engine, create_session_factory, create_tables
from .errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    OrderServiceError,
    PublishError,
    TransientStoreError,
    ValidationError,
)
from .logging_config import configure_logging
from .publisher import EventPublisher, create_publisher
from .repository import OrderQuery, OrderSortBy
from .schemas import (
    CreateOrderRequest,
    OrderResponse,
    OrderStatsResponse,
    PagedOrdersResponse,
    UpdateStatusRequest,
)
from .service import OrderService

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
USER_HEADER = "X-User-Id"

_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    ConcurrencyConflictError: 409,
    PublishError: 502,
    TransientStoreError: 503,
}


# ── 依存関係 ─────────────────────────────────────


def get_service(request: Request) -> OrderService:
    return request.app.state.service


async def get_context(request: Request) -> OperationContext:
    """リクエストごとの処理コンテキスト (締め切りは REQUEST_TIMEOUT、event loop 上で作る)"""
    settings: Settings = request.app.state.settings
    return OperationContext.start(
        correlation_id=getattr(request.state, "correlation_id", None),
        actor=request.headers.get(USER_HEADER),
        timeout=settings.request_timeout,
        tags=(("method", request.method), ("path", request.url.path)),
    )


# ── アプリケーション ─────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    publisher: EventPublisher | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    session_factory と publisher を渡した場合はそれを使う (テスト用)。
    渡さなかったものは起動時 (lifespan) に設定から作り、終了時に閉じる。
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        engine = None
        owned_publisher = None
        if app.state.session_factory is None:
            engine = create_engine(settings.database_url, pool_pre_ping=True)
            await create_tables(engine)
            app.state.session_factory = create_session_factory(engine)
        if app.state.publisher is None:
            owned_publisher = create_publisher(settings)
            app.state.publisher = owned_publisher
        app.state.service = OrderService(app.state.session_factory, app.state.publisher, settings)
        logger.info("%s started", settings.service_name)
        yield
        if owned_publisher is not None:
            await owned_publisher.close()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.publisher = publisher
    app.state.service = None
    if session_factory is not None and publisher is not None:
        app.state.service = OrderService(session_factory, publisher, settings)

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        cid = request.headers.get(CORRELATION_HEADER) or str(uuid4())
        request.state.correlation_id = cid
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response

    @app.exception_handler(OrderServiceError)
    async def service_error_handler(request: Request, exc: OrderServiceError):
        status_code = next(
            (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
        )
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # ── 顧客向け ─────────────────────────────────

    @app.post("/api/orders", response_model=OrderResponse, status_code=201)
    async def create_order(
        req: CreateOrderRequest,
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        """注文作成 (金額はサーバー側で再計算する)"""
        order = await service.create_order(
            req.customer_id,
            [item.to_item() for item in req.items],
            req.shipping_address.to_address(),
            req.billing_address.to_address(),
            ctx,
        )
        return OrderResponse.from_order(order)

    @app.get("/api/orders/{order_id}", response_model=OrderResponse)
    async def get_order(
        order_id: UUID,
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        return OrderResponse.from_order(await service.get_order(order_id, ctx))

    @app.get("/api/orders/customer/{customer_id}", response_model=list[OrderResponse])
    async def get_customer_orders(
        customer_id: str,
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        orders = await service.get_orders_by_customer(customer_id, ctx)
        return [OrderResponse.from_order(o) for o in orders]

    @app.get("/api/orders/customer/{customer_id}/paged", response_model=PagedOrdersResponse)
    async def get_customer_orders_paged(
        customer_id: str,
        page: int = Query(1),
        page_size: int = Query(10, alias="pageSize"),
        status: OrderStatus | None = Query(None),
        date_from: datetime | None = Query(None, alias="dateFrom"),
        date_to: date | None = Query(None, alias="dateTo"),
        sort_by: OrderSortBy = Query(OrderSortBy.ORDER_DATE_DESC, alias="sortBy"),
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        query = OrderQuery(
            page=page,
            page_size=page_size,
            status=status,
            customer_id=customer_id,
            date_from=date_from,
            date_to=date_to,
            sort_by=sort_by,
        )
        return PagedOrdersResponse.from_page(await service.list_orders(query, ctx))

    # ── 管理者向け ───────────────────────────────

    @app.get("/api/admin/orders", response_model=list[OrderResponse])
    async def admin_all_orders(
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        orders = await service.get_all_orders(ctx)
        return [OrderResponse.from_order(o) for o in orders]

    @app.get("/api/admin/orders/paged", response_model=PagedOrdersResponse)
    async def admin_list_orders(
        page: int = Query(1),
        page_size: int = Query(10, alias="pageSize"),
        status: OrderStatus | None = Query(None),
        customer_id: str | None = Query(None, alias="customerId"),
        date_from: datetime | None = Query(None, alias="dateFrom"),
        date_to: date | None = Query(None, alias="dateTo"),
        sort_by: OrderSortBy = Query(OrderSortBy.ORDER_DATE_DESC, alias="sortBy"),
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        query = OrderQuery(
            page=page,
            page_size=page_size,
            status=status,
            customer_id=customer_id,
            date_from=date_from,
            date_to=date_to,
            sort_by=sort_by,
        )
        return PagedOrdersResponse.from_page(await service.list_orders(query, ctx))

    @app.get("/api/admin/orders/stats", response_model=OrderStatsResponse)
    async def admin_order_stats(
        include_recent: bool = Query(False, alias="includeRecent"),
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        """管理画面のダッシュボード用統計"""
        stats = await service.get_stats(ctx, include_recent=include_recent)
        return OrderStatsResponse.from_stats(stats)

    @app.get("/api/admin/orders/status/{status}", response_model=list[OrderResponse])
    async def admin_orders_by_status(
        status: OrderStatus,
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        orders = await service.get_orders_by_status(status, ctx)
        return [OrderResponse.from_order(o) for o in orders]

    # /paged・/stats より後に登録する
    @app.get("/api/admin/orders/{order_id}", response_model=OrderResponse)
    async def admin_get_order(
        order_id: UUID,
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        return OrderResponse.from_order(await service.get_order(order_id, ctx))

    @app.put("/api/admin/orders/{order_id}/status", response_model=OrderResponse)
    async def admin_update_status(
        order_id: UUID,
        req: UpdateStatusRequest,
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        """ステータス更新 (不正な遷移は 409)"""
        order = await service.update_status(order_id, req.status, req.reason, ctx)
        return OrderResponse.from_order(order)

    @app.delete("/api/admin/orders/{order_id}", status_code=204)
    async def admin_delete_order(
        order_id: UUID,
        service: OrderService = Depends(get_service),
        ctx: OperationContext = Depends(get_context),
    ):
        if not await service.delete_order(order_id, ctx):
            raise NotFoundError(order_id)
        return Response(status_code=204)

    # ── ヘルスチェック ───────────────────────────

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": app.state.settings.service_name}

    @app.get("/liveness")
    async def liveness():
        return {"status": "alive"}

    @app.get("/readiness")
    async def readiness():
        """DB に接続できるか確認する"""
        try:
            async with app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Readiness check failed")
            return JSONResponse(status_code=503, content={"status": "not ready"})
        return {"status": "ready"}


app = create_app()
