"""
Order Service — 注文サービス (オーケストレーター)

API と Worker の両方から呼ばれ、リポジトリ・状態遷移・パブリッシャーを
組み合わせて 1 つの操作を完結させる。

  ┌──────────┐    ┌──────────────┐    ┌────────────┐
  │ API /    │───▶│ OrderService │───▶│ Repository │  (書き込み → commit)
  │ Worker   │    │              │───▶│ Publisher  │  (commit 後に発行)
  └──────────┘    └──────────────┘    └────────────┘

発行失敗の扱いはイベント種別ごとに明示する (PublishPolicy):
  BEST_EFFORT : ログに残して処理は成功扱い (書き込みは巻き戻さない)
  REQUIRED    : 書き込み済みのまま PublishError を呼び出し側に返す

注意: Outbox などの再送の仕組みはない。発行に失敗したイベントは失われ、
下流サービスは別途の突き合わせで補う必要がある。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from . import repository, state_machine
from .aggregate import Address, Order, OrderItem, OrderStatus
from .config import Settings
from .context import OperationContext
from .errors import (
    ConcurrencyConflictError,
    NotFoundError,
    PublishError,
    TransientStoreError,
    ValidationError,
)
from .events import OrderCreatedEvent, OrderDeletedEvent, OrderStatusChangedEvent
from .pricing import calculate_totals
from .publisher import EventPublisher
from .repository import OrderQuery, Page

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_RETRY_DELAY = 0.2


class EventKind(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    DELETED = "deleted"


class PublishPolicy(str, Enum):
    BEST_EFFORT = "best_effort"
    REQUIRED = "required"


def publish_policies(settings: Settings) -> dict[EventKind, PublishPolicy]:
    unknown = settings.publish_required_events - {kind.value for kind in EventKind}
    if unknown:
        raise ValueError(f"Unknown event kinds in PUBLISH_REQUIRED_EVENTS: {sorted(unknown)}")
    return {
        kind: (
            PublishPolicy.REQUIRED
            if kind.value in settings.publish_required_events
            else PublishPolicy.BEST_EFFORT
        )
        for kind in EventKind
    }


class OrderService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: EventPublisher,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher
        self.settings = settings
        self.policies = publish_policies(settings)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        topics = settings.topics
        self._status_topics = {
            OrderStatus.CANCELLED: topics.order_cancelled,
            OrderStatus.SHIPPED: topics.order_shipped,
            OrderStatus.DELIVERED: topics.order_delivered,
        }

    # ── 読み取り ─────────────────────────────────

    async def get_order(self, order_id: UUID, ctx: OperationContext) -> Order:
        log = ctx.logger(logger)
        log.info("Getting order by ID %s", order_id)
        order = await self._run(lambda s: repository.get_order_by_id(s, order_id), ctx)
        if order is None:
            log.warning("Order with ID %s not found", order_id)
            raise NotFoundError(order_id)
        return order

    async def get_all_orders(self, ctx: OperationContext) -> list[Order]:
        ctx.logger(logger).info("Getting all orders")
        return await self._run(repository.get_all_orders, ctx)

    async def get_orders_by_customer(self, customer_id: str, ctx: OperationContext) -> list[Order]:
        ctx.logger(logger).info("Getting orders by customer %s", customer_id)
        return await self._run(lambda s: repository.get_orders_by_customer(s, customer_id), ctx)

    async def get_orders_by_status(self, status: OrderStatus, ctx: OperationContext) -> list[Order]:
        ctx.logger(logger).info("Getting orders by status %s", status.value)
        return await self._run(lambda s: repository.get_orders_by_status(s, status), ctx)

    async def list_orders(self, query: OrderQuery, ctx: OperationContext) -> Page:
        log = ctx.logger(logger)
        log.info(
            "Getting paged orders page=%d page_size=%d status=%s customer=%s",
            query.page, query.page_size,
            query.status.value if query.status else None, query.customer_id,
        )
        orders, total = await self._run(lambda s: repository.query_orders(s, query), ctx)
        return Page(items=orders, page=query.page, page_size=query.page_size, total_items=total)

    async def get_stats(
        self, ctx: OperationContext, include_recent: bool = False, recent_limit: int = 10
    ) -> dict:
        """管理画面向けの注文統計"""
        now = self._clock()

        async def op(session: AsyncSession) -> dict:
            stats = await repository.order_stats(session, now)
            if include_recent:
                stats["recent_orders"] = await repository.recent_orders(session, recent_limit)
            return stats

        stats = await self._run(op, ctx)
        new_this, new_last = stats["new_this_month"], stats["new_last_month"]
        if new_last > 0:
            growth = round((new_this - new_last) / new_last * 100, 1)
        else:
            growth = 100.0 if new_this > 0 else 0.0
        stats["growth"] = growth
        ctx.logger(logger).info(
            "Order statistics computed: total=%d pending=%d completed=%d",
            stats["total"], stats["pending"], stats["completed"],
        )
        return stats

    # ── 書き込み ─────────────────────────────────

    async def create_order(
        self,
        customer_id: str,
        items: list[OrderItem],
        shipping_address: Address,
        billing_address: Address,
        ctx: OperationContext,
    ) -> Order:
        """
        注文作成

        1. 明細の検証と金額計算 (クライアントの合計は信用しない)
        2. 注文を保存して commit
        3. OrderCreated を発行 (失敗しても注文は残る)
        """
        log = ctx.logger(logger)
        log.info("Creating order customer=%s items=%d", customer_id, len(items))
        if not items:
            raise ValidationError("At least one order item is required")
        product_ids = [item.product_id for item in items]
        if len(set(product_ids)) != len(product_ids):
            raise ValidationError("Each product may appear only once per order")

        totals = calculate_totals(
            items,
            self.settings.tax_rate,
            self.settings.free_shipping_threshold,
            self.settings.default_shipping_cost,
        )
        now = self._clock()
        order = Order(
            customer_id=customer_id,
            order_number=self._order_number(now),
            shipping_address=shipping_address,
            billing_address=billing_address,
            created_at=now,
            updated_at=now,
            items=items,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            shipping_cost=totals.shipping_cost,
            discount_amount=totals.discount_amount,
            total_amount=totals.total_amount,
            currency=self.settings.currency,
            created_by=ctx.actor,
        )

        async def op(session: AsyncSession) -> Order:
            created = await repository.create_order(session, order)
            await repository.commit(session)
            return created

        created = await self._run(op, ctx)
        log.info(
            "Order created id=%s number=%s total=%s",
            created.id, created.order_number, created.total_amount,
        )

        await self._publish(
            EventKind.CREATED,
            self.settings.topics.order_created,
            OrderCreatedEvent.from_order(created, ctx.correlation_id),
            ctx,
        )
        return created

    async def update_status(
        self,
        order_id: UUID,
        status: OrderStatus,
        reason: str | None,
        ctx: OperationContext,
    ) -> Order:
        """ステータス更新 (API からの手動更新・キャンセル)。不正な遷移は InvalidTransitionError。"""
        order, _ = await self._change_status(order_id, status, reason, ctx, skip_if_reached=False)
        return order

    async def advance_from_event(
        self,
        order_id: UUID,
        target: OrderStatus,
        reason: str | None,
        ctx: OperationContext,
    ) -> tuple[Order, bool]:
        """
        受信イベントによるステータス前進 (Worker から呼ばれる)

        少なくとも 1 回配送 (at-least-once) なので、同じイベントが再配送されることがある。
        注文がすでに target に到達・通過していれば何もしない。
        戻り値の bool は実際に遷移したかどうか。
        """
        return await self._change_status(order_id, target, reason, ctx, skip_if_reached=True)

    async def delete_order(
        self, order_id: UUID, ctx: OperationContext, reason: str | None = None
    ) -> bool:
        """注文を削除して OrderDeleted を発行する。存在しなければ False。"""
        log = ctx.logger(logger)
        log.info("Deleting order %s", order_id)

        async def op(session: AsyncSession) -> Order | None:
            deleted = await repository.delete_order(session, order_id)
            await repository.commit(session)
            return deleted

        deleted = await self._run(op, ctx)
        if deleted is None:
            log.warning("Failed to delete order: %s not found", order_id)
            return False

        log.info("Order deleted id=%s number=%s", deleted.id, deleted.order_number)
        await self._publish(
            EventKind.DELETED,
            self.settings.topics.order_deleted,
            OrderDeletedEvent(
                order_id=deleted.id,
                order_number=deleted.order_number,
                customer_id=deleted.customer_id,
                status=deleted.status,
                deleted_at=self._clock(),
                deleted_by=ctx.actor,
                reason=reason,
                correlation_id=ctx.correlation_id,
            ),
            ctx,
        )
        return True

    # ── 内部処理 ─────────────────────────────────

    async def _change_status(
        self,
        order_id: UUID,
        target: OrderStatus,
        reason: str | None,
        ctx: OperationContext,
        *,
        skip_if_reached: bool,
    ) -> tuple[Order, bool]:
        """
        読み込み → 状態遷移 → version 比較付き更新 → commit → 発行

        更新が競合したら読み込みからやり直す (最大 update_conflict_retries 回)。
        """
        log = ctx.logger(logger)
        log.info("Updating order %s status to %s", order_id, target.value)

        async def op(session: AsyncSession) -> tuple[Order, OrderStatus, bool]:
            order = await repository.get_order_by_id(session, order_id)
            if order is None:
                raise NotFoundError(order_id)
            previous = order.status
            if skip_if_reached and state_machine.has_reached(previous, target):
                return order, previous, False

            expected_version = order.version
            state_machine.transition(order, target, reason, actor=ctx.actor, now=self._clock())
            if order.status == previous:
                return order, previous, False
            await repository.update_order(session, order, expected_version)
            await repository.commit(session)
            return order, previous, True

        retries = self.settings.update_conflict_retries

        def log_conflict(retry_state: RetryCallState) -> None:
            log.warning(
                "Concurrent update on order %s (attempt %d/%d), reloading",
                order_id, retry_state.attempt_number, retries,
            )

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(ConcurrencyConflictError),
                stop=stop_after_attempt(retries),
                sleep=self._sleep,
                before_sleep=log_conflict,
                reraise=True,
            ):
                with attempt:
                    order, previous, changed = await self._run(op, ctx)
        except ConcurrencyConflictError:
            log.error("Giving up on order %s after %d conflicting updates", order_id, retries)
            raise

        if not changed:
            log.info(
                "Order %s already at %s, nothing to do (requested %s)",
                order_id, order.status.value, target.value,
            )
            return order, False

        log.info(
            "Order status updated id=%s number=%s %s -> %s",
            order.id, order.order_number, previous.value, order.status.value,
        )
        await self._publish(
            EventKind.STATUS_CHANGED,
            self._status_topics.get(order.status, self.settings.topics.order_updated),
            OrderStatusChangedEvent(
                order_id=order.id,
                order_number=order.order_number,
                customer_id=order.customer_id,
                previous_status=previous,
                new_status=order.status,
                payment_status=order.payment_status.value,
                shipping_status=order.shipping_status.value,
                updated_at=order.updated_at,
                updated_by=order.updated_by or ctx.actor,
                reason=reason,
                correlation_id=ctx.correlation_id,
            ),
            ctx,
        )
        return order, True

    async def _run(
        self, operation: Callable[[AsyncSession], Awaitable[T]], ctx: OperationContext
    ) -> T:
        """セッションを開いて operation を実行する。一時的な DB エラーは回数を限ってリトライ。"""
        log = ctx.logger(logger)
        attempts = self.settings.store_retry_attempts

        def log_unavailable(retry_state: RetryCallState) -> None:
            log.warning(
                "Order store unavailable (attempt %d/%d), retrying",
                retry_state.attempt_number, attempts,
            )

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientStoreError),
                stop=stop_after_attempt(attempts),
                wait=wait_incrementing(start=STORE_RETRY_DELAY, increment=STORE_RETRY_DELAY),
                sleep=self._sleep,
                before_sleep=log_unavailable,
                reraise=True,
            ):
                with attempt:
                    async with self.session_factory() as session:
                        return await operation(session)
        except TransientStoreError:
            log.error("Order store still unavailable after %d attempts", attempts)
            raise
        raise AssertionError("unreachable")

    async def _publish(self, kind: EventKind, routing_key: str, event, ctx: OperationContext) -> None:
        log = ctx.logger(logger)
        try:
            await self.publisher.publish(
                self.settings.broker_exchange, routing_key, event, deadline=ctx.deadline
            )
        except PublishError:
            if self.policies[kind] is PublishPolicy.REQUIRED:
                log.error("Failed to publish %s event (required)", routing_key)
                raise
            # 書き込みは確定済み。イベントだけ失われる
            log.exception("Failed to publish %s event", routing_key)
            return
        log.info("Published %s event", routing_key)

    def _order_number(self, now: datetime) -> str:
        return f"{self.settings.order_number_prefix}-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"
