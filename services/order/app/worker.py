"""
Order Service — Worker エントリーポイント

    python -m app.worker

上流サービスのイベントを購読して注文ステータスを進める常駐プロセス。
SIGINT / SIGTERM で読み込みループを止め、接続を閉じて終了する。
"""

import asyncio
import logging
import signal

import redis.asyncio as aioredis

from .config import Settings
from .db import create_engine, create_session_factory
from .logging_config import configure_logging
from .publisher import create_publisher
from .registry import EventHandlerRegistry
from .service import OrderService
from .subscriber import run_subscriber

logger = logging.getLogger(__name__)


async def run(settings: Settings) -> None:
    engine = create_engine(settings.database_url, pool_pre_ping=True)
    publisher = create_publisher(settings)
    service = OrderService(create_session_factory(engine), publisher, settings)
    registry = EventHandlerRegistry(service, handler_timeout=settings.handler_timeout)
    redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    logger.info("Order worker starting (consumer %s)", settings.consumer_name)
    try:
        await run_subscriber(redis_conn, registry, settings, shutdown_event)
    finally:
        await publisher.close()
        await engine.dispose()
        logger.info("Order worker stopped")


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
