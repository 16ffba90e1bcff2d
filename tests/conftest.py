"""
共通 fixture

DB は SQLite (aiosqlite) のインメモリ。StaticPool で 1 つの接続を共有するので
セッションを開き直しても同じデータが見える。
ブローカーは実物を使わず、送信したエンベロープを記録するパブリッシャーで置き換える。
"""

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.db import create_session_factory, create_tables
from app.main import create_app
from app.service import OrderService
from fakes import RecordingPublisher, no_sleep


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        publish_retry_base_delay=0.0,
        consumer_name="test-worker",
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def service(session_factory, publisher, settings) -> OrderService:
    return OrderService(session_factory, publisher, settings, sleep=no_sleep)


@pytest_asyncio.fixture
async def client(session_factory, publisher, settings):
    app = create_app(settings, session_factory=session_factory, publisher=publisher)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
