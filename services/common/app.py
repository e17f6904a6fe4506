"""
Common — FastAPI アプリケーションの雛形

create_service_app() で全サービスを同じ形に組み立てる:
  - app.state に設定を載せる
  - trace id ミドルウェアとエラーエンベロープを登録
  - lifespan で DB・Redis・送信用 httpx クライアントを開く

呼び出し側から渡されたリソース（テストではこれで全サービスを
インプロセス接続する）はそのまま使い、シャットダウン時にも閉じない。
"""

import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI
from sqlalchemy import MetaData

from .config import ServiceSettings
from .context import TraceIdMiddleware
from .database import open_database
from .errors import install_error_handlers
from .logging import configure_logging

logger = logging.getLogger(__name__)


async def startup(app: FastAPI) -> None:
    settings: ServiceSettings = app.state.settings
    app.state.engine, app.state.async_session = await open_database(
        settings.database_url, app.state.metadata
    )
    app.state.owned = []
    if app.state.redis is None and settings.redis_url:
        app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        app.state.owned.append("redis")
    if app.state.http_client is None:
        app.state.http_client = httpx.AsyncClient(timeout=settings.http_timeout)
        app.state.owned.append("http_client")
    logger.info("%s started", settings.service_name)


async def shutdown(app: FastAPI) -> None:
    for name in app.state.owned:
        await getattr(app.state, name).aclose()
        setattr(app.state, name, None)
    app.state.owned = []
    await app.state.engine.dispose()
    logger.info("%s stopped", app.state.settings.service_name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup(app)
    yield
    await shutdown(app)


def create_service_app(
    settings: ServiceSettings,
    metadata: MetaData,
    *,
    title: str,
    redis: aioredis.Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    configure_logging(settings.log_level)

    app = FastAPI(title=title, lifespan=lifespan)
    app.state.settings = settings
    app.state.metadata = metadata
    app.state.redis = redis
    app.state.http_client = http_client
    app.add_middleware(TraceIdMiddleware)
    install_error_handlers(app)
    return app
