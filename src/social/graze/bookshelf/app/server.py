import asyncio
import contextlib
import logging
from time import time
from typing import (
    Optional,
)
from aio_statsd import TelegrafStatsdClient
from aiohttp import web
import aiohttp
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.graze.bookshelf.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    DPoPExecutorAppKey,
    HealthGaugeAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
    StateCodecAppKey,
    TelegrafStatsdClientAppKey,
)
from social.graze.bookshelf.app.handlers.books import (
    handle_bulk_update_book_status,
    handle_list_books,
    handle_update_book_status,
)
from social.graze.bookshelf.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.graze.bookshelf.app.handlers.oauth import (
    handle_auth_start,
    handle_client_metadata,
    handle_logout,
    handle_me,
    handle_oauth_callback,
)
from social.graze.bookshelf.app.tasks import tick_health_task
from social.graze.bookshelf.atproto.dpop import DPoPRequestExecutor
from social.graze.bookshelf.atproto.oauth import TokenRefresher
from social.graze.bookshelf.atproto.state import StateCodec
from social.graze.bookshelf.errors import BookshelfException
from social.graze.bookshelf.model.health import HealthGauge
from social.graze.bookshelf.model.store import (
    DatabaseSessionStore,
    RedisSessionStore,
    SessionStore,
)

logger = logging.getLogger(__name__)

TickHealthTaskAppKey = web.AppKey("tick_health_task", asyncio.Task[None])


def build_trace_config(settings: Settings) -> aiohttp.TraceConfig:
    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    return trace_config


def build_session_store(
    settings: Settings,
    database_session: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
) -> SessionStore:
    if settings.session_backend == "redis":
        return RedisSessionStore(redis_client)
    return DatabaseSessionStore(database_session)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    http_session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=settings.http_timeout),
        trace_configs=[build_trace_config(settings)],
    )
    app[SessionAppKey] = http_session

    redis_client = redis.Redis.from_url(str(settings.redis_dsn))
    app[RedisClientAppKey] = redis_client

    statsd_client = TelegrafStatsdClient(
        host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
    )
    await statsd_client.connect()
    app[TelegrafStatsdClientAppKey] = statsd_client

    session_store = build_session_store(settings, database_session, redis_client)
    app[SessionStoreAppKey] = session_store

    app[DPoPExecutorAppKey] = DPoPRequestExecutor(
        http_session,
        refresher=TokenRefresher(
            settings,
            http_session,
            session_store,
            redis_session=redis_client,
            statsd_client=statsd_client,
        ),
        statsd_client=statsd_client,
    )

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[TelegrafStatsdClientAppKey].close()


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except BookshelfException as e:
        logger.info(
            "%s %s failed: %s %s", request.method, request.path, e.code, e.message
        )
        return web.json_response(e.to_dict(), status=e.status)


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception("Unhandled exception for %s %s", request.method, request.path)
        sentry_sdk.capture_exception(e)
        health_gauge = request.app.get(HealthGaugeAppKey, None)
        if health_gauge is not None:
            await health_gauge.record_failure()
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    statsd_client = request.app[TelegrafStatsdClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        statsd_client.increment(
            "bookshelf.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        statsd_client.timer(
            "bookshelf.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        statsd_client.increment(
            "bookshelf.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def add_routes(app: web.Application) -> None:
    app.add_routes([web.get("/client-metadata.json", handle_client_metadata)])

    app.add_routes(
        [
            web.post("/api/auth/start", handle_auth_start),
            web.get("/oauth/callback", handle_oauth_callback),
            web.post("/api/auth/logout", handle_logout),
            web.get("/api/me", handle_me),
        ]
    )

    app.add_routes(
        [
            web.get("/api/books", handle_list_books),
            web.post("/api/books/status", handle_bulk_update_book_status),
            web.put("/api/books/{uri:.+}/status", handle_update_book_status),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=True,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(
        middlewares=[statsd_middleware, sentry_middleware, error_middleware]
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()
    app[StateCodecAppKey] = StateCodec(
        settings.encryption_key, max_age=settings.state_max_age
    )

    add_routes(app)

    app.cleanup_ctx.append(background_tasks)

    return app
