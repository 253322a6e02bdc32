import asyncio
import contextlib
import json
import logging
from time import time
from typing import Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.graze.atstore.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    MirrorRetryTaskAppKey,
    MirrorTaskSetAppKey,
    ProtocolClientAppKey,
    RecordStoreAppKey,
    RedisClientAppKey,
    RedisPoolAppKey,
    RemoteMirrorAppKey,
    SessionAppKey,
    SessionLifecycleAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
    StatePurgeTaskAppKey,
    StateStoreAppKey,
    TickHealthTaskAppKey,
)
from social.graze.atstore.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.graze.atstore.app.handlers.oauth import (
    handle_atproto_callback,
    handle_atproto_login,
    handle_atproto_logout,
)
from social.graze.atstore.app.handlers.records import (
    handle_create_record,
    handle_delete_record,
    handle_get_record,
    handle_list_latest,
    handle_list_published,
    handle_my_latest,
    handle_put_record,
)
from social.graze.atstore.app.metrics import create_metrics_client
from social.graze.atstore.app.tasks import (
    MirrorRetryQueue,
    mirror_retry_scheduler,
    mirror_retry_task,
    state_purge_task,
    tick_health_task,
)
from social.graze.atstore.atproto.oauth import (
    OAuthSessionData,
    OAuthStateData,
    load_protocol_client,
)
from social.graze.atstore.atproto.session import SessionLifecycle
from social.graze.atstore.errors import (
    ConflictError,
    NotFoundError,
    RecordValidationError,
    StorageError,
)
from social.graze.atstore.mirror.engine import RemoteMirror
from social.graze.atstore.mirror.scheduler import MirrorTaskSet
from social.graze.atstore.model.base import Base
from social.graze.atstore.model.health import HealthGauge
from social.graze.atstore.model.kv import AuthSession, AuthState
from social.graze.atstore.storage.kv import KeyValueStore
from social.graze.atstore.storage.records import RecordStore

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(settings.database_url)
    app[DatabaseAppKey] = engine
    if settings.create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    database_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session_maker

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s", params)

        async def on_request_end(session, trace_config_ctx, params):
            logger.debug("Ending request: %s", params)

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    http_session = aiohttp.ClientSession(trace_configs=[trace_config])
    app[SessionAppKey] = http_session

    app[RedisPoolAppKey] = redis.ConnectionPool.from_url(str(settings.redis_dsn))
    app[RedisClientAppKey] = redis.Redis(connection_pool=app[RedisPoolAppKey])

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    state_store = KeyValueStore(database_session_maker, AuthState, OAuthStateData)
    session_store = KeyValueStore(
        database_session_maker,
        AuthSession,
        OAuthSessionData,
        fernet=settings.encryption_key if settings.encrypt_sessions else None,
    )
    record_store = RecordStore(database_session_maker)
    app[StateStoreAppKey] = state_store
    app[SessionStoreAppKey] = session_store
    app[RecordStoreAppKey] = record_store

    protocol_client = load_protocol_client(
        settings.oauth_client_factory, settings, http_session
    )
    if protocol_client is not None:
        app[ProtocolClientAppKey] = protocol_client

    session_lifecycle = SessionLifecycle(
        session_store,
        http_session,
        metrics_client,
        protocol_client=protocol_client,
        debug=settings.debug,
    )
    app[SessionLifecycleAppKey] = session_lifecycle

    retry_scheduler = None
    if settings.mirror_retry_enabled:
        retry_scheduler = mirror_retry_scheduler(
            MirrorRetryQueue.from_settings(
                app[RedisClientAppKey], metrics_client, settings
            )
        )

    remote_mirror = RemoteMirror(
        settings.record_collection,
        metrics_client,
        attempt_timeout=settings.mirror_attempt_timeout,
        retry_scheduler=retry_scheduler,
    )
    app[RemoteMirrorAppKey] = remote_mirror
    app[MirrorTaskSetAppKey] = MirrorTaskSet(
        record_store, session_lifecycle, remote_mirror, metrics_client
    )

    logger.info("Startup complete")

    background = [
        (TickHealthTaskAppKey, tick_health_task),
        (StatePurgeTaskAppKey, state_purge_task),
    ]
    if settings.mirror_retry_enabled:
        background.append((MirrorRetryTaskAppKey, mirror_retry_task))

    for key, task_func in background:
        app[key] = asyncio.create_task(task_func(app))

    yield

    logger.info("Shutting down background tasks")

    for key, _ in background:
        app[key].cancel()
    for key, _ in background:
        with contextlib.suppress(asyncio.exceptions.CancelledError):
            await app[key]

    await app[MirrorTaskSetAppKey].close()

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisPoolAppKey].aclose()
    await app[MetricsClientAppKey].close()


def _error_response(status: int, message: str, **extra) -> web.Response:
    return web.Response(
        status=status,
        body=json.dumps({"error": message, **extra}),
        content_type="application/json",
    )


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map domain errors raised by handlers to JSON responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ConflictError as e:
        return _error_response(409, str(e))
    except NotFoundError as e:
        return _error_response(404, str(e))
    except RecordValidationError as e:
        return _error_response(400, str(e))
    except StorageError as e:
        sentry_sdk.capture_exception(e)
        logger.exception("Storage failure handling %s %s", request.method, request.path)
        await request.app[HealthGaugeAppKey].record_failure("storage")
        return _error_response(500, "Storage error")


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].record_failure("request")
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.match_info.route.resource.canonical if request.match_info.route.resource else request.path

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
        response_status_code = 500
        metrics_client.increment(
            "atstore.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "atstore.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "atstore.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def add_routes(app: web.Application) -> None:
    app.add_routes(
        [
            web.get("/auth/atproto/login", handle_atproto_login),
            web.get("/auth/atproto/callback", handle_atproto_callback),
            web.post("/auth/atproto/logout", handle_atproto_logout),
        ]
    )

    app.add_routes(
        [
            web.get("/api/records", handle_list_latest),
            web.post("/api/records", handle_create_record),
            web.get("/api/records/published", handle_list_published),
            web.get("/api/records/mine", handle_my_latest),
            web.get("/api/records/{rkey}", handle_get_record),
            web.put("/api/records/{rkey}", handle_put_record),
            web.delete("/api/records/{rkey}", handle_delete_record),
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

    add_routes(app)

    app.cleanup_ctx.append(background_tasks)

    return app
