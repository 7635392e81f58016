import asyncio
import contextlib
import logging
from time import time
from typing import Dict, Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from brave.bpc.app.config import (
    BlueprintRepositoryAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    ReconcilerAppKey,
    ReconcileTaskAppKey,
    RedisClientAppKey,
    ScopeResolverAppKey,
    SessionAppKey,
    SessionIdentityAppKey,
    Settings,
    SettingsAppKey,
    SSOClientAppKey,
    TickHealthTaskAppKey,
    TokenStoreAppKey,
)
from brave.bpc.app.handlers.blueprints import handle_blueprints, handle_reconcile
from brave.bpc.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_me,
    handle_internal_ready,
)
from brave.bpc.app.handlers.sso import handle_callback, handle_login, handle_logout
from brave.bpc.app.metrics import TelegrafCompatibilityClient, create_metrics_client
from brave.bpc.app.tasks import reconcile_task, tick_health_task
from brave.bpc.auth.repository import TokenRepository
from brave.bpc.auth.resolver import ScopeResolver
from brave.bpc.auth.session import SessionIdentity
from brave.bpc.auth.skew import ClockSkewPolicy
from brave.bpc.auth.store import TokenStore
from brave.bpc.esi.oauth import SSOClient
from brave.bpc.esi.scopes import LOGIN_SCOPES
from brave.bpc.model.health import HealthGauge
from brave.bpc.reconcile.reconciler import Reconciler
from brave.bpc.reconcile.repository import BlueprintRepository

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

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
                "Ending request: %s %s %d", params.method, params.url, params.response.status
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    app[RedisClientAppKey] = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    if isinstance(metrics_client, TelegrafCompatibilityClient):
        await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    sso_client = SSOClient(
        app[SessionAppKey],
        settings.esi_client_id,
        settings.esi_client_secret,
        settings.esi_redirect_url,
        LOGIN_SCOPES,
        settings.skew,
        timeout=settings.esi_timeout,
    )
    app[SSOClientAppKey] = sso_client

    token_store = TokenStore(TokenRepository(database_session, settings.encryption_key))
    await token_store.load()
    app[TokenStoreAppKey] = token_store

    app[ScopeResolverAppKey] = ScopeResolver(
        token_store, sso_client, ClockSkewPolicy(settings.skew)
    )
    app[SessionIdentityAppKey] = SessionIdentity(
        app[RedisClientAppKey], settings.session_lifetime
    )

    blueprint_repository = BlueprintRepository(database_session)
    app[BlueprintRepositoryAppKey] = blueprint_repository
    app[ReconcilerAppKey] = Reconciler(blueprint_repository, timeout=settings.esi_timeout * 4)

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[ReconcileTaskAppKey] = asyncio.create_task(reconcile_task(app))

    yield

    logger.info("Shutting down background tasks")

    tasks = [app[TickHealthTaskAppKey], app[ReconcileTaskAppKey]]
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


def request_tags(request: web.Request) -> Dict[str, str]:
    """Metric tags for a request: the route template, not the raw path, and the method."""
    route = request.match_info.route.resource
    return {
        "path": route.canonical if route is not None else "unmatched",
        "method": request.method,
    }


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    """Report unexpected exceptions; HTTP exceptions are ordinary responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].record_failure()
        raise


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    tags = request_tags(request)
    start_time = time()
    status = 500

    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "bpc.server.request.exception", 1, tag_dict={**tags, "exception": type(e).__name__}
        )
        raise
    finally:
        metrics_client.timer("bpc.server.request.time", time() - start_time, tag_dict=tags)
        metrics_client.increment("bpc.server.request.count", 1, tag_dict={**tags, "status": status})


def add_routes(app: web.Application) -> None:
    app.add_routes(
        [
            web.get("/login", handle_login),
            web.get("/callback", handle_callback),
            web.get("/logout", handle_logout),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/me", handle_internal_me),
        ]
    )

    app.add_routes(
        [
            web.get("/api/blueprints", handle_blueprints),
            web.post("/api/blueprints/reconcile", handle_reconcile),
        ]
    )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    add_routes(app)

    app.cleanup_ctx.append(background_tasks)

    return app
