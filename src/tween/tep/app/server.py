import asyncio
import contextlib
import os
import logging
from time import time
from typing import Optional

import jinja2
from aiohttp import web
import aiohttp_jinja2
import aiohttp
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from tween.tep.app.config import (
    AppRegistryAppKey,
    ApprovalStoreAppKey,
    BreakerRegistryAppKey,
    ConsentResolverAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    DelegationBrokerAppKey,
    EventPublisherAppKey,
    ExpiryReaperTaskAppKey,
    HealthGaugeAppKey,
    KeyStoreAppKey,
    MetricsClientAppKey,
    OrchestratorAppKey,
    RedisClientAppKey,
    RedisPoolAppKey,
    RoomDirectoryAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
    TokenCodecAppKey,
    TransferLedgerAppKey,
    UserStoreAppKey,
)
from tween.tep.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_breakers,
    handle_internal_ready,
)
from tween.tep.app.handlers.oauth import (
    handle_authorize,
    handle_consent_page,
    handle_consent_submit,
    handle_device_authorization,
    handle_device_token,
    handle_introspect,
    handle_jwks,
    handle_revoke,
    handle_token,
)
from tween.tep.app.handlers.wallet import (
    handle_p2p_accept,
    handle_p2p_confirm,
    handle_p2p_initiate,
    handle_p2p_reject,
    handle_room_member_wallets,
    handle_wallet_balance,
    handle_wallet_resolve,
    handle_wallet_resolve_batch,
    handle_wallet_transactions,
    handle_wallet_verification,
)
from tween.tep.app.metrics import create_metrics_client
from tween.tep.app.tasks import expiry_reaper_task, tick_health_task
from tween.tep.breaker import LEDGER_BREAKERS, BreakerRegistry
from tween.tep.consent import ConsentResolver
from tween.tep.delegation import DelegationBroker
from tween.tep.exchange import TokenExchangeOrchestrator
from tween.tep.ledger import LedgerHttpClient, TransferLedgerClient, counts_as_ledger_failure
from tween.tep.model.health import HealthGauge
from tween.tep.rooms import HomeserverClient
from tween.tep.store.sql import SqlAppRegistry, SqlApprovalStore, SqlUserStore
from tween.tep.tokens import KeyStore, TokenCodec

logger = logging.getLogger(__name__)


def build_components(app: web.Application) -> None:
    """
    Construct every protocol component from the settings and the shared resources already in
    ``app``, and register each under its AppKey.
    """
    settings: Settings = app[SettingsAppKey]
    http_session = app[SessionAppKey]
    redis_client = app[RedisClientAppKey]
    metrics_client = app[MetricsClientAppKey]
    database_session_maker = app[DatabaseSessionMakerAppKey]

    key_store = KeyStore.load(
        settings.token_key_id,
        algorithm=settings.token_algorithm,
        private_key=settings.private_key_pem(),
        private_key_file=settings.token_private_key_file,
        allow_ephemeral=settings.allow_ephemeral_signing_key,
    )
    app[KeyStoreAppKey] = key_store
    app[TokenCodecAppKey] = TokenCodec(
        key_store, settings.token_issuer, lifetime=settings.token_lifetime
    )

    app[UserStoreAppKey] = SqlUserStore(database_session_maker)
    app[ApprovalStoreAppKey] = SqlApprovalStore(database_session_maker)
    app[AppRegistryAppKey] = SqlAppRegistry(database_session_maker)

    breakers = BreakerRegistry(
        failure_threshold=settings.breaker_failure_threshold,
        recovery_timeout=settings.breaker_recovery_timeout,
        half_open_max_calls=settings.breaker_half_open_max_calls,
        counts_as_failure=counts_as_ledger_failure,
        metrics_client=metrics_client,
    )
    for name in LEDGER_BREAKERS:
        breakers.get(name)
    app[BreakerRegistryAppKey] = breakers

    app[TransferLedgerAppKey] = TransferLedgerClient(
        LedgerHttpClient(
            http_session,
            settings.ledger_base_url,
            settings.ledger_api_key.get_secret_value(),
            timeout=settings.ledger_timeout,
            metrics_client=metrics_client,
        ),
        breakers,
        redis_client,
        initiate_ttl=settings.initiate_idempotency_ttl,
        confirm_ttl=settings.confirm_idempotency_ttl,
        metrics_client=metrics_client,
    )

    app[DelegationBrokerAppKey] = DelegationBroker(
        http_session,
        settings.das_client_id,
        settings.das_secret(),
        settings.das_token_url,
        settings.das_introspection_url,
        settings.das_revocation_url,
        redis_client=redis_client,
        device_authorization_url=settings.das_device_authorization_url,
        metrics_client=metrics_client,
        timeout=settings.das_timeout,
        service_token_margin=settings.service_token_cache_margin,
    )

    app[ConsentResolverAppKey] = ConsentResolver(
        app[ApprovalStoreAppKey],
        redis_client,
        session_ttl=settings.consent_session_ttl,
        metrics_client=metrics_client,
    )

    app[OrchestratorAppKey] = TokenExchangeOrchestrator(
        app[TokenCodecAppKey],
        app[DelegationBrokerAppKey],
        app[ConsentResolverAppKey],
        app[ApprovalStoreAppKey],
        app[UserStoreAppKey],
        app[AppRegistryAppKey],
        redis_client,
        settings.das_authorize_url,
        ledger_client=app[TransferLedgerAppKey],
        refresh_token_ttl=settings.refresh_token_ttl,
        authorization_request_ttl=settings.authorization_request_ttl,
        metrics_client=metrics_client,
    )

    homeserver = HomeserverClient(
        http_session,
        settings.homeserver_url,
        settings.homeserver_access_token.get_secret_value(),
    )
    app[RoomDirectoryAppKey] = homeserver
    app[EventPublisherAppKey] = homeserver


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    app[DatabaseSessionMakerAppKey] = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %d", params.method, params.url, params.response.status
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

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

    build_components(app)

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[ExpiryReaperTaskAppKey] = asyncio.create_task(expiry_reaper_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    app[ExpiryReaperTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[ExpiryReaperTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisPoolAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def metrics_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    route = request.match_info.route.resource
    request_path = route.canonical if route is not None else request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "tep.server.request.exception",
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
            "tep.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "tep.server.request.count",
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
            web.post("/oauth2/token", handle_token),
            web.post("/oauth2/device/authorization", handle_device_authorization),
            web.post("/oauth2/device/token", handle_device_token),
            web.get("/oauth2/authorize", handle_authorize),
            web.get("/oauth2/consent", handle_consent_page),
            web.post("/oauth2/consent", handle_consent_submit),
            web.post("/oauth2/revoke", handle_revoke),
            web.post("/oauth2/introspect", handle_introspect),
            web.get("/.well-known/jwks.json", handle_jwks),
        ]
    )

    app.add_routes(
        [
            web.get("/api/v1/wallet/balance", handle_wallet_balance),
            web.get("/api/v1/wallet/transactions", handle_wallet_transactions),
            web.get("/api/v1/wallet/verification", handle_wallet_verification),
            web.post("/api/v1/wallet/resolve/batch", handle_wallet_resolve_batch),
            web.get("/api/v1/wallet/resolve/{user_id}", handle_wallet_resolve),
            web.get("/api/v1/wallet/room/{room_id}/members", handle_room_member_wallets),
            web.post("/api/v1/wallet/p2p/initiate", handle_p2p_initiate),
            web.post("/api/v1/wallet/p2p/{transfer_id}/confirm", handle_p2p_confirm),
            web.post("/api/v1/wallet/p2p/{transfer_id}/accept", handle_p2p_accept),
            web.post("/api/v1/wallet/p2p/{transfer_id}/reject", handle_p2p_reject),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/breakers", handle_internal_breakers),
        ]
    )


def setup_templates(app: web.Application, templates_path: Optional[str] = None) -> None:
    aiohttp_jinja2.setup(
        app,
        enable_async=True,
        autoescape=True,
        loader=jinja2.FileSystemLoader(
            templates_path or os.path.join(os.getcwd(), "templates")
        ),
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
    app = web.Application(middlewares=[metrics_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    add_routes(app)
    setup_templates(app)

    app.cleanup_ctx.append(background_tasks)

    return app
