"""
Configuration Module for the TEP Broker

This module defines the configuration system for the TEP (Tween Extension Protocol) broker, using
pydantic-settings for environment-driven settings and aiohttp AppKeys for dependency injection.

The configuration follows these principles:
1. Environment-based configuration with defaults suitable for development
2. Strong validation and typing through Pydantic
3. Dependency injection through the aiohttp application context
4. Secrets held as ``SecretStr`` so they never render in reprs or logs

Every component the handlers use (token codec, delegation broker, consent resolver, ledger client,
room collaborators) is built once in ``server.background_tasks`` and reached through the typed
AppKeys declared at the bottom of this module.
"""

import asyncio
import logging
from typing import Final, Optional

from aiohttp import ClientSession, web
from pydantic import AliasChoices, Field, PostgresDsn, RedisDsn, SecretStr
from pydantic_settings import BaseSettings
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tween.tep.app.metrics import MetricsClient
from tween.tep.breaker import BreakerRegistry
from tween.tep.consent import ConsentResolver
from tween.tep.delegation import DelegationBroker
from tween.tep.exchange import TokenExchangeOrchestrator
from tween.tep.ledger import TransferLedgerClient
from tween.tep.model.health import HealthGauge
from tween.tep.rooms import EventPublisher, RoomDirectory
from tween.tep.store import ApprovalStore, AppRegistry, UserStore
from tween.tep.tokens import DEFAULT_PRIVATE_KEY_FILE, KeyStore, TokenCodec

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the TEP broker.

    Values are loaded from environment variables. Aliases keep the variable names used by existing
    deployments working, for example the database connection string can be set with either
    PG_DSN or DATABASE_URL.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging and exception details in error responses.
    Set with DEBUG=true environment variable.
    """

    # Network and service identification settings
    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    worker_id: str
    """
    Unique identifier for this worker instance (required, no default).
    Set with WORKER_ID environment variable.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # Database and cache connections
    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for refresh records, consent sessions and idempotency guards.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/tep",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for users, mini-apps and approvals.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    # Token signing
    token_issuer: str = "https://tmcp.example.com"
    """Value of the ``iss`` claim on minted tokens, and the only issuer accepted on decode."""

    token_key_id: str = "tep-2024-01"
    """Key identifier written into the header of every minted token."""

    token_algorithm: str = "RS256"
    """Signing algorithm. One of RS256, RS384 or RS512."""

    token_lifetime: int = 86400
    """Lifetime of a TEP token in seconds."""

    token_private_key: Optional[SecretStr] = Field(
        None,
        validation_alias=AliasChoices("token_private_key", "tmcp_private_key"),
    )
    """
    PEM encoded RSA private key.
    Set with TOKEN_PRIVATE_KEY or TMCP_PRIVATE_KEY environment variables.
    """

    token_private_key_file: str = Field(
        DEFAULT_PRIVATE_KEY_FILE,
        validation_alias=AliasChoices("token_private_key_file", "tmcp_private_key_file"),
    )
    """
    Path of a mounted secret holding the PEM encoded private key, used when the key is not set
    directly. Set with TOKEN_PRIVATE_KEY_FILE or TMCP_PRIVATE_KEY_FILE environment variables.
    """

    allow_ephemeral_signing_key: bool = False
    """
    Generate a throwaway signing key when none is configured. Tokens minted with it cannot be
    verified by any other process or after a restart, so this is for development only.
    """

    # Delegated authentication service
    das_client_id: str = "tep_broker"
    """Client id the broker authenticates to the DAS with."""

    das_client_secret: SecretStr = SecretStr("")
    """Client secret the broker authenticates to the DAS with."""

    das_client_secret_file: Optional[str] = None
    """Path of a mounted secret holding the DAS client secret. Takes precedence when set."""

    das_token_url: str = "http://das:8080/oauth2/token"
    das_introspection_url: str = "http://das:8080/oauth2/introspect"
    das_revocation_url: str = "http://das:8080/oauth2/revoke"
    das_authorize_url: str = "http://das:8080/authorize"

    das_device_authorization_url: Optional[str] = None
    """RFC 8628 device authorization endpoint. Defaults to ``device/authorization`` next to the token URL."""

    das_timeout: float = 30
    """Total timeout in seconds of every DAS request."""

    # Wallet ledger
    ledger_base_url: str = "http://wallet:3000"
    ledger_api_key: SecretStr = SecretStr("")
    ledger_timeout: float = 30

    # Homeserver used for room membership checks and event publishing
    homeserver_url: str = "http://synapse:8008"
    homeserver_access_token: SecretStr = SecretStr("")

    # Circuit breakers
    breaker_failure_threshold: int = 5
    """Consecutive ledger failures after which a breaker opens."""

    breaker_recovery_timeout: float = 60
    """Seconds an open breaker waits before allowing a trial call."""

    breaker_half_open_max_calls: int = 1
    """Trial calls admitted at once while a breaker is half-open."""

    # Cache lifetimes
    refresh_token_ttl: int = 30 * 86400
    """Lifetime in seconds of a refresh handle. Default: 30 days."""

    consent_session_ttl: int = 900
    authorization_request_ttl: int = 900

    initiate_idempotency_ttl: int = 86400
    """How long in seconds an initiate idempotency key is remembered."""

    confirm_idempotency_ttl: int = 300
    service_token_cache_margin: int = 60
    """Seconds before expiry at which the cached DAS service token is replaced."""

    # Background processing
    expiry_reaper_interval: float = 60
    """Seconds between sweeps for transfers past their confirmation deadline."""

    # Monitoring and observability settings
    metrics_backend: str = "telegraf"
    """
    Metrics backend, either "telegraf" or "none".
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    def das_secret(self) -> str:
        """The DAS client secret, read from ``das_client_secret_file`` when that is set."""
        if self.das_client_secret_file:
            with open(self.das_client_secret_file) as fd:
                return fd.read().strip()
        return self.das_client_secret.get_secret_value()

    def private_key_pem(self) -> Optional[str]:
        if self.token_private_key is None:
            return None
        return self.token_private_key.get_secret_value() or None


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisPoolAppKey: Final = web.AppKey("redis_pool", redis.ConnectionPool)
"""AppKey for accessing the Redis connection pool"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client every component reports through"""

KeyStoreAppKey: Final = web.AppKey("key_store", KeyStore)
TokenCodecAppKey: Final = web.AppKey("token_codec", TokenCodec)
DelegationBrokerAppKey: Final = web.AppKey("delegation_broker", DelegationBroker)
BreakerRegistryAppKey: Final = web.AppKey("breaker_registry", BreakerRegistry)
TransferLedgerAppKey: Final = web.AppKey("transfer_ledger", TransferLedgerClient)
ConsentResolverAppKey: Final = web.AppKey("consent_resolver", ConsentResolver)
OrchestratorAppKey: Final = web.AppKey("orchestrator", TokenExchangeOrchestrator)

UserStoreAppKey: Final = web.AppKey("user_store", UserStore)
ApprovalStoreAppKey: Final = web.AppKey("approval_store", ApprovalStore)
AppRegistryAppKey: Final = web.AppKey("app_registry", AppRegistry)

RoomDirectoryAppKey: Final = web.AppKey("room_directory", RoomDirectory)
"""AppKey for the room membership check used by in-room transfers"""

EventPublisherAppKey: Final = web.AppKey("event_publisher", EventPublisher)
"""AppKey for publishing transfer events to rooms"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""

ExpiryReaperTaskAppKey: Final = web.AppKey("expiry_reaper_task", asyncio.Task[None])
"""AppKey for the background task that expires stale transfers"""
