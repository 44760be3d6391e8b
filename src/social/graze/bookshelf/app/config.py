"""
Configuration Module for the Bookshelf Service

This module defines the configuration system for the service, using Pydantic for
settings validation and dependency injection through aiohttp AppKeys.

The Settings class is loaded from environment variables with defaults suitable for
development environments. All application components access settings and shared
resources through typed AppKeys.

Key configuration areas include:
- Service identification and the OAuth client identity
- Identity services used for handle and DID resolution
- Database and cache connections
- Cryptographic materials (service auth keys, flow state encryption)
- Monitoring and observability
"""

import base64
import logging
from typing import Annotated, Final, List, Optional
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from jwcrypto import jwk
from pydantic import (
    AliasChoices,
    Field,
    field_validator,
    PostgresDsn,
    RedisDsn,
)
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)

from social.graze.bookshelf.atproto.dpop import DPoPRequestExecutor
from social.graze.bookshelf.atproto.state import StateCodec
from social.graze.bookshelf.model.health import HealthGauge
from social.graze.bookshelf.model.store import SessionStore


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the Bookshelf service.

    Environment variables are automatically mapped to settings fields, with aliases
    provided where older deployments used different names. For example, the database
    connection string can be set with either PG_DSN or DATABASE_URL.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging of outbound requests.
    Set with DEBUG=true environment variable.
    """

    # Network and service identification settings
    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    external_hostname: str = "localhost:5100"
    """
    Public hostname for the service, used for the client id and callback URL.
    Set with EXTERNAL_HOSTNAME environment variable.
    """

    app_name: str = "Book Explorer"
    """Client name published in the OAuth client metadata document"""

    oauth_scope: str = "atproto transition:generic"
    """
    Scope requested in the authorization request and advertised in client metadata.
    Set with OAUTH_SCOPE environment variable.
    """

    default_destination: str = "/"
    """
    Redirect destination after authentication if none was requested.
    Set with DEFAULT_DESTINATION environment variable.
    """

    allowed_destination_origins: List[str] = list()
    """
    Origins (`scheme://host[:port]`) besides this service's own that may receive
    the post-login redirect. Relative destinations are always allowed.
    Set with ALLOWED_DESTINATION_ORIGINS environment variable as a JSON list.
    """

    # Identity services
    plc_directory: str = "https://plc.directory"
    """
    Base URL of the PLC directory used to fetch did:plc documents.
    Set with PLC_DIRECTORY environment variable.
    """

    default_identity_service: str = "https://bsky.social"
    """
    Identity service asked to resolve handles after the handle's own domain.
    Set with DEFAULT_IDENTITY_SERVICE environment variable.
    """

    fallback_identity_service: str = "https://api.bsky.app"
    """
    Last identity service asked to resolve handles.
    Set with FALLBACK_IDENTITY_SERVICE environment variable.
    """

    http_timeout: float = 15.0
    """Total timeout in seconds for each outbound HTTP request"""

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN. Unexpected exceptions are reported only when this is set.
    Set with SENTRY_DSN environment variable.
    """

    # Database and cache connections
    session_backend: str = "database"
    """
    Where sessions are stored: "database" (PostgreSQL) or "redis".
    Set with SESSION_BACKEND environment variable.
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for the refresh lock and the redis session store.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/bookshelf",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for the `user_sessions` table.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    # Security and cryptography settings
    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """
    JSON Web Key Set containing the keys used to sign service auth tokens.
    Either a JWKSet or the path of a JSON file holding one.
    Set with JSON_WEB_KEYS environment variable.
    """

    service_auth_keys: List[str] = list()
    """
    List of key IDs (kid) from json_web_keys used to sign service auth tokens.
    The first entry signs new tokens, all entries verify.
    Set with SERVICE_AUTH_KEYS environment variable as a JSON list.
    """

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet symmetric key sealing the OAuth flow state.
    Either a Fernet instance or the base64 output of `bookshelf-util gen-crypto`.
    Set with ENCRYPTION_KEY environment variable.
    """

    state_max_age: int = 300
    """Lifetime in seconds of an OAuth flow state token"""

    refresh_lock_timeout: int = 30
    """
    Lifetime in seconds of the per-DID token refresh lock, and the longest a
    concurrent caller waits for another refresh to finish.
    """

    bulk_update_concurrency: int = 5
    """Maximum number of record updates in flight for one bulk request"""

    # Monitoring and observability settings
    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    Telegraf host receiving request, DPoP and OAuth metrics.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    Telegraf StatsD port.
    Set with TELEGRAF_PORT environment variable.
    """

    @property
    def base_url(self) -> str:
        if self.external_hostname.startswith(("http://", "https://")):
            return self.external_hostname.rstrip("/")
        return f"https://{self.external_hostname}"

    @property
    def client_id(self) -> str:
        return f"{self.base_url}/client-metadata.json"

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url}/oauth/callback"

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """
        Validate and process the json_web_keys setting.

        Accepts an existing JWKSet object or a file path to a JSON file
        containing a JWK Set.

        Raises:
            ValueError: If the input is neither a JWKSet nor a file path
        """
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                data = fd.read()
                return jwk.JWKSet.from_json(data)
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Validate and process the encryption_key setting.

        Accepts an existing Fernet object or a base64-encoded string containing
        a Fernet key (the output of `bookshelf-util gen-crypto`).

        Raises:
            ValueError: If the input is neither a Fernet object nor a string
        """
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


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

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

SessionStoreAppKey: Final = web.AppKey("session_store", SessionStore)
"""AppKey for accessing the configured session store"""

StateCodecAppKey: Final = web.AppKey("state_codec", StateCodec)
"""AppKey for sealing and opening OAuth flow state"""

DPoPExecutorAppKey: Final = web.AppKey("dpop_executor", DPoPRequestExecutor)
"""AppKey for the executor sending DPoP-bound requests to a PDS"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

TelegrafStatsdClientAppKey: Final = web.AppKey(
    "telegraf_statsd_client", TelegrafStatsdClient
)
"""AppKey for the Telegraf/StatsD metrics client"""
