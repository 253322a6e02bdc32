"""
Configuration Module for the atstore service

Settings are loaded from the environment with Pydantic and shared with the
rest of the application through typed aiohttp AppKeys. Components never read
settings globally; they receive the values they need when they are built in
`server.background_tasks`.

Key configuration areas include:
- Service identification and networking
- Database and Redis connections
- Cryptographic materials (service token keys, session encryption)
- Remote mirror behaviour and its retry queue
- Monitoring and observability
"""

import asyncio
import base64
import logging
from typing import Annotated, Final, List, Optional

from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from jwcrypto import jwk
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from social.graze.atstore.app.metrics import MetricsClient
from social.graze.atstore.atproto.oauth import (
    OAuthProtocolClient,
    OAuthSessionData,
    OAuthStateData,
)
from social.graze.atstore.atproto.session import SessionLifecycle
from social.graze.atstore.mirror.engine import RemoteMirror
from social.graze.atstore.mirror.scheduler import MirrorTaskSet
from social.graze.atstore.model.health import HealthGauge
from social.graze.atstore.storage.kv import KeyValueStore
from social.graze.atstore.storage.records import RecordStore

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the atstore service.

    Every field maps to an upper-case environment variable of the same name.
    The database connection string can be given as DATABASE_URL or PG_DSN.
    """

    debug: bool = False
    """Verbose logging and request/response debug middleware."""

    http_port: int = Field(alias="port", default=5100)
    """HTTP port to listen on. Set with PORT."""

    external_hostname: str = "localhost:5100"
    """Public hostname, used to build the OAuth callback URL."""

    sentry_dsn: Optional[str] = None
    """Sentry DSN. Error reporting is disabled when unset."""

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """Redis connection string for the mirror retry queue."""

    database_url: str = Field(
        "postgresql+asyncpg://postgres:password@db/atstore",
        validation_alias=AliasChoices("database_url", "pg_dsn"),
    )
    """
    SQLAlchemy async connection string. PostgreSQL (asyncpg) in production;
    `sqlite+aiosqlite:///atstore.db` works for local development.
    """

    create_tables: bool = False
    """Run `metadata.create_all` at startup instead of relying on alembic."""

    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """JWK set, or a path to a JSON file holding one, for service tokens."""

    active_signing_keys: List[str] = list()
    """Key IDs from json_web_keys used to sign service tokens."""

    service_token_ttl: int = 86400
    """Lifetime in seconds of issued service tokens."""

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """Fernet key, base64-encoded, used to encrypt stored sessions."""

    encrypt_sessions: bool = True
    """Encrypt SessionEntry payloads at rest."""

    worker_id: str
    """Unique identifier for this worker instance (required)."""

    oauth_client_factory: Optional[str] = None
    """
    `"module:callable"` reference to the OAuth protocol client factory. The
    callable receives the settings and the shared aiohttp ClientSession.
    """

    state_ttl: int = 600
    """Seconds before an unused authorization state is purged."""

    state_purge_interval: int = 60
    """Seconds between state purge runs."""

    record_collection: str = "com.crabdance.nandi.post"
    """NSID of the content record collection."""

    mirror_attempt_timeout: float = 10.0
    """Seconds allowed for each remote repository call."""

    mirror_retry_enabled: bool = False
    """Retry abandoned mirrors from a Redis queue."""

    mirror_retry_max_retries: int = 3
    """Maximum retry attempts for one abandoned mirror."""

    mirror_retry_base_delay: int = 60
    """
    Base delay in seconds for mirror retries (exponential backoff).
    Actual delay = base_delay * (2 ^ retry_attempt)
    """

    metrics_backend: str = "telegraf"
    """Metrics backend: 'telegraf' or 'none'."""

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """Accept a JWKSet or the path of a JSON file containing one."""
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
        """Accept a Fernet instance or a base64-encoded Fernet key."""
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


MIRROR_RETRY_QUEUE = "content_records:mirror:retry"
"""
Redis sorted set of record uris waiting for a mirror retry, scored by the
epoch second at which the retry is due.
"""

MIRROR_RETRY_COUNT_QUEUE = "content_records:mirror:retry:count"
"""Redis hash of record uri to the number of retries already attempted."""

SettingsAppKey: Final = web.AppKey("settings", Settings)
DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
SessionAppKey: Final = web.AppKey("http_session", ClientSession)
RedisPoolAppKey: Final = web.AppKey("redis_pool", redis.ConnectionPool)
RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)

StateStoreAppKey: Final = web.AppKey("state_store", KeyValueStore[OAuthStateData])
SessionStoreAppKey: Final = web.AppKey(
    "session_store", KeyValueStore[OAuthSessionData]
)
RecordStoreAppKey: Final = web.AppKey("record_store", RecordStore)
SessionLifecycleAppKey: Final = web.AppKey("session_lifecycle", SessionLifecycle)
RemoteMirrorAppKey: Final = web.AppKey("remote_mirror", RemoteMirror)
ProtocolClientAppKey: Final = web.AppKey("protocol_client", OAuthProtocolClient)
MirrorTaskSetAppKey: Final = web.AppKey("mirror_task_set", MirrorTaskSet)

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
MirrorRetryTaskAppKey: Final = web.AppKey("mirror_retry_task", asyncio.Task[None])
StatePurgeTaskAppKey: Final = web.AppKey("state_purge_task", asyncio.Task[None])
