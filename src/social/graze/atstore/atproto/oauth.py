"""
AT Protocol OAuth collaborator seam.

The authorization-code exchange, PKCE, DPoP key management and token refresh
are performed by an external protocol client that implements
`OAuthProtocolClient`. This service only persists what that client produces:

1. `authorize` returns an `AuthorizationRequest`; its `state` is stored in the
   state store under `state_key` and the user is redirected to `redirect_url`.
2. When the authorization server redirects back, the stored state is read and
   deleted, and `callback` turns the query parameters into `OAuthSessionData`,
   which is stored in the session store keyed by DID.
3. `refresh` is called by `SessionLifecycle` when a stored access token has
   expired.

The client is loaded at startup from the `oauth_client_factory` setting, a
`"module:callable"` reference. The callable receives the `Settings` and the
shared `aiohttp.ClientSession` and returns the client.
"""

import importlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Protocol

from aiohttp import ClientSession
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from social.graze.atstore.app.config import Settings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthStateData(BaseModel):
    """In-flight authorization attempt, stored as a StateEntry payload."""

    subject: str
    issuer: Optional[str] = None
    destination: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class OAuthSessionData(BaseModel):
    """
    Session credentials for one identity, stored as a SessionEntry payload.

    `token_type` is "DPoP" for OAuth sessions, in which case `dpop_jwk` holds
    the private key used to sign proofs. Bearer sessions have no key.
    """

    did: str
    handle: Optional[str] = None
    pds_url: str
    issuer: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "DPoP"
    dpop_jwk: Optional[Dict[str, Any]] = None
    dpop_nonce: Optional[str] = None
    scope: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    access_token_expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None, leeway: int = 30) -> bool:
        """True when the access token expires within `leeway` seconds of now."""
        if self.access_token_expires_at is None:
            return False
        now = now or _utcnow()
        expires_at = self.access_token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at - timedelta(seconds=leeway) <= now


@dataclass
class AuthorizationRequest:
    redirect_url: str
    state_key: str
    state: OAuthStateData


class OAuthProtocolClient(Protocol):
    async def authorize(self, subject: str) -> AuthorizationRequest: ...

    async def callback(
        self, params: Mapping[str, str], state: OAuthStateData
    ) -> OAuthSessionData: ...

    async def refresh(self, session: OAuthSessionData) -> OAuthSessionData: ...


def load_protocol_client(
    factory_ref: Optional[str],
    settings: "Settings",
    http_session: ClientSession,
) -> Optional[OAuthProtocolClient]:
    """
    Resolve and invoke a `"module:callable"` factory.

    Returns None when no factory is configured, in which case the login routes
    answer 503 and expired sessions cannot be refreshed.
    """
    if not factory_ref:
        logger.info("No OAuth protocol client configured")
        return None

    module_name, sep, attr_name = factory_ref.partition(":")
    if not sep or not module_name or not attr_name:
        raise ValueError(
            f"oauth_client_factory must have the form 'module:callable': {factory_ref}"
        )

    module = importlib.import_module(module_name)
    factory = getattr(module, attr_name)
    client = factory(settings, http_session)
    logger.info(f"Loaded OAuth protocol client from {factory_ref}")
    return client
