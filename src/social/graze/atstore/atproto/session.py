"""
Lazy session restore for authenticated remote calls.

Sessions are never cached in memory. Each action that needs to talk to the
user's repository calls `SessionLifecycle.restore`, which reads the
SessionEntry, refreshes the access token through the protocol client when it
has expired and builds a `CredentialHandle` around a signed `RepoClient`.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import List, Optional

import sentry_sdk
from aiohttp import ClientError, ClientSession
from jwcrypto import jwk

from social.graze.atstore.app.metrics import MetricsClient
from social.graze.atstore.atproto.chain import (
    DpopMiddleware,
    LoggingMiddleware,
    MetricsMiddleware,
    XrpcMiddleware,
)
from social.graze.atstore.atproto.oauth import OAuthProtocolClient, OAuthSessionData
from social.graze.atstore.atproto.repo import RepoClient
from social.graze.atstore.errors import RemoteTransportError, StorageError
from social.graze.atstore.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class CredentialHandle:
    """Usable credentials for one identity."""

    identity_id: str
    session: OAuthSessionData
    repo_client: RepoClient


class SessionLifecycle:
    """
    Store, restore and revoke session credentials.

    Args:
        session_store: Key-value store of `OAuthSessionData` keyed by DID
        http_session: Shared aiohttp client session for repository calls
        metrics_client: Metrics sink
        protocol_client: OAuth protocol client used to refresh expired tokens
        debug: Add request/response debug logging to repository clients
    """

    def __init__(
        self,
        session_store: KeyValueStore[OAuthSessionData],
        http_session: ClientSession,
        metrics_client: MetricsClient,
        protocol_client: Optional[OAuthProtocolClient] = None,
        debug: bool = False,
    ) -> None:
        self._session_store = session_store
        self._http_session = http_session
        self._metrics_client = metrics_client
        self._protocol_client = protocol_client
        self._debug = debug

    async def store(self, session_data: OAuthSessionData) -> None:
        await self._session_store.upsert(session_data.did, session_data)

    async def revoke(self, identity_id: str) -> None:
        await self._session_store.delete(identity_id)
        self._metrics_client.increment("atstore.session.revoked", 1)

    async def restore(self, identity_id: str) -> Optional[CredentialHandle]:
        """
        Return credentials for `identity_id`, or None if no session is stored.

        Raises:
            RemoteTransportError: the token refresh could not reach the server
            StorageError: the session store failed
        """
        session = await self._session_store.get(identity_id)
        if session is None:
            self._metrics_client.increment(
                "atstore.session.restore", 1, tag_dict={"result": "missing"}
            )
            return None

        if session.is_expired():
            refreshed = await self._refresh(session)
            if refreshed is None:
                return None
            session = refreshed

        self._metrics_client.increment(
            "atstore.session.restore", 1, tag_dict={"result": "ok"}
        )
        return CredentialHandle(
            identity_id=identity_id,
            session=session,
            repo_client=self.repo_client(session),
        )

    async def _refresh(self, session: OAuthSessionData) -> Optional[OAuthSessionData]:
        if self._protocol_client is None:
            logger.warning(
                f"Session for {session.did} has expired and no protocol client is configured"
            )
            return session

        try:
            refreshed = await self._protocol_client.refresh(session)
        except (ClientError, asyncio.TimeoutError) as e:
            self._metrics_client.increment(
                "atstore.session.restore", 1, tag_dict={"result": "transport"}
            )
            raise RemoteTransportError(
                f"Unable to refresh session for {session.did}: {e}"
            ) from e
        except RemoteTransportError:
            self._metrics_client.increment(
                "atstore.session.restore", 1, tag_dict={"result": "transport"}
            )
            raise
        except Exception as e:
            logger.warning(f"Refresh rejected for {session.did}: {e}")
            self._metrics_client.increment(
                "atstore.session.restore", 1, tag_dict={"result": "rejected"}
            )
            return None

        await self.store(refreshed)
        self._metrics_client.increment("atstore.session.refreshed", 1)
        return refreshed

    async def remember_nonce(self, session: OAuthSessionData, nonce: str) -> None:
        """
        Save a DPoP nonce the server handed out while `session` was in use.

        The nonce is only written onto the stored session when that session
        still carries the same access token, so a concurrent refresh or
        revoke is never undone.
        """
        try:
            stored = await self._session_store.get(session.did)
            if stored is None or stored.access_token != session.access_token:
                return
            if stored.dpop_nonce == nonce:
                return
            await self.store(stored.model_copy(update={"dpop_nonce": nonce}))
        except StorageError as e:
            sentry_sdk.capture_exception(e)
            logger.warning(f"Unable to save DPoP nonce for {session.did}: {e}")
            return

        self._metrics_client.increment("atstore.session.nonce_saved", 1)

    def repo_client(self, session: OAuthSessionData) -> RepoClient:
        middleware: List[XrpcMiddleware] = [MetricsMiddleware(self._metrics_client)]

        if session.token_type.lower() == "dpop" and session.dpop_jwk is not None:
            headers = {"Authorization": f"DPoP {session.access_token}"}
            middleware.append(
                DpopMiddleware(
                    jwk.JWK(**session.dpop_jwk),
                    access_token=session.access_token,
                    issuer=session.issuer,
                    nonce=session.dpop_nonce,
                    on_nonce=partial(self.remember_nonce, session),
                )
            )
        else:
            headers = {"Authorization": f"Bearer {session.access_token}"}

        if self._debug:
            middleware.append(LoggingMiddleware())

        return RepoClient(
            self._http_session,
            session.pds_url,
            headers=headers,
            middleware=middleware,
        )
