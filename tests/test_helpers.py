"""
Common testing utilities.

Provides record factories, a recording metrics client and fakes for the remote
repository and the OAuth protocol client.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from jwcrypto import jwk
from ulid import ULID

from social.graze.atstore.app.metrics import MetricsClient
from social.graze.atstore.atproto.oauth import (
    AuthorizationRequest,
    OAuthSessionData,
    OAuthStateData,
)
from social.graze.atstore.atproto.repo import RemoteWriteResult
from social.graze.atstore.model.records import ContentRecord, make_record_uri

TEST_COLLECTION = "com.crabdance.nandi.post"


def generate_ulid_string() -> str:
    """Generate a ULID string for testing."""
    return str(ULID())


def generate_test_datetime(offset_minutes: int = 0) -> datetime:
    """Generate a timezone-aware datetime truncated to seconds."""
    return (datetime.now(timezone.utc) + timedelta(minutes=offset_minutes)).replace(
        microsecond=0
    )


class RecordingMetricsClient(MetricsClient):
    """Metrics client that keeps every call for assertions."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, Any, Dict[str, Any]]] = []

    def increment(self, name, value=1, tag_dict=None) -> None:
        self.calls.append(("increment", name, value, dict(tag_dict or {})))

    def gauge(self, name, value, tag_dict=None) -> None:
        self.calls.append(("gauge", name, value, dict(tag_dict or {})))

    def timer(self, name, value, tag_dict=None) -> None:
        self.calls.append(("timer", name, value, dict(tag_dict or {})))

    async def close(self) -> None:
        pass

    def names(self, kind: Optional[str] = None) -> List[str]:
        return [c[1] for c in self.calls if kind is None or c[0] == kind]

    def tags_for(self, name: str) -> List[Dict[str, Any]]:
        return [c[3] for c in self.calls if c[1] == name]


def make_record(
    rkey: str = "3kabc",
    author_id: str = "did:plc:alice",
    collection: str = TEST_COLLECTION,
    **fields: Any,
) -> ContentRecord:
    values: Dict[str, Any] = {
        "title": "Hello",
        "body": "First post",
        "created_at": datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
    }
    values.update(fields)
    return ContentRecord(
        uri=make_record_uri(author_id, collection, rkey),
        author_id=author_id,
        **values,
    )


def make_session(
    did: str = "did:plc:alice",
    expires_in: Optional[int] = 3600,
    dpop: bool = True,
    **fields: Any,
) -> OAuthSessionData:
    values: Dict[str, Any] = {
        "did": did,
        "handle": "alice.test",
        "pds_url": "https://pds.example.com",
        "issuer": "https://auth.example.com",
        "access_token": "access-" + generate_ulid_string(),
        "refresh_token": "refresh-" + generate_ulid_string(),
    }
    if expires_in is not None:
        values["access_token_expires_at"] = datetime.now(timezone.utc) + timedelta(
            seconds=expires_in
        )
    if dpop:
        key = jwk.JWK.generate(kty="EC", crv="P-256", alg="ES256")
        values["dpop_jwk"] = key.export_private(as_dict=True)
    else:
        values["token_type"] = "Bearer"
    values.update(fields)
    return OAuthSessionData(**values)


class FakeRepoClient:
    """
    In-memory stand-in for `RepoClient`.

    `failures` maps (operation, validate) to the exception that call raises.
    Every call is recorded as (operation, repo, collection, rkey, record, validate).
    """

    def __init__(self, failures: Optional[Dict[Tuple[str, bool], BaseException]] = None):
        self.failures = dict(failures or {})
        self.calls: List[Tuple[str, str, str, str, Optional[Dict[str, Any]], bool]] = []
        self.delete_error: Optional[BaseException] = None

    def _fail(self, operation: str, validate: bool) -> None:
        error = self.failures.get((operation, validate), None)
        if error is not None:
            raise error

    async def put_record(self, repo, collection, rkey, record, validate=True):
        self.calls.append(("put", repo, collection, rkey, record, validate))
        self._fail("put", validate)
        return RemoteWriteResult(
            uri=make_record_uri(repo, collection, rkey), cid="bafyput"
        )

    async def create_record(self, repo, collection, rkey, record, validate=True):
        self.calls.append(("create", repo, collection, rkey, record, validate))
        self._fail("create", validate)
        return RemoteWriteResult(
            uri=make_record_uri(repo, collection, rkey), cid="bafycreate"
        )

    async def delete_record(self, repo, collection, rkey):
        self.calls.append(("delete", repo, collection, rkey, None, False))
        if self.delete_error is not None:
            raise self.delete_error


class FakeProtocolClient:
    """OAuth protocol client that hands out canned results."""

    def __init__(self, session: Optional[OAuthSessionData] = None) -> None:
        self.session = session
        self.refresh_error: Optional[BaseException] = None
        self.callback_error: Optional[BaseException] = None
        self.refreshed: List[str] = []
        self.callbacks: List[Tuple[Dict[str, str], OAuthStateData]] = []

    async def authorize(self, subject: str) -> AuthorizationRequest:
        state_key = "state-" + generate_ulid_string()
        return AuthorizationRequest(
            redirect_url=f"https://auth.example.com/authorize?state={state_key}",
            state_key=state_key,
            state=OAuthStateData(subject=subject, issuer="https://auth.example.com"),
        )

    async def callback(
        self, params: Mapping[str, str], state: OAuthStateData
    ) -> OAuthSessionData:
        self.callbacks.append((dict(params), state))
        if self.callback_error is not None:
            raise self.callback_error
        assert self.session is not None
        return self.session

    async def refresh(self, session: OAuthSessionData) -> OAuthSessionData:
        self.refreshed.append(session.did)
        if self.refresh_error is not None:
            raise self.refresh_error
        return session.model_copy(
            update={
                "access_token": "refreshed-" + generate_ulid_string(),
                "access_token_expires_at": datetime.now(timezone.utc)
                + timedelta(hours=1),
            }
        )
