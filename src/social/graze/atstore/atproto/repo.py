"""
Client for writing records to a user's remote repository.

Wraps the `com.atproto.repo.createRecord`, `putRecord` and `deleteRecord` XRPC
procedures. Every failure is raised as a `RemoteRepositoryError` subclass whose
kind is derived from the structured XRPC `error` code and the HTTP status,
never from message text.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from aiohttp import ClientError, ClientSession

from social.graze.atstore.atproto.chain import XrpcClient, XrpcMiddleware, XrpcResponse
from social.graze.atstore.errors import (
    RemoteNotFoundError,
    RemoteOtherError,
    RemoteRepositoryError,
    RemoteSchemaInvalidError,
    RemoteTransportError,
)

logger = logging.getLogger(__name__)

SCHEMA_INVALID_ERRORS = frozenset(["InvalidSchema", "InvalidRecord", "LexiconNotFound"])
NOT_FOUND_ERRORS = frozenset(["RecordNotFound", "RepoNotFound", "NotFound"])


@dataclass
class RemoteWriteResult:
    uri: str
    cid: Optional[str] = None


def error_from_response(nsid: str, response: XrpcResponse) -> RemoteRepositoryError:
    """Map an XRPC error response to a typed repository error."""
    error = response.error
    message = f"{nsid} failed with {response.status}"
    if error is not None:
        message = f"{message} {error}"
    detail = response.message
    if detail:
        message = f"{message}: {detail}"

    if error in SCHEMA_INVALID_ERRORS:
        return RemoteSchemaInvalidError(message, error=error, status=response.status)
    if error in NOT_FOUND_ERRORS or response.status == 404:
        return RemoteNotFoundError(message, error=error, status=response.status)
    return RemoteOtherError(message, error=error, status=response.status)


class RepoClient:
    """
    Repository client bound to one PDS and one set of credentials.

    Args:
        http_session: Shared aiohttp client session
        pds_url: Base URL of the PDS hosting the repository
        headers: Headers sent with every request, typically `Authorization`
        middleware: Request middleware, such as DPoP proof generation
    """

    def __init__(
        self,
        http_session: ClientSession,
        pds_url: str,
        headers: Optional[Dict[str, str]] = None,
        middleware: Sequence[XrpcMiddleware] = (),
    ) -> None:
        self.pds_url = pds_url.rstrip("/")
        self._headers = dict(headers or {})
        self._xrpc = XrpcClient(http_session, middleware=middleware)

    async def create_record(
        self,
        repo: str,
        collection: str,
        rkey: str,
        record: Dict[str, Any],
        validate: bool = True,
    ) -> RemoteWriteResult:
        body = await self._procedure(
            "com.atproto.repo.createRecord",
            {
                "repo": repo,
                "collection": collection,
                "rkey": rkey,
                "record": record,
                "validate": validate,
            },
        )
        return RemoteWriteResult(uri=body.get("uri", ""), cid=body.get("cid", None))

    async def put_record(
        self,
        repo: str,
        collection: str,
        rkey: str,
        record: Dict[str, Any],
        validate: bool = True,
    ) -> RemoteWriteResult:
        body = await self._procedure(
            "com.atproto.repo.putRecord",
            {
                "repo": repo,
                "collection": collection,
                "rkey": rkey,
                "record": record,
                "validate": validate,
            },
        )
        return RemoteWriteResult(uri=body.get("uri", ""), cid=body.get("cid", None))

    async def delete_record(self, repo: str, collection: str, rkey: str) -> None:
        await self._procedure(
            "com.atproto.repo.deleteRecord",
            {"repo": repo, "collection": collection, "rkey": rkey},
        )

    async def _procedure(self, nsid: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.pds_url}/xrpc/{nsid}"
        headers = {**self._headers, "Content-Type": "application/json"}

        try:
            async with self._xrpc.post(
                url, headers=headers, data=json.dumps(payload)
            ) as exchange:
                response = exchange.response
        except ClientError as e:
            raise RemoteTransportError(f"{nsid} transport failure: {e}") from e

        if response.status >= 400:
            raise error_from_response(nsid, response)

        if isinstance(response.body, dict):
            return response.body
        return {}
