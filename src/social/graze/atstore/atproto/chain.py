"""
Middleware pipeline for outbound XRPC requests.

Every request passes through the configured `XrpcMiddleware` instances in
order before the terminal handler sends it over the shared aiohttp session.
Each stage returns an `Exchange`. A stage that wants the request sent again,
such as the DPoP stage after a nonce challenge, sets `Exchange.retry_with`
and `XrpcCall` performs the next attempt.
"""

import base64
import hashlib
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from time import time
from types import TracebackType
from typing import Any, Awaitable, Callable, Dict, Generator, Optional, Sequence

import sentry_sdk
from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk, jwt
from multidict import CIMultiDictProxy

from social.graze.atstore.app.metrics import MetricsClient
from social.graze.atstore.errors import RemoteOtherError

logger = logging.getLogger(__name__)

DPOP_NONCE_ERRORS = frozenset(["use_dpop_nonce", "invalid_dpop_proof"])


@dataclass
class XrpcRequest:
    method: str
    url: StrOrURL
    headers: Dict[str, Any] = field(default_factory=dict)
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "XrpcRequest":
        return replace(self, headers=dict(self.headers))


@dataclass
class XrpcResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | Dict[str, Any] | None = None

    @classmethod
    async def read(cls, response: ClientResponse) -> "XrpcResponse":
        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")
        if content_type.startswith("application/json"):
            body: Any = await response.json()
        elif content_type.startswith("text/"):
            body = await response.text()
        else:
            body = await response.read()
        return cls(status=response.status, headers=response.headers, body=body)

    @property
    def error(self) -> Optional[str]:
        """The XRPC `error` field of a JSON error body, if present."""
        if isinstance(self.body, dict):
            value = self.body.get("error", None)
            if isinstance(value, str):
                return value
        return None

    @property
    def message(self) -> str:
        if isinstance(self.body, dict):
            return str(self.body.get("message", "") or "")
        if isinstance(self.body, str):
            return self.body
        return ""


@dataclass
class Exchange:
    raw: ClientResponse
    response: XrpcResponse
    retry_with: Optional[XrpcRequest] = None


Handler = Callable[[XrpcRequest], Awaitable[Exchange]]
NonceListener = Callable[[str], Awaitable[None]]


class XrpcMiddleware(ABC):
    @abstractmethod
    async def __call__(self, request: XrpcRequest, call_next: Handler) -> Exchange:
        pass

    def wrap(self, call_next: Handler) -> Handler:
        async def handler(request: XrpcRequest) -> Exchange:
            return await self(request, call_next)

        return handler


class MetricsMiddleware(XrpcMiddleware):
    """Times and counts every outbound request, tagged by HTTP method."""

    def __init__(self, metrics_client: MetricsClient) -> None:
        self.metrics_client = metrics_client

    async def __call__(self, request: XrpcRequest, call_next: Handler) -> Exchange:
        tags = {"method": request.method.lower()}
        started = time()
        try:
            return await call_next(request)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise
        finally:
            self.metrics_client.timer(
                "atstore.client.request.time", time() - started, tag_dict=tags
            )
            self.metrics_client.increment(
                "atstore.client.request.count", 1, tag_dict=tags
            )


class LoggingMiddleware(XrpcMiddleware):
    async def __call__(self, request: XrpcRequest, call_next: Handler) -> Exchange:
        logger.debug("XRPC %s %s", request.method, request.url)
        exchange = await call_next(request)
        logger.debug(
            "XRPC %s %s -> %d %s",
            request.method,
            request.url,
            exchange.response.status,
            exchange.response.body,
        )
        return exchange


def access_token_hash(access_token: str) -> str:
    """The `ath` DPoP claim: unpadded base64url SHA-256 of the access token."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class DpopMiddleware(XrpcMiddleware):
    """
    Signs a DPoP proof for each attempt.

    When the server rejects the proof with `use_dpop_nonce` or
    `invalid_dpop_proof` and supplies a nonce it has not seen before, the
    nonce is kept and the request is marked for another attempt. `on_nonce`
    is awaited with each newly learned nonce.
    """

    def __init__(
        self,
        key: jwk.JWK,
        access_token: Optional[str] = None,
        issuer: Optional[str] = None,
        nonce: Optional[str] = None,
        on_nonce: Optional[NonceListener] = None,
    ) -> None:
        self.key = key
        self.access_token = access_token
        self.issuer = issuer
        self.nonce = nonce
        self.on_nonce = on_nonce

    def proof(self, method: str, url: str) -> str:
        issued = int(time())
        claims: Dict[str, Any] = {
            "jti": secrets.token_urlsafe(32),
            "htm": method.upper(),
            "htu": url,
            "iat": issued - 1,
            "exp": issued + 30,
        }
        if self.nonce:
            claims["nonce"] = self.nonce
        if self.access_token is not None:
            claims["ath"] = access_token_hash(self.access_token)
        if self.issuer is not None:
            claims["iss"] = self.issuer

        token = jwt.JWT(
            header={
                "typ": "dpop+jwt",
                "alg": "ES256",
                "jwk": self.key.export_public(as_dict=True),
            },
            claims=claims,
        )
        token.make_signed_token(self.key)
        return token.serialize()

    async def __call__(self, request: XrpcRequest, call_next: Handler) -> Exchange:
        request.headers["DPoP"] = self.proof(request.method, str(request.url))
        exchange = await call_next(request)

        response = exchange.response
        if response.status not in (400, 401) or response.error not in DPOP_NONCE_ERRORS:
            return exchange

        nonce = response.headers.get("DPoP-Nonce", "")
        if nonce and nonce != self.nonce:
            logger.debug("DPoP nonce changed, sending again")
            self.nonce = nonce
            if self.on_nonce is not None:
                await self.on_nonce(nonce)
            if exchange.retry_with is None:
                exchange.retry_with = request.copy()
        return exchange


def send_with(session: ClientSession) -> Handler:
    """Terminal handler that performs the HTTP call on `session`."""

    async def send(request: XrpcRequest) -> Exchange:
        raw = await session.request(
            request.method.lower(), request.url, headers=request.headers, **request.kwargs
        )
        return Exchange(raw=raw, response=await XrpcResponse.read(raw))

    return send


class XrpcCall:
    """
    One logical request, possibly spanning several attempts.

    Await it for the final `Exchange`, or use it as an async context manager
    to also have the final raw response closed on exit.
    """

    def __init__(
        self, handler: Handler, request: XrpcRequest, attempt_max: int = 3
    ) -> None:
        self.handler = handler
        self.request = request
        self.attempt_max = attempt_max
        self.raw: Optional[ClientResponse] = None

    async def _run(self) -> Exchange:
        request = self.request
        for attempt in range(1, self.attempt_max + 1):
            exchange = await self.handler(request)
            self.raw = exchange.raw
            if exchange.retry_with is None:
                return exchange

            logger.debug("Attempt %d/%d asked for a retry", attempt, self.attempt_max)
            if not exchange.raw.closed:
                exchange.raw.close()
            request = exchange.retry_with

        raise RemoteOtherError(
            f"Gave up after {self.attempt_max} attempts: "
            f"{self.request.method} {self.request.url}"
        )

    def __await__(self) -> Generator[Any, None, Exchange]:
        return self._run().__await__()

    async def __aenter__(self) -> Exchange:
        return await self._run()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.raw is not None and not self.raw.closed:
            self.raw.close()


class XrpcClient:
    """Sends requests through a fixed middleware pipeline on a shared session."""

    def __init__(
        self,
        session: ClientSession,
        middleware: Sequence[XrpcMiddleware] = (),
        attempt_max: int = 3,
    ) -> None:
        self.middleware = list(middleware)
        handler = send_with(session)
        for stage in reversed(self.middleware):
            handler = stage.wrap(handler)
        self.handler = handler
        self.attempt_max = attempt_max

    def request(self, method: str, url: StrOrURL, **kwargs: Any) -> XrpcCall:
        request = XrpcRequest(
            method=method, url=url, headers=dict(kwargs.pop("headers", {})), kwargs=kwargs
        )
        return XrpcCall(self.handler, request, attempt_max=self.attempt_max)

    def post(self, url: StrOrURL, **kwargs: Any) -> XrpcCall:
        return self.request(hdrs.METH_POST, url, **kwargs)

    def get(self, url: StrOrURL, **kwargs: Any) -> XrpcCall:
        return self.request(hdrs.METH_GET, url, **kwargs)
