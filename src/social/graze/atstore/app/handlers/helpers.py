from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Dict, NoReturn, Optional, Type

from aiohttp import web
from jwcrypto import jwt
from jwcrypto.common import JWException
import sentry_sdk

from social.graze.atstore.app.config import (
    MetricsClientAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
)

logger = logging.getLogger(__name__)


@dataclass(repr=False, eq=False)
class AuthToken:
    """
    An authenticated request.

    Attributes:
        subject: The DID of the authenticated identity
        issued_at: When the service token was issued
    """

    subject: str
    issued_at: Optional[datetime] = None


class AuthenticationException(Exception):
    """
    Exception raised for authentication failures.
    """

    @staticmethod
    def jwt_invalid(msg: str = "") -> "AuthenticationException":
        return AuthenticationException(f"error-auth-helper-1000 JWT is invalid: {msg}")

    @staticmethod
    def jwt_subject_missing() -> "AuthenticationException":
        return AuthenticationException("error-auth-helper-1001 JWT missing subject")

    @staticmethod
    def session_not_found() -> "AuthenticationException":
        return AuthenticationException("error-auth-helper-1002 No valid session found")

    @staticmethod
    def signing_key_missing() -> "AuthenticationException":
        return AuthenticationException(
            "error-auth-helper-1003 No active signing key is configured"
        )


def issue_service_token(
    settings: Settings, subject: str, now: Optional[datetime] = None
) -> str:
    """Sign an ES256 service token for `subject` with the first active signing key."""
    signing_key_id = next(iter(settings.active_signing_keys), None)
    if signing_key_id is None:
        raise AuthenticationException.signing_key_missing()
    signing_key = settings.json_web_keys.get_key(signing_key_id)
    if signing_key is None:
        raise AuthenticationException.signing_key_missing()

    now = now or datetime.now(timezone.utc)
    token = jwt.JWT(
        header={"alg": "ES256", "kid": signing_key_id},
        claims={
            "sub": subject,
            "iat": int(now.timestamp()),
            "exp": int(now.timestamp()) + settings.service_token_ttl,
        },
    )
    token.make_signed_token(signing_key)
    return token.serialize()


async def auth_token_helper(request: web.Request) -> Optional[AuthToken]:
    """
    Authenticate a request from its `Authorization: Bearer` service token.

    Returns None when the request carries no bearer token. A token that is
    present but invalid, or whose identity has no stored session, raises
    AuthenticationException.
    """
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if (
        authorization is None
        or not authorization.startswith("Bearer ")
        or len(authorization) < 8
    ):
        return None

    settings = request.app[SettingsAppKey]

    try:
        validated = jwt.JWT(
            jwt=authorization[7:], key=settings.json_web_keys, algs=["ES256"]
        )
        claims: Dict[str, Any] = json.loads(validated.claims)
    except (JWException, ValueError) as e:
        request.app[MetricsClientAppKey].increment(
            "atstore.auth.exception", 1, tag_dict={"exception": type(e).__name__}
        )
        raise AuthenticationException.jwt_invalid(str(e)) from e

    subject: Optional[str] = claims.get("sub", None)
    if not subject:
        raise AuthenticationException.jwt_subject_missing()

    if await request.app[SessionStoreAppKey].get(subject) is None:
        raise AuthenticationException.session_not_found()

    issued_at = None
    if isinstance(claims.get("iat", None), int):
        issued_at = datetime.fromtimestamp(claims["iat"], tz=timezone.utc)

    return AuthToken(subject=subject, issued_at=issued_at)


async def require_auth_token(request: web.Request) -> AuthToken:
    try:
        auth_token = await auth_token_helper(request)
    except AuthenticationException as e:
        sentry_sdk.capture_exception(e)
        json_error(web.HTTPUnauthorized, str(e))
    if auth_token is None:
        json_error(web.HTTPUnauthorized, "Not Authorized")
    return auth_token


def json_error(
    exception_class: Type[web.HTTPException], message: str, **extra: Any
) -> NoReturn:
    raise exception_class(
        body=json.dumps({"error": message, **extra}),
        content_type="application/json",
    )
