import logging
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiohttp import ClientError, web
import sentry_sdk

from social.graze.atstore.app.config import (
    MetricsClientAppKey,
    ProtocolClientAppKey,
    SessionLifecycleAppKey,
    SettingsAppKey,
    StateStoreAppKey,
)
from social.graze.atstore.app.handlers.helpers import (
    issue_service_token,
    json_error,
    require_auth_token,
)

logger = logging.getLogger(__name__)


def _protocol_client(request: web.Request):
    protocol_client = request.app.get(ProtocolClientAppKey)
    if protocol_client is None:
        json_error(web.HTTPServiceUnavailable, "OAuth is not configured")
    return protocol_client


async def handle_atproto_login(request: web.Request):
    """
    Begin authorization for a handle or DID.

    Query Parameters:
        subject: AT Protocol handle or DID
        destination: Optional URL to return to with the service token

    The protocol client builds the authorization URL and the state to keep;
    the state is stored under its opaque key until the callback redeems it.
    """
    subject: Optional[str] = request.query.get("subject", None)
    if not subject:
        json_error(web.HTTPBadRequest, "subject is required")

    protocol_client = _protocol_client(request)
    state_store = request.app[StateStoreAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    try:
        authorization = await protocol_client.authorize(subject)
    except ClientError as e:
        logger.warning(f"Authorization for {subject} failed: {e}")
        json_error(web.HTTPBadGateway, "Unable to reach authorization server")

    destination = request.query.get("destination", None)
    if destination:
        authorization.state.destination = destination

    await state_store.upsert(authorization.state_key, authorization.state)
    metrics_client.increment("atstore.oauth.login", 1)

    raise web.HTTPFound(authorization.redirect_url)


async def handle_atproto_callback(request: web.Request):
    """
    Complete authorization and issue a service token.

    The stored state is read and deleted before the protocol client exchanges
    the code, so a state can only be redeemed once. The resulting session is
    stored under the identity's DID.

    Returns a redirect to the state's destination with `auth_token` added to
    its query, or a JSON body when no destination was given.
    """
    state_key: Optional[str] = request.query.get("state", None)
    if not state_key:
        json_error(web.HTTPBadRequest, "state is required")

    protocol_client = _protocol_client(request)
    settings = request.app[SettingsAppKey]
    state_store = request.app[StateStoreAppKey]
    session_lifecycle = request.app[SessionLifecycleAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    state = await state_store.get(state_key)
    if state is None:
        metrics_client.increment(
            "atstore.oauth.callback", 1, tag_dict={"result": "unknown_state"}
        )
        json_error(web.HTTPBadRequest, "Unknown or expired state")
    await state_store.delete(state_key)

    try:
        session_data = await protocol_client.callback(dict(request.query), state)
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.exception("OAuth callback failed")
        metrics_client.increment(
            "atstore.oauth.callback", 1, tag_dict={"result": "error"}
        )
        json_error(web.HTTPBadGateway, "Unable to complete authorization")

    await session_lifecycle.store(session_data)
    serialized_auth_token = issue_service_token(settings, session_data.did)
    metrics_client.increment("atstore.oauth.callback", 1, tag_dict={"result": "ok"})

    if state.destination:
        parsed_destination = urlparse(state.destination)
        query = dict(parse_qsl(parsed_destination.query))
        query.update({"auth_token": serialized_auth_token})
        parsed_destination = parsed_destination._replace(query=urlencode(query))
        raise web.HTTPFound(str(urlunparse(parsed_destination)))

    return web.json_response(
        {
            "did": session_data.did,
            "handle": session_data.handle,
            "auth_token": serialized_auth_token,
        }
    )


async def handle_atproto_logout(request: web.Request):
    auth_token = await require_auth_token(request)
    await request.app[SessionLifecycleAppKey].revoke(auth_token.subject)
    return web.json_response({"did": auth_token.subject, "logged_out": True})
