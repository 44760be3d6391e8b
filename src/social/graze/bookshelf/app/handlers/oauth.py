"""
AT Protocol OAuth Handlers

OAuth Flow:
1. The frontend posts the user's handle to /api/auth/start and receives the
   authorization URL
2. The user authorizes the client at their authorization server
3. The authorization server redirects back to /oauth/callback with a code
4. The code is exchanged for DPoP-bound tokens and the session is stored
5. The browser is redirected to its destination with a service auth token

The handlers in this module provide the following endpoints:
- GET /client-metadata.json - OAuth client metadata (the client id URL)
- POST /api/auth/start - Start the OAuth flow for a handle
- GET /oauth/callback - OAuth callback from the authorization server
- POST /api/auth/logout - Forget the stored session
- GET /api/me - Identity of the authenticated session
"""

import logging
from typing import Optional
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse
from aiohttp import web

from social.graze.bookshelf.app.config import (
    RedisClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
    StateCodecAppKey,
    TelegrafStatsdClientAppKey,
)
from social.graze.bookshelf.app.handlers.helpers import json_body, session_from_request
from social.graze.bookshelf.atproto.oauth import (
    client_metadata,
    issue_auth_token,
    oauth_complete,
    oauth_init,
)
from social.graze.bookshelf.errors import InvalidRequest

logger = logging.getLogger(__name__)


def destination_allowed(settings: Settings, destination: str) -> bool:
    """Relative paths and the allowed origins may receive the auth token."""
    parsed = urlparse(destination)
    if not parsed.scheme and not parsed.netloc:
        return destination.startswith("/") and not destination.startswith("//")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    origin = f"{parsed.scheme}://{parsed.netloc}".lower()
    allowed = [settings.base_url] + settings.allowed_destination_origins
    return origin in [allowed_origin.rstrip("/").lower() for allowed_origin in allowed]


async def handle_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(client_metadata(settings))


async def handle_auth_start(request: web.Request):
    """
    Start the OAuth flow.

    Request body:
        handle: The user's handle
        destination: Optional URL to return to after login

    Returns:
        JSON `{"authUrl": ...}` for the frontend to navigate to
    """
    body = await json_body(request)
    handle = body.get("handle", None)
    if not isinstance(handle, str) or len(handle.strip()) == 0:
        raise InvalidRequest("error-request-1002 Handle is required")

    destination: Optional[str] = body.get("destination", None)
    if destination is not None and not isinstance(destination, str):
        raise InvalidRequest("error-request-1003 Destination must be a string")
    if destination is not None and not destination_allowed(
        request.app[SettingsAppKey], destination
    ):
        raise InvalidRequest("error-request-1007 Destination is not allowed")

    auth_url = await oauth_init(
        request.app[SettingsAppKey],
        request.app[SessionAppKey],
        request.app[StateCodecAppKey],
        handle,
        destination,
        statsd_client=request.app[TelegrafStatsdClientAppKey],
    )
    return web.json_response({"authUrl": auth_url})


async def handle_oauth_callback(request: web.Request):
    """
    Handle the OAuth callback from the authorization server.

    Query Parameters:
        code: Authorization code to exchange for tokens
        state: Sealed flow state produced by /api/auth/start
        error, error_description: Set instead when authorization was refused

    Returns:
        HTTP redirect to the destination with an `auth_token` query parameter
    """
    error: Optional[str] = request.query.get("error", None)
    if error is not None:
        return web.json_response(
            {
                "error": error,
                "message": request.query.get("error_description", error),
            },
            status=400,
        )

    code: Optional[str] = request.query.get("code", None)
    state: Optional[str] = request.query.get("state", None)
    if not code or not state:
        raise InvalidRequest("error-request-1004 Missing code or state parameter")

    settings = request.app[SettingsAppKey]
    session, flow_state = await oauth_complete(
        settings,
        request.app[SessionAppKey],
        request.app[StateCodecAppKey],
        request.app[SessionStoreAppKey],
        code,
        state,
        statsd_client=request.app[TelegrafStatsdClientAppKey],
    )
    serialized_auth_token = issue_auth_token(settings, session)

    destination = flow_state.destination or settings.default_destination
    if not destination_allowed(settings, destination):
        logger.warning("Dropping disallowed destination %s", destination)
        destination = settings.default_destination
    parsed_destination = urlparse(destination)
    query = dict(parse_qsl(parsed_destination.query))
    query.update({"auth_token": serialized_auth_token})
    parsed_destination = parsed_destination._replace(query=urlencode(query))
    raise web.HTTPFound(urlunparse(parsed_destination))


async def handle_logout(request: web.Request):
    session = await session_from_request(request)
    await request.app[SessionStoreAppKey].delete(session.did)

    redis_session = request.app.get(RedisClientAppKey, None)
    if redis_session is not None:
        await redis_session.delete(f"refresh_lock:{session.did}")

    logger.info("Logged out %s", session.did)
    return web.json_response({"success": True})


async def handle_me(request: web.Request):
    session = await session_from_request(request)
    return web.json_response(
        {
            "did": session.did,
            "handle": session.handle,
            "pds": session.pds_url,
            "dpop_bound": session.has_dpop_keys,
        }
    )
