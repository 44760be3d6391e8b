import json
import logging
from typing import Any, Dict, Optional
from aiohttp import web

from social.graze.bookshelf.app.config import (
    SessionStoreAppKey,
    SettingsAppKey,
)
from social.graze.bookshelf.atproto.jwt import verify_auth_token
from social.graze.bookshelf.errors import InvalidRequest, Unauthenticated
from social.graze.bookshelf.model.store import Session

logger = logging.getLogger(__name__)


def bearer_token(request: web.Request) -> Optional[str]:
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if (
        authorization is None
        or not authorization.startswith("Bearer ")
        or len(authorization) < 8
    ):
        return None
    return authorization[7:]


async def session_from_request(request: web.Request) -> Session:
    """
    Load the stored session named by the request's service auth token.

    All book endpoints require an `Authorization: Bearer <auth token>` header
    carrying the token issued at the end of the OAuth callback.

    Raises:
        Unauthenticated: The token is missing or invalid, or no session is stored
    """
    serialized_auth_token = bearer_token(request)
    if serialized_auth_token is None:
        raise Unauthenticated("error-auth-1002 Missing bearer token")

    settings = request.app[SettingsAppKey]
    claims = verify_auth_token(settings.json_web_keys, serialized_auth_token)

    session = await request.app[SessionStoreAppKey].get(claims["sub"])
    if session is None:
        raise Unauthenticated("error-auth-1003 No session found, please login")
    return session


async def json_body(request: web.Request) -> Dict[str, Any]:
    """Parse a JSON object request body.

    Raises:
        InvalidRequest: The body is not a JSON object
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidRequest("error-request-1000 Request body is not JSON") from e
    if not isinstance(body, dict):
        raise InvalidRequest("error-request-1001 Request body must be a JSON object")
    return body
