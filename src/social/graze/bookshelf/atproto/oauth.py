"""
AT Protocol OAuth Client Implementation

This module implements a public OAuth 2.0 client for AT Protocol authorization
servers. It provides the functionality for starting the authorization code flow,
handling the callback, and refreshing tokens.

The implementation follows these standards:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)

The OAuth flow is implemented in three stages:
1. Initialization (`oauth_init`): Resolve the user's identity, discover the
   authorization server, prepare the PKCE challenge and a sealed state, and
   return the authorization URL
2. Completion (`oauth_complete`): Open the state, exchange the authorization
   code for DPoP-bound tokens and store the session
3. Refresh (`oauth_refresh`): Re-discover the token endpoint and use the
   refresh token to obtain a new access token

The client is public (`token_endpoint_auth_method: none`), so no client secret or
client assertion is involved; possession of the DPoP key is what binds the tokens.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientError, ClientSession
from jwcrypto import jwk
from pydantic import BaseModel, ConfigDict, ValidationError
import redis.asyncio as redis
from redis.exceptions import WatchError

from social.graze.bookshelf.app.config import Settings
from social.graze.bookshelf.atproto.dpop import DPoPResponse, dpop_token_request
from social.graze.bookshelf.atproto.jwt import (
    create_auth_token,
    export_dpop_key,
    generate_dpop_key,
    import_dpop_key,
)
from social.graze.bookshelf.atproto.pds import discover_identity, discover_oauth_endpoints
from social.graze.bookshelf.atproto.state import FlowState, StateCodec
from social.graze.bookshelf.errors import (
    AccessDenied,
    BookshelfException,
    RefreshFailed,
    TokenExchangeFailed,
)
from social.graze.bookshelf.model.store import Session, SessionStore, utc_now
from social.graze.bookshelf.resolve.did import resolve_did

logger = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    """Token endpoint success body. Unknown fields are kept but ignored."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    sub: Optional[str] = None


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    Returns:
        Tuple[str, str]: A tuple containing (pkce_verifier, pkce_challenge)
        - pkce_verifier: 86 url-safe characters from 64 random bytes
        - pkce_challenge: base64url(SHA-256(verifier)) without padding, for `S256`
    """
    pkce_token = secrets.token_urlsafe(64)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


def client_metadata(settings: Settings) -> Dict[str, Any]:
    """The OAuth client metadata document served at the client id URL."""
    return {
        "client_id": settings.client_id,
        "client_name": settings.app_name,
        "client_uri": settings.base_url,
        "redirect_uris": [settings.redirect_uri],
        "scope": settings.oauth_scope,
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "application_type": "web",
        "token_endpoint_auth_method": "none",
        "dpop_bound_access_tokens": True,
    }


def _error_payload(response: DPoPResponse) -> Dict[str, Any]:
    payload = response.json_body()
    if payload:
        return payload
    return {"status": response.status, "body": response.body}


async def oauth_init(
    settings: Settings,
    http_session: ClientSession,
    state_codec: StateCodec,
    subject: str,
    destination: Optional[str] = None,
    statsd_client: Optional[TelegrafStatsdClient] = None,
) -> str:
    """
    Initialize the OAuth flow for a handle.

    Args:
        settings: Application settings
        http_session: HTTP session for making requests
        state_codec: Codec sealing the flow state
        subject: User's handle (or DID)
        destination: Optional redirect URL after authentication

    Returns:
        str: URL to redirect the user to for authorization

    Raises:
        HandleNotFound, PDSNotFound, OAuthUnsupported, MetadataInvalid

    Flow:
        1. Handle, DID and PDS resolution
        2. Authorization server discovery
        3. PKCE generation
        4. Flow state sealing
        5. URL construction for redirect
    """
    identity = await discover_identity(
        http_session,
        settings.plc_directory,
        subject,
        settings.default_identity_service,
        settings.fallback_identity_service,
    )

    pkce_verifier, pkce_challenge = generate_pkce_verifier()

    state = state_codec.encode(
        FlowState(
            code_verifier=pkce_verifier,
            handle=identity.handle,
            did=identity.did,
            pds_url=identity.pds_url,
            authorization_endpoint=identity.endpoints.authorization_endpoint,
            token_endpoint=identity.endpoints.token_endpoint,
            issuer=identity.endpoints.issuer,
            destination=destination,
            timestamp=int(time.time()),
        )
    )

    # Preserve any query parameters already present on the endpoint
    parsed_url = urlparse(identity.endpoints.authorization_endpoint)
    query = dict(parse_qsl(parsed_url.query))
    query.update(
        {
            "response_type": "code",
            "client_id": settings.client_id,
            "redirect_uri": settings.redirect_uri,
            "scope": settings.oauth_scope,
            "state": state,
            "code_challenge": pkce_challenge,
            "code_challenge_method": "S256",
            "login_hint": identity.handle,
        }
    )

    if statsd_client is not None:
        statsd_client.increment(
            "bookshelf.oauth.init", 1, tag_dict={"issuer": identity.endpoints.issuer}
        )

    return urlunparse(parsed_url._replace(query=urlencode(query)))


async def oauth_complete(
    settings: Settings,
    http_session: ClientSession,
    state_codec: StateCodec,
    session_store: SessionStore,
    code: Optional[str],
    state: Optional[str],
    statsd_client: Optional[TelegrafStatsdClient] = None,
) -> Tuple[Session, FlowState]:
    """
    Complete the OAuth flow by exchanging the authorization code for tokens.

    Args:
        settings: Application settings
        http_session: HTTP session for making requests
        state_codec: Codec opening the flow state
        session_store: Where the new session is stored
        code: Authorization code from the callback
        state: Sealed state from the callback

    Returns:
        Tuple of the stored session and the opened flow state

    Raises:
        InvalidState, StateExpired: The state is unusable
        TokenExchangeFailed: The token endpoint did not issue tokens
        AccessDenied: Tokens were issued for a different account

    Flow:
        1. State validation
        2. DPoP key generation
        3. Token exchange with the nonce handshake
        4. Subject verification
        5. Session storage
    """
    flow_state = state_codec.decode(state or "")
    if not code:
        raise TokenExchangeFailed("error-oauth-1000 Missing authorization code", status=400)

    dpop_key, _ = generate_dpop_key()

    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": settings.redirect_uri,
        "client_id": settings.client_id,
        "code_verifier": flow_state.code_verifier,
    }

    try:
        response = await dpop_token_request(
            http_session, flow_state.token_endpoint, dpop_key, data, statsd_client
        )
    except (ClientError, TimeoutError) as e:
        raise TokenExchangeFailed(
            f"error-oauth-1001 Token endpoint unreachable: {type(e).__name__}"
        ) from e

    if response.status != 200:
        raise TokenExchangeFailed(
            f"error-oauth-1002 Token exchange failed with status {response.status}",
            payload=_error_payload(response),
        )

    try:
        token_response = TokenResponse.model_validate(response.body)
    except ValidationError as e:
        raise TokenExchangeFailed(
            "error-oauth-1003 Token response is invalid",
            payload=_error_payload(response),
        ) from e

    if not token_response.refresh_token:
        raise TokenExchangeFailed(
            "error-oauth-1004 Token response has no refresh token",
            payload=_error_payload(response),
        )

    if token_response.sub is not None and token_response.sub != flow_state.did:
        raise AccessDenied(
            "error-oauth-1005 Token subject does not match the resolved identity"
        )

    dpop_private_jwk, dpop_public_jwk = export_dpop_key(dpop_key)
    now = utc_now()
    session = Session(
        did=flow_state.did,
        handle=flow_state.handle,
        pds_url=flow_state.pds_url,
        access_token=token_response.access_token,
        refresh_token=token_response.refresh_token,
        dpop_private_jwk=dpop_private_jwk,
        dpop_public_jwk=dpop_public_jwk,
        created_at=now,
        updated_at=now,
    )
    await session_store.upsert(session)

    logger.info("Stored session for %s (%s)", session.did, session.handle)
    if statsd_client is not None:
        statsd_client.increment(
            "bookshelf.oauth.complete", 1, tag_dict={"issuer": flow_state.issuer}
        )

    return session, flow_state


def issue_auth_token(settings: Settings, session: Session) -> str:
    """Sign the service auth token for a stored session with the first service key."""
    service_auth_key_id = next(iter(settings.service_auth_keys), None)
    if service_auth_key_id is None:
        raise BookshelfException("error-oauth-1006 No service auth keys configured")

    service_auth_key: Optional[jwk.JWK] = settings.json_web_keys.get_key(
        service_auth_key_id
    )
    if service_auth_key is None:
        raise BookshelfException("error-oauth-1007 No service auth key available")

    return create_auth_token(
        service_auth_key,
        service_auth_key_id,
        session.did,
        session.handle,
        session.pds_url,
    )


async def _refresh_tokens(
    settings: Settings,
    http_session: ClientSession,
    session_store: SessionStore,
    session: Session,
    statsd_client: Optional[TelegrafStatsdClient] = None,
) -> Session:
    dpop_key = import_dpop_key(session.dpop_private_jwk)

    # Discovery runs again so a migrated PDS or moved token endpoint is followed
    try:
        resolved = await resolve_did(http_session, settings.plc_directory, session.did)
        endpoints = await discover_oauth_endpoints(http_session, resolved.pds)
    except BookshelfException as e:
        raise RefreshFailed(
            f"error-refresh-1000 Discovery failed: {e.message}",
            payload={"error": e.code},
        ) from e

    data = {
        "grant_type": "refresh_token",
        "refresh_token": session.refresh_token,
        "client_id": settings.client_id,
    }

    try:
        response = await dpop_token_request(
            http_session, endpoints.token_endpoint, dpop_key, data, statsd_client
        )
    except (ClientError, TimeoutError) as e:
        raise RefreshFailed(
            f"error-refresh-1001 Token endpoint unreachable: {type(e).__name__}"
        ) from e

    if response.status != 200:
        raise RefreshFailed(
            f"error-refresh-1002 Refresh failed with status {response.status}",
            payload=_error_payload(response),
        )

    try:
        token_response = TokenResponse.model_validate(response.body)
    except ValidationError as e:
        raise RefreshFailed(
            "error-refresh-1003 Refresh response is invalid",
            payload=_error_payload(response),
        ) from e

    refreshed = session.model_copy(
        update={
            "access_token": token_response.access_token,
            "refresh_token": token_response.refresh_token or session.refresh_token,
            "pds_url": resolved.pds,
            "handle": resolved.handle or session.handle,
            "updated_at": utc_now(),
        }
    )
    await session_store.upsert(refreshed)

    logger.info("Refreshed session for %s", session.did)
    if statsd_client is not None:
        statsd_client.increment(
            "bookshelf.oauth.refresh", 1, tag_dict={"issuer": endpoints.issuer}
        )
    return refreshed


async def _release_lock(
    redis_session: redis.Redis, lock_key: str, lock_token: str
) -> None:
    """Delete the lock only while it still holds this caller's token."""
    async with redis_session.pipeline(transaction=True) as pipe:
        try:
            await pipe.watch(lock_key)
            held = await pipe.get(lock_key)
            if held is None or held != lock_token.encode():
                logger.warning("Refresh lock %s expired before release", lock_key)
                return
            pipe.multi()
            pipe.delete(lock_key)
            await pipe.execute()
        except WatchError:
            logger.warning("Refresh lock %s was taken over before release", lock_key)


async def oauth_refresh(
    settings: Settings,
    http_session: ClientSession,
    session_store: SessionStore,
    session: Session,
    redis_session: Optional[redis.Redis] = None,
    statsd_client: Optional[TelegrafStatsdClient] = None,
) -> Session:
    """
    Refresh the tokens of a session and persist the result.

    When a redis client is given, refreshes of the same DID are single-flight:
    the caller that takes the `refresh_lock:{did}` lock refreshes, and the others
    wait for the stored session to change and use it. A lock holder whose
    session was already rotated by an earlier holder returns the stored session
    instead of replaying a spent refresh token.

    Args:
        settings: Application settings
        http_session: HTTP session for making requests
        session_store: Where the refreshed session is stored
        session: The session whose access token was rejected
        redis_session: Optional redis client for the refresh lock

    Returns:
        Session: The refreshed session

    Raises:
        RefreshFailed: Discovery, the refresh request or its response failed
        Unauthenticated: The session has no usable DPoP key
    """
    if redis_session is None:
        return await _refresh_tokens(
            settings, http_session, session_store, session, statsd_client
        )

    lock_key = f"refresh_lock:{session.did}"
    lock_token = secrets.token_urlsafe(16)
    lock_acquired = await redis_session.set(
        lock_key, lock_token, nx=True, ex=settings.refresh_lock_timeout
    )
    if lock_acquired:
        try:
            stored = await session_store.get(session.did)
            if stored is not None and stored.access_token != session.access_token:
                logger.debug("Session for %s was already refreshed", session.did)
                return stored
            return await _refresh_tokens(
                settings, http_session, session_store, session, statsd_client
            )
        finally:
            await _release_lock(redis_session, lock_key, lock_token)

    logger.debug("Refresh for %s in progress elsewhere, waiting", session.did)
    deadline = time.monotonic() + settings.refresh_lock_timeout
    while time.monotonic() < deadline:
        await asyncio.sleep(0.25)
        stored = await session_store.get(session.did)
        if stored is not None and stored.access_token != session.access_token:
            return stored
        if not await redis_session.exists(lock_key):
            break

    stored = await session_store.get(session.did)
    if stored is not None and stored.access_token != session.access_token:
        return stored
    raise RefreshFailed("error-refresh-1004 Concurrent refresh did not complete")


class TokenRefresher:
    """Binds `oauth_refresh` to its dependencies for use by the request executor."""

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        session_store: SessionStore,
        redis_session: Optional[redis.Redis] = None,
        statsd_client: Optional[TelegrafStatsdClient] = None,
    ) -> None:
        self.settings = settings
        self.http_session = http_session
        self.session_store = session_store
        self.redis_session = redis_session
        self.statsd_client = statsd_client

    async def __call__(self, session: Session) -> Session:
        return await oauth_refresh(
            self.settings,
            self.http_session,
            self.session_store,
            session,
            redis_session=self.redis_session,
            statsd_client=self.statsd_client,
        )
