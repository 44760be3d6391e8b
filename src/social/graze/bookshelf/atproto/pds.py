"""
OAuth metadata discovery for a PDS.

A PDS publishes the authorization server(s) that issue tokens for it in
`/.well-known/oauth-protected-resource`; the authorization server publishes its
endpoints in `/.well-known/oauth-authorization-server`. Both documents are parsed
into explicit models and any missing required field fails discovery.
"""

import logging
from typing import Any, List, Optional
from aiohttp import ClientError, ClientSession
from pydantic import BaseModel, ConfigDict, ValidationError

from social.graze.bookshelf.errors import MetadataInvalid, OAuthUnsupported
from social.graze.bookshelf.resolve.did import resolve_did
from social.graze.bookshelf.resolve.handle import resolve_handle

logger = logging.getLogger(__name__)


class ProtectedResourceMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    resource: Optional[str] = None
    authorization_servers: List[str]


class AuthorizationServerMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    issuer: Optional[str] = None
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: Optional[str] = None
    dpop_signing_alg_values_supported: Optional[List[str]] = None


class OAuthEndpoints(BaseModel):
    """The endpoints needed to run the authorization code flow for one PDS."""

    authorization_endpoint: str
    token_endpoint: str
    issuer: str


class ResolvedIdentity(BaseModel):
    """Everything discovered from a handle: DID, PDS and OAuth endpoints."""

    handle: str
    did: str
    pds_url: str
    endpoints: OAuthEndpoints


async def _fetch_metadata(session: ClientSession, url: str) -> Any:
    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                raise OAuthUnsupported(
                    f"error-discovery-1000 {url} returned status {resp.status}",
                    payload={"url": url, "status": resp.status},
                )
            return await resp.json(content_type=None)
    except (ClientError, TimeoutError) as e:
        raise OAuthUnsupported(
            f"error-discovery-1001 {url} unreachable: {e}", payload={"url": url}
        ) from e
    except ValueError as e:
        raise MetadataInvalid(
            f"error-discovery-1002 {url} did not return JSON", payload={"url": url}
        ) from e


async def oauth_protected_resource(
    session: ClientSession, pds: str
) -> ProtectedResourceMetadata:
    url = f"{pds.rstrip('/')}/.well-known/oauth-protected-resource"
    body = await _fetch_metadata(session, url)
    try:
        metadata = ProtectedResourceMetadata.model_validate(body)
    except ValidationError as e:
        raise MetadataInvalid(
            "error-discovery-1003 Protected resource metadata is invalid",
            payload={"url": url},
        ) from e
    if len(metadata.authorization_servers) == 0:
        raise MetadataInvalid(
            "error-discovery-1004 Protected resource lists no authorization servers",
            payload={"url": url},
        )
    return metadata


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> AuthorizationServerMetadata:
    url = f"{authorization_server.rstrip('/')}/.well-known/oauth-authorization-server"
    body = await _fetch_metadata(session, url)
    try:
        return AuthorizationServerMetadata.model_validate(body)
    except ValidationError as e:
        raise MetadataInvalid(
            "error-discovery-1005 Authorization server metadata is invalid",
            payload={"url": url},
        ) from e


async def discover_oauth_endpoints(
    session: ClientSession, pds_url: str
) -> OAuthEndpoints:
    """
    Discover the authorization and token endpoints that serve a PDS.

    The first listed authorization server is used.

    Raises:
        OAuthUnsupported: A metadata document is missing or unreachable
        MetadataInvalid: A metadata document lacks a required field
    """
    protected_resource = await oauth_protected_resource(session, pds_url)
    authorization_server = protected_resource.authorization_servers[0]
    server_metadata = await oauth_authorization_server(session, authorization_server)
    return OAuthEndpoints(
        authorization_endpoint=server_metadata.authorization_endpoint,
        token_endpoint=server_metadata.token_endpoint,
        issuer=server_metadata.issuer or authorization_server,
    )


async def discover_identity(
    session: ClientSession,
    plc_directory: str,
    handle: str,
    default_service: str = "https://bsky.social",
    fallback_service: str = "https://api.bsky.app",
) -> ResolvedIdentity:
    """
    Run the whole discovery chain: handle, DID, DID document, PDS, OAuth endpoints.

    Raises:
        HandleNotFound, PDSNotFound, OAuthUnsupported, MetadataInvalid
    """
    did = await resolve_handle(session, handle, default_service, fallback_service)
    resolved = await resolve_did(session, plc_directory, did)
    endpoints = await discover_oauth_endpoints(session, resolved.pds)

    resolved_handle = resolved.handle
    if resolved_handle is None:
        resolved_handle = handle.strip().removeprefix("at://").removeprefix("@").lower()

    logger.info(
        "Discovered %s at %s, authorization server %s",
        did,
        resolved.pds,
        endpoints.issuer,
    )
    return ResolvedIdentity(
        handle=resolved_handle,
        did=did,
        pds_url=resolved.pds,
        endpoints=endpoints,
    )
