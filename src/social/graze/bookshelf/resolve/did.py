"""DID document resolution.

Fetches DID documents for did:plc (from the PLC directory) and did:web (from the
host's well-known path) and extracts the handle and PDS endpoint from them.
"""

import logging
from typing import Any, Dict, Optional
from aiohttp import ClientError, ClientSession
from pydantic import BaseModel
import sentry_sdk

from social.graze.bookshelf.errors import PDSNotFound

logger = logging.getLogger(__name__)


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject with all identifiers.

    Contains DID, handle, and PDS endpoint for a fully resolved subject.
    """

    did: str
    handle: Optional[str] = None
    pds: str


def handle_predicate(value: str) -> bool:
    """Check if value is an AT Protocol handle reference.

    Args:
        value: String to check

    Returns:
        True if value starts with at:// prefix
    """
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    """Check if service entry is an AT Protocol PDS.

    A service qualifies when its id ends with `#atproto_pds` or its type is
    `AtprotoPersonalDataServer`, and it names an endpoint.

    Args:
        value: Service dictionary from DID document

    Returns:
        True if service is the PDS entry
    """
    if not isinstance(value, dict) or "serviceEndpoint" not in value:
        return False
    service_id = value.get("id", None) or ""
    return (
        service_id.endswith("#atproto_pds")
        or value.get("type", None) == "AtprotoPersonalDataServer"
    )


def pds_endpoint_from_doc(doc: Dict[str, Any]) -> Optional[str]:
    pds = next(filter(pds_predicate, doc.get("service", None) or []), None)
    if pds is None:
        return None
    endpoint = pds.get("serviceEndpoint")
    if not isinstance(endpoint, str) or len(endpoint) == 0:
        return None
    return endpoint.rstrip("/")


def handle_from_doc(doc: Dict[str, Any]) -> Optional[str]:
    handle = next(filter(handle_predicate, doc.get("alsoKnownAs", None) or []), None)
    if handle is None:
        return None
    return handle.removeprefix("at://")


def did_document_url(plc_directory: str, did: str) -> Optional[str]:
    """Location of the DID document for a supported DID method."""
    if did.startswith("did:plc:"):
        return "{directory}/{did}".format(directory=plc_directory.rstrip("/"), did=did)
    elif did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 0 or len(parts[0]) == 0:
            return None
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))
    return None


async def resolve_did_document(
    session: ClientSession, plc_directory: str, did: str
) -> Optional[Dict[str, Any]]:
    """Fetch the DID document for a DID.

    Args:
        session: HTTP client session
        plc_directory: Base URL of the PLC directory
        did: did:plc or did:web DID

    Returns:
        The DID document, or None if it could not be fetched
    """
    url = did_document_url(plc_directory, did)
    if url is None:
        return None
    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                logger.warning("DID document for %s: status %s", did, resp.status)
                return None
            body = await resp.json(content_type=None)
    except (ClientError, TimeoutError, ValueError) as e:
        logger.warning("DID document for %s unavailable: %s", did, e)
        return None
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None
    if not isinstance(body, dict):
        return None
    return body


async def resolve_did(
    session: ClientSession, plc_directory: str, did: str
) -> ResolvedSubject:
    """Resolve a DID to its PDS endpoint and handle.

    Raises:
        PDSNotFound: If the document cannot be fetched or has no PDS entry
    """
    doc = await resolve_did_document(session, plc_directory, did)
    if doc is None:
        raise PDSNotFound.for_did(did)
    pds = pds_endpoint_from_doc(doc)
    if pds is None:
        raise PDSNotFound.for_did(did)
    return ResolvedSubject(did=did, handle=handle_from_doc(doc), pds=pds)
