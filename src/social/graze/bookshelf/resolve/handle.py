"""AT Protocol handle resolution utilities.

Resolves AT Protocol handles to DIDs by asking an ordered list of identity
services for `com.atproto.identity.resolveHandle`. The handle's own registrable
domain is tried first, then the configured default and fallback services.
"""

import logging
import re
from enum import IntEnum
from typing import List, Optional
from aiohttp import ClientError, ClientSession
from pydantic import BaseModel
import sentry_sdk

from social.graze.bookshelf.errors import HandleNotFound

logger = logging.getLogger(__name__)

DID_PATTERN = re.compile(r"^did:[a-z]+:[a-zA-Z0-9._:%-]+$")


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string.
    """

    subject_type: SubjectType
    subject: str


def parse_input(subject: str) -> ParsedSubject:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing whitespace and the `at://` and `@` prefixes,
    and lowercases handles.

    Args:
        subject: Raw subject string (handle, DID, or prefixed)

    Returns:
        ParsedSubject with type and normalized string
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())


def is_valid_did(value: Optional[str]) -> bool:
    return value is not None and DID_PATTERN.match(value) is not None


def candidate_services(
    handle: str, default_service: str, fallback_service: str
) -> List[str]:
    """Ordered, de-duplicated identity services to ask for a handle.

    For `alice.example.com` this is `https://example.com`, then the default
    service, then the fallback service. Single label handles skip the first.
    """
    candidates: List[str] = []
    labels = [label for label in handle.split(".") if label]
    if len(labels) >= 2:
        candidates.append("https://{domain}".format(domain=".".join(labels[-2:])))
    candidates.append(default_service.rstrip("/"))
    candidates.append(fallback_service.rstrip("/"))

    ordered: List[str] = []
    for candidate in candidates:
        if candidate not in ordered:
            ordered.append(candidate)
    return ordered


async def resolve_handle_with_service(
    session: ClientSession, service: str, handle: str
) -> Optional[str]:
    """Ask one identity service to resolve a handle.

    Args:
        session: HTTP client session
        service: Base URL of the identity service
        handle: Normalized handle

    Returns:
        DID string if the service answered with one, None otherwise
    """
    url = f"{service}/xrpc/com.atproto.identity.resolveHandle"
    try:
        async with session.get(url, params={"handle": handle}) as resp:
            if resp.status != 200:
                logger.debug(
                    "Handle %s not resolved by %s: status %s",
                    handle,
                    service,
                    resp.status,
                )
                return None
            body = await resp.json()
    except (ClientError, TimeoutError, ValueError) as e:
        logger.debug("Handle %s not resolved by %s: %s", handle, service, e)
        return None
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None

    if not isinstance(body, dict):
        return None
    did = body.get("did", None)
    if not is_valid_did(did):
        return None
    return did


async def resolve_handle(
    session: ClientSession,
    handle: str,
    default_service: str = "https://bsky.social",
    fallback_service: str = "https://api.bsky.app",
) -> str:
    """Resolve an AT Protocol handle to a DID.

    Tries each candidate service in order and returns the first DID found. When
    the input already is a DID it is returned unchanged.

    Args:
        session: HTTP client session
        handle: Handle, optionally prefixed with `@` or `at://`
        default_service: Identity service tried after the handle's own domain
        fallback_service: Identity service tried last

    Returns:
        The resolved DID

    Raises:
        HandleNotFound: If no candidate service resolved the handle
    """
    parsed = parse_input(handle)
    if parsed.subject_type != SubjectType.hostname:
        return parsed.subject

    if len(parsed.subject) == 0:
        raise HandleNotFound.for_handle(handle)

    for service in candidate_services(
        parsed.subject, default_service, fallback_service
    ):
        did = await resolve_handle_with_service(session, service, parsed.subject)
        if did is not None:
            logger.info("Resolved handle %s to %s via %s", parsed.subject, did, service)
            return did

    raise HandleNotFound.for_handle(parsed.subject)
