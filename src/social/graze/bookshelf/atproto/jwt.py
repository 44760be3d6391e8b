"""
JWT and DPoP utilities for AT Protocol authentication.

Provides DPoP (Demonstrating Proof of Possession) key management and proof
construction as described by RFC 9449, plus the service auth token handed to
the browser after login.
"""

import base64
import hashlib
import json
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit
from jwcrypto import jwt, jwk
from jwcrypto.common import JWException
from ulid import ULID

from social.graze.bookshelf.errors import Unauthenticated


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Creates an ECDSA P-256 key pair suitable for ES256 DPoP proofs with a ULID
    key identifier. A fresh pair is generated for every token exchange.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: A tuple containing:
            - dpop_key: The complete JWK including private key for signing
            - public_key_dict: The public key portion as a dictionary for JWT headers
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def export_dpop_key(dpop_key: jwk.JWK) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Export a DPoP key as (private JWK dict, public JWK dict) for storage."""
    return (
        dpop_key.export(private_key=True, as_dict=True),
        dpop_key.export_public(as_dict=True),
    )


def import_dpop_key(private_key_dict: Optional[Dict[str, Any]]) -> jwk.JWK:
    """Rebuild a signing key from its stored private JWK dict.

    Raises:
        Unauthenticated: If the stored key is missing or malformed
    """
    if not private_key_dict:
        raise Unauthenticated("error-dpop-1001 Session has no DPoP key")
    try:
        dpop_key = jwk.JWK(**private_key_dict)
    except (JWException, TypeError, ValueError) as e:
        raise Unauthenticated("error-dpop-1002 Stored DPoP key is invalid") from e
    if not dpop_key.has_private:
        raise Unauthenticated("error-dpop-1003 Stored DPoP key has no private part")
    return dpop_key


def access_token_hash(access_token: str) -> str:
    """Base64url SHA-256 of an access token, the DPoP `ath` claim."""
    hashed = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def normalize_htu(http_uri: str) -> str:
    """Strip the query and fragment from a URI for the DPoP `htu` claim."""
    parts = urlsplit(http_uri)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key.

    Args:
        public_key_dict: Public key dictionary from generate_dpop_key()

    Returns:
        Dict[str, Any]: DPoP JWT header ready for use with jwcrypto
    """
    return {
        "alg": "ES256",
        "jwk": public_key_dict,
        "typ": "dpop+jwt",
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request, query and fragment are dropped
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)
        nonce: Optional server supplied nonce
        access_token: Access token the proof is presented with, hashed into `ath`

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "jti": secrets.token_urlsafe(32),
        "htm": http_method.upper(),
        "htu": normalize_htu(http_uri),
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    if nonce is not None:
        claims["nonce"] = nonce

    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    access_token: Optional[str] = None,
    nonce: Optional[str] = None,
    public_key_dict: Optional[Dict[str, Any]] = None,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
) -> str:
    """Create a complete DPoP proof for one HTTP request.

    Every call produces a new `jti`, so a proof must be built for each physical
    attempt, including retries.

    Args:
        dpop_key: Private key for signing the JWT
        http_method: HTTP method for request binding
        http_uri: Target URI for request binding
        access_token: Access token sent alongside the proof, if any
        nonce: Server supplied nonce, if any
        public_key_dict: Public key dictionary (extracted from dpop_key if None)
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)

    Returns:
        str: Serialized DPoP JWT ready for use as the `DPoP` header value

    Usage:
        ```python
        dpop_key, public_key = generate_dpop_key()
        headers["DPoP"] = create_dpop_jwt(
            dpop_key, "POST", "https://bsky.social/oauth/token"
        )
        ```
    """
    if public_key_dict is None:
        public_key_dict = dpop_key.export_public(as_dict=True)

    header = create_dpop_header(public_key_dict)
    claims = create_dpop_claims(
        http_method,
        http_uri,
        issued_at=issued_at,
        expires_in_seconds=expires_in_seconds,
        nonce=nonce,
        access_token=access_token,
    )

    dpop_jwt = jwt.JWT(header=header, claims=claims)
    dpop_jwt.make_signed_token(dpop_key)

    return dpop_jwt.serialize()


def create_auth_token(
    signing_key: jwk.JWK,
    signing_key_id: str,
    subject: str,
    handle: str,
    pds_url: str,
    issued_at: Optional[datetime] = None,
) -> str:
    """Sign the service auth token that identifies a stored session.

    The token carries no OAuth material; it only names the DID whose session the
    bearer may use.
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    auth_token = jwt.JWT(
        header={"alg": "ES256", "kid": signing_key_id},
        claims={
            "sub": subject,
            "handle": handle,
            "pds": pds_url,
            "iat": int(issued_at.timestamp()),
        },
    )
    auth_token.make_signed_token(signing_key)
    return auth_token.serialize()


def verify_auth_token(key_set: jwk.JWKSet, serialized: str) -> Dict[str, Any]:
    """Verify a service auth token and return its claims.

    Raises:
        Unauthenticated: If the token does not verify or has no subject
    """
    try:
        validated = jwt.JWT(jwt=serialized, key=key_set, algs=["ES256"])
        claims: Dict[str, Any] = json.loads(validated.claims)
    except (JWException, ValueError, TypeError) as e:
        raise Unauthenticated("error-auth-1000 Auth token is invalid") from e
    if not claims.get("sub", None):
        raise Unauthenticated("error-auth-1001 Auth token missing subject")
    return claims
