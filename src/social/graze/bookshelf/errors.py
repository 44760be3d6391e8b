"""
Error taxonomy for the Bookshelf service.

Every failure that can reach a caller is a subclass of `BookshelfException`. Each
carries a stable machine readable `code`, a human readable message in the
`error-<area>-<nnnn>` format used in log search, the HTTP status the web layer
should answer with, and an optional `payload` with remote error details.

`NonceChallenge` is the only member that never leaves the DPoP layer: it is the
internal signal that a server asked for a nonce and the request must be resent.
"""

from typing import Any, Dict, Optional


class BookshelfException(Exception):
    """
    Base class for all expected failures.

    Attributes:
        code: Stable error code returned to API clients
        status: HTTP status for the web layer
        payload: Remote error body or other details, if any
        action: Hint for the client ("login" or "refresh"), if any
    """

    code: str = "internal_error"
    status: int = 500
    action: Optional[str] = None

    def __init__(
        self,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.payload = payload
        if status is not None:
            self.status = status

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.payload is not None:
            body["details"] = self.payload
        if self.action is not None:
            body["action"] = self.action
        return body


class HandleNotFound(BookshelfException):
    """No identity service could resolve the handle."""

    code = "handle_not_found"
    status = 404

    @staticmethod
    def for_handle(handle: str) -> "HandleNotFound":
        return HandleNotFound(f"error-resolve-1000 Unable to resolve handle {handle}")


class PDSNotFound(BookshelfException):
    """The DID document could not be fetched or names no PDS."""

    code = "pds_not_found"
    status = 404

    @staticmethod
    def for_did(did: str) -> "PDSNotFound":
        return PDSNotFound(f"error-resolve-1001 No PDS found for {did}")


class OAuthUnsupported(BookshelfException):
    code = "oauth_unsupported"
    status = 502


class MetadataInvalid(BookshelfException):
    code = "metadata_invalid"
    status = 502


class InvalidState(BookshelfException):
    code = "invalid_state"
    status = 400


class StateExpired(BookshelfException):
    code = "state_expired"
    status = 400


class TokenExchangeFailed(BookshelfException):
    code = "token_exchange_failed"
    status = 502


class NonceChallenge(BookshelfException):
    """Internal retry signal carrying the server supplied nonce."""

    code = "use_dpop_nonce"
    status = 400

    def __init__(self, nonce: str) -> None:
        super().__init__("error-dpop-1000 DPoP nonce required")
        self.nonce = nonce


class Unauthenticated(BookshelfException):
    code = "unauthenticated"
    status = 401
    action = "login"


class TokenExpired(Unauthenticated):
    """The access token was rejected. Triggers a refresh; surfaces only if that fails."""

    code = "token_expired"


class RefreshFailed(BookshelfException):
    code = "refresh_failed"
    status = 401
    action = "login"


class AccessDenied(BookshelfException):
    code = "access_denied"
    status = 403


class RecordConflict(BookshelfException):
    """A compare-and-swap write lost against a concurrent modification."""

    code = "record_conflict"
    status = 409
    action = "refresh"

    @staticmethod
    def for_uri(uri: str, payload: Optional[Dict[str, Any]] = None) -> "RecordConflict":
        return RecordConflict(
            f"error-repo-1001 Record {uri} was modified by another process, "
            "please refresh and try again",
            payload=payload,
        )


class RecordNotFound(BookshelfException):
    code = "record_not_found"
    status = 404

    @staticmethod
    def for_uri(uri: str, payload: Optional[Dict[str, Any]] = None) -> "RecordNotFound":
        return RecordNotFound(f"error-repo-1002 Record {uri} not found", payload=payload)


class InvalidRequest(BookshelfException):
    code = "invalid_request"
    status = 400


class InvalidRecordUri(BookshelfException):
    code = "invalid_record_uri"
    status = 400


class RemoteError(BookshelfException):
    """A remote call failed in a way the caller has no specific handling for."""

    code = "remote_error"
    status = 502

    def __init__(
        self, message: str, remote_status: int, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message, payload=payload)
        self.remote_status = remote_status
