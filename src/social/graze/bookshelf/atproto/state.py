"""
OAuth flow state.

Everything needed to finish an authorization code flow travels through the
authorization server inside the `state` parameter, so nothing is stored server
side between redirect and callback. The state is sealed with Fernet: it is
encrypted, authenticated and url-safe, so a tampered or foreign token is
rejected and the PKCE verifier never leaks to the browser.
"""

import time
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ValidationError

from social.graze.bookshelf.errors import InvalidState, StateExpired

STATE_MAX_AGE = 300


class FlowState(BaseModel):
    """Transient state of one authorization code flow."""

    code_verifier: str
    handle: str
    did: str
    pds_url: str
    authorization_endpoint: str
    token_endpoint: str
    issuer: str
    destination: Optional[str] = None
    timestamp: int


class StateCodec:
    """Seals `FlowState` into an opaque `state` value and opens it again."""

    def __init__(self, fernet: Fernet, max_age: int = STATE_MAX_AGE) -> None:
        self._fernet = fernet
        self.max_age = max_age

    def encode(self, state: FlowState) -> str:
        token = self._fernet.encrypt(state.model_dump_json().encode("utf-8"))
        return token.decode("ascii")

    def decode(self, value: str, now: Optional[int] = None) -> FlowState:
        """
        Open a sealed state value.

        A state is expired once `max_age` seconds have passed since its
        `timestamp`: a state exactly `max_age` seconds old is rejected.

        Raises:
            InvalidState: The value was not produced by this codec or is malformed
            StateExpired: The state is older than `max_age`
        """
        if not value:
            raise InvalidState("error-state-1000 Missing state")
        try:
            payload = self._fernet.decrypt(value.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as e:
            raise InvalidState("error-state-1001 State could not be decrypted") from e
        try:
            state = FlowState.model_validate_json(payload)
        except ValidationError as e:
            raise InvalidState("error-state-1002 State is malformed") from e

        if now is None:
            now = int(time.time())
        if now - state.timestamp >= self.max_age:
            raise StateExpired(
                "error-state-1003 Authorization took too long, please try again"
            )
        return state
