"""
DPoP-bound HTTP requests.

Two entry points share the same proof and nonce handling:

- `dpop_token_request` posts to an authorization server token endpoint and
  answers at most one `use_dpop_nonce` challenge.
- `DPoPRequestExecutor` sends authenticated requests to a PDS with a bounded
  retry state machine:

      initial ──use_dpop_nonce──▶ nonce_retry ──invalid_token──▶ refresh_retry ──▶ done
         │                            │
         └──────invalid_token─────────┼──────────────────────────▶ refresh_retry
         └──────anything else─────────┴──────────────────────────▶ done

  A nonce challenge is honoured only from `initial`, a token refresh happens at
  most once, and the response of `refresh_retry` is always final. Any other
  failure response is handed back unmodified for the caller to interpret.

Every physical attempt carries a freshly signed proof with a new `jti`.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientError, ClientResponse, ClientSession
from jwcrypto import jwk

from social.graze.bookshelf.atproto.jwt import create_dpop_jwt, import_dpop_key
from social.graze.bookshelf.errors import (
    NonceChallenge,
    RemoteError,
    TokenExpired,
    Unauthenticated,
)
from social.graze.bookshelf.model.store import Session

logger = logging.getLogger(__name__)

WWW_AUTHENTICATE_ERROR = re.compile(r'error="([^"]+)"')

Refresher = Callable[[Session], Awaitable[Session]]


@dataclass
class DPoPResponse:
    """A fully read response: status, lower-cased headers and parsed body."""

    status: int
    headers: Dict[str, str]
    body: Any = None

    @classmethod
    async def from_client_response(cls, resp: ClientResponse) -> "DPoPResponse":
        raw = await resp.read()
        body: Any = None
        if raw:
            try:
                body = json.loads(raw)
            except ValueError:
                body = raw.decode("utf-8", errors="replace")
        headers = {key.lower(): value for key, value in resp.headers.items()}
        return cls(status=resp.status, headers=headers, body=body)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower(), None)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json_body(self) -> Dict[str, Any]:
        if isinstance(self.body, dict):
            return self.body
        return {}

    def error_code(self) -> Optional[str]:
        """OAuth or XRPC error code from the JSON body or `WWW-Authenticate`."""
        error = self.json_body().get("error", None)
        if isinstance(error, str) and len(error) > 0:
            return error
        www_authenticate = self.header("WWW-Authenticate")
        if www_authenticate is not None:
            match = WWW_AUTHENTICATE_ERROR.search(www_authenticate)
            if match is not None:
                return match.group(1)
        return None

    def nonce_challenge(self) -> Optional[str]:
        """The nonce to retry with, if this response is a `use_dpop_nonce` challenge."""
        if self.status not in (400, 401):
            return None
        if self.error_code() != "use_dpop_nonce":
            return None
        return self.header("DPoP-Nonce")

    def is_invalid_token(self) -> bool:
        return self.status == 401 and self.error_code() == "invalid_token"

    def raise_for_challenge(self) -> None:
        """
        Raises:
            NonceChallenge: The server asked for a DPoP nonce
            TokenExpired: The access token was rejected
        """
        nonce = self.nonce_challenge()
        if nonce is not None:
            raise NonceChallenge(nonce)
        if self.is_invalid_token():
            raise TokenExpired(
                "error-dpop-1006 Access token was rejected",
                payload=self.json_body() or None,
            )


async def dpop_token_request(
    http_session: ClientSession,
    token_endpoint: str,
    dpop_key: jwk.JWK,
    data: Mapping[str, str],
    statsd_client: Optional[TelegrafStatsdClient] = None,
) -> DPoPResponse:
    """
    POST a form to a token endpoint with a DPoP proof.

    The first attempt carries no nonce. If the server answers with a
    `use_dpop_nonce` challenge, the request is resent exactly once with the
    supplied nonce and a new proof. The final response is returned whatever its
    status; interpreting it is up to the caller.

    Raises:
        aiohttp.ClientError: The token endpoint could not be reached
    """

    async def post(nonce: Optional[str]) -> DPoPResponse:
        headers = {
            "DPoP": create_dpop_jwt(dpop_key, "POST", token_endpoint, nonce=nonce),
            "Accept": "application/json",
        }
        async with http_session.post(
            token_endpoint, data=dict(data), headers=headers
        ) as resp:
            return await DPoPResponse.from_client_response(resp)

    response = await post(None)
    challenge = response.nonce_challenge()
    if challenge is None:
        return response

    logger.debug("Token endpoint %s asked for a DPoP nonce", token_endpoint)
    if statsd_client is not None:
        statsd_client.increment(
            "bookshelf.dpop.token.nonce_retry",
            1,
            tag_dict={"endpoint": token_endpoint},
        )
    return await post(challenge)


class ExecutorState(str, Enum):
    initial = "initial"
    nonce_retry = "nonce_retry"
    refresh_retry = "refresh_retry"
    done = "done"


@dataclass
class DPoPResult:
    """
    Outcome of an executed request.

    `session` is the session to keep using: it differs from the one passed in
    when a token refresh happened along the way.
    """

    response: DPoPResponse
    session: Session
    states: List[ExecutorState] = field(default_factory=list)

    @property
    def refreshed(self) -> bool:
        return ExecutorState.refresh_retry in self.states


class DPoPRequestExecutor:
    """
    Sends DPoP-bound requests on behalf of a session.

    Args:
        http_session: Shared aiohttp client session
        refresher: Coroutine that refreshes and persists a session, raising
            `RefreshFailed` when it cannot
        statsd_client: Optional metrics client
    """

    def __init__(
        self,
        http_session: ClientSession,
        refresher: Optional[Refresher] = None,
        statsd_client: Optional[TelegrafStatsdClient] = None,
    ) -> None:
        self._http_session = http_session
        self._refresher = refresher
        self._statsd_client = statsd_client

    def _increment(self, metric: str, method: str) -> None:
        if self._statsd_client is None:
            return
        self._statsd_client.increment(metric, 1, tag_dict={"method": method})

    async def _send(
        self,
        method: str,
        url: str,
        session: Session,
        dpop_key: jwk.JWK,
        nonce: Optional[str],
        params: Optional[Mapping[str, Any]],
        json_body: Optional[Any],
    ) -> DPoPResponse:
        headers = {
            "Authorization": f"DPoP {session.access_token}",
            "DPoP": create_dpop_jwt(
                dpop_key,
                method,
                url,
                access_token=session.access_token,
                nonce=nonce,
            ),
            "Accept": "application/json",
        }
        try:
            async with self._http_session.request(
                method, url, params=params, json=json_body, headers=headers
            ) as resp:
                return await DPoPResponse.from_client_response(resp)
        except (ClientError, TimeoutError) as e:
            raise RemoteError(
                f"error-dpop-1004 Request to {url} failed: {type(e).__name__}",
                remote_status=0,
            ) from e

    async def execute(
        self,
        method: str,
        url: str,
        session: Session,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Any] = None,
        allow_refresh: bool = True,
    ) -> DPoPResult:
        """
        Execute one logical request through the retry state machine.

        Returns:
            DPoPResult with the final response and the session to keep using

        Raises:
            Unauthenticated: The session has no usable DPoP key pair
            RefreshFailed: A refresh was needed and did not succeed
            RemoteError: The remote server could not be reached
        """
        if not session.has_dpop_keys:
            raise Unauthenticated(
                "error-dpop-1005 Session predates DPoP binding, please login again"
            )
        method = method.upper()
        dpop_key = import_dpop_key(session.dpop_private_jwk)

        state = ExecutorState.initial
        states: List[ExecutorState] = [state]
        nonce: Optional[str] = None

        while True:
            response = await self._send(
                method, url, session, dpop_key, nonce, params, json
            )
            if state is ExecutorState.refresh_retry:
                break

            try:
                response.raise_for_challenge()
            except NonceChallenge as challenge:
                if state is not ExecutorState.initial:
                    break
                nonce = challenge.nonce
                state = ExecutorState.nonce_retry
                states.append(state)
                self._increment("bookshelf.dpop.nonce_retry", method)
                continue
            except TokenExpired:
                if not allow_refresh or self._refresher is None:
                    break
                nonce = response.header("DPoP-Nonce") or nonce
                logger.info("Access token for %s rejected, refreshing", session.did)
                self._increment("bookshelf.dpop.refresh", method)
                session = await self._refresher(session)
                dpop_key = import_dpop_key(session.dpop_private_jwk)
                state = ExecutorState.refresh_retry
                states.append(state)
                continue

            break

        states.append(ExecutorState.done)
        return DPoPResult(response=response, session=session, states=states)
