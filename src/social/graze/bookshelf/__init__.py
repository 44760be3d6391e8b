"""
Bookshelf - a DPoP-bound atproto OAuth client for book records

This package lets one atproto user authorize the service to read and update the
`buzz.bookhive.book` records stored in their own Personal Data Server. Nothing
about the user's infrastructure is configured ahead of time: the PDS, the
authorization server and its token endpoint are discovered per user.

Key Components:
- app: aiohttp web application, configuration, request handlers
- atproto: OAuth flow, DPoP proofs, the DPoP request executor, repository calls
- model: session persistence (PostgreSQL and redis backends)
- resolve: handle and DID resolution

Authentication Flow:
1. Resolve the handle to a DID, the DID to a PDS, the PDS to its authorization server
2. Redirect to the authorization endpoint with PKCE and a sealed, expiring state token
3. Exchange the code with a fresh DPoP key bound to the issued tokens
4. Persist the session and hand the browser a signed service auth token

Authenticated Calls:
- Every PDS request carries a DPoP proof and goes through a bounded state machine
  that answers at most one nonce challenge and at most one token refresh.
"""
