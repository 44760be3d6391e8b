"""
AT Protocol Integration

Key Components:
- jwt.py: DPoP key management and DPoP proof construction
- dpop.py: DPoP token endpoint handshake and the authenticated request executor
- pds.py: OAuth metadata discovery from a PDS and its authorization server
- state.py: Sealed, expiring OAuth flow state
- oauth.py: Authorization URL construction, code exchange and token refresh
- repo.py: Repository record operations with compare-and-swap writes
"""
