"""
Identity Resolution

Key Components:
- handle.py: Handle to DID resolution through ordered identity services
- did.py: DID document retrieval and PDS extraction
- __main__.py: CLI interface for resolution

The resolution flow:
1. Normalise the input and return it unchanged if it is already a DID
2. Ask each candidate identity service `com.atproto.identity.resolveHandle`
3. Fetch the DID document (PLC directory or did:web) and pick the PDS service entry
"""
