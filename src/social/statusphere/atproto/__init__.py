"""
AT Protocol OAuth Client

- keys.py: Client signing key and encrypted DPoP key storage
- jwt.py: DPoP proofs and client assertions
- chain.py: Middleware chain with bounded DPoP nonce retry
- pds.py: Protected resource and authorization server metadata
- oauth.py: PAR, code exchange and refresh
- session.py: Session lifecycle with single-flight refresh
- xrpc.py: Authenticated calls to the PDS
- errors.py: Error taxonomy
"""
