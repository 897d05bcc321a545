"""
Identity Resolution

Resolves AT Protocol handles and DIDs to the subject's DID, canonical handle
and PDS endpoint.

- handle.py: DNS/HTTPS handle resolution and did:plc / did:web documents
- __main__.py: command line resolver for debugging
"""
