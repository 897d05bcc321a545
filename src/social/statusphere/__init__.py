"""
Statusphere - set your status on the Atmosphere

A small AT Protocol application: users log in with OAuth, pick an emoji status
that is written to their own repository, and see the latest statuses of
everyone, as read from the Jetstream firehose.

Key Components:
- app: Web application, configuration and background tasks
- atproto: The OAuth client (DPoP, PAR, token exchange and refresh), the
  session manager and authenticated XRPC calls
- model: Database models and the session store
- resolve: Handle and DID resolution

The OAuth client is a confidential client: requests to the authorization
server are authenticated with a `private_key_jwt` client assertion, and every
token is bound to a per-login DPoP key. Both the authorization server and the
PDS rotate DPoP nonces; each rotation is answered with one re-signed retry.
"""
