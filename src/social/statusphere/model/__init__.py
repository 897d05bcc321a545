"""
Database Models

SQLAlchemy ORM models and the storage interface used by the OAuth client and
the web application.

Key Models:
- base.py: Declarative base with the shared column type map
- oauth.py: Pending authorization requests and DPoP-bound sessions
- handles.py: DID to handle and PDS cache
- status.py: Status records
- store.py: SessionStore interface and its SQLAlchemy implementation
- health.py: In-memory health gauge for readiness checks
"""
