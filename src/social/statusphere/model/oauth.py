"""OAuth 2.0 data models for the AT Protocol OAuth client.

Provides SQLAlchemy models for in-flight authorization requests and active
DPoP-bound sessions.
"""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from social.statusphere.model.base import Base, str512, str1024, text, tzdatetime


class OAuthRequest(Base):
    """Pending authorization request state with PKCE and DPoP parameters.

    Created when a login starts and consumed exactly once by the callback. The
    DPoP key is stored encrypted and travels on to the session.
    """
    __tablename__ = "oauth_requests"

    oauth_state: Mapped[str] = mapped_column(String(64), primary_key=True)
    issuer: Mapped[str512]
    did: Mapped[str512]
    pds_url: Mapped[str512]
    token_endpoint: Mapped[str512]
    pkce_verifier: Mapped[str] = mapped_column(String(128), nullable=False)
    dpop_authserver_nonce: Mapped[str512] = mapped_column(default="")
    dpop_jwk: Mapped[text]
    created_at: Mapped[tzdatetime]
    expires_at: Mapped[tzdatetime]


class OAuthSession(Base):
    """Active OAuth session with DPoP-bound access and refresh tokens.

    One row per subject. The authorization server nonce and the PDS nonce are
    tracked independently because the two servers rotate them independently.
    """
    __tablename__ = "oauth_sessions"

    did: Mapped[str] = mapped_column(String(512), primary_key=True)
    pds_url: Mapped[str512]
    issuer: Mapped[str512]
    token_endpoint: Mapped[str512]
    access_token: Mapped[text]
    refresh_token: Mapped[str1024]
    dpop_authserver_nonce: Mapped[str512] = mapped_column(default="")
    dpop_pds_nonce: Mapped[str512] = mapped_column(default="")
    dpop_jwk: Mapped[text]
    created_at: Mapped[tzdatetime]
    expires_at: Mapped[tzdatetime]
