"""OAuth client error taxonomy.

Every protocol-level failure raised by the OAuth client derives from
OAuthClientException. Each subclass exposes static constructors that carry a
stable error code prefix so log lines and user-facing messages can be
correlated.
"""

from typing import Optional


class OAuthClientException(Exception):
    pass


class SigningError(OAuthClientException):
    """A key could not be used to sign or could not be reconstructed."""

    @staticmethod
    def unusable_key(msg: str = "") -> "SigningError":
        return SigningError(f"error-signing-1000 Key cannot be used to sign: {msg}")

    @staticmethod
    def undecodable_key() -> "SigningError":
        return SigningError("error-signing-1001 Stored key could not be decoded")

    @staticmethod
    def no_active_key() -> "SigningError":
        return SigningError("error-signing-1002 No active signing key available")


class AuthorizationFlowError(OAuthClientException):
    """Identity resolution, metadata discovery or PAR failed."""

    @staticmethod
    def unresolved_subject(subject: str) -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            f"error-oauth-init-1000 Unable to resolve subject {subject}"
        )

    @staticmethod
    def no_protected_resource() -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            "error-oauth-init-1001 No protected resource found"
        )

    @staticmethod
    def no_authorization_server() -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            "error-oauth-init-1002 No authorization server found"
        )

    @staticmethod
    def par_rejected(status: int) -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            f"error-oauth-init-1003 Invalid PAR response: {status}"
        )

    @staticmethod
    def login_in_progress() -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            "error-oauth-init-1004 Another login attempt for this user is in progress"
        )

    @staticmethod
    def issuer_mismatch() -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            "error-oauth-complete-1000 Invalid request: issuer mismatch"
        )

    @staticmethod
    def token_rejected(status: int) -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            f"error-oauth-complete-1001 Invalid token response: {status}"
        )

    @staticmethod
    def subject_mismatch() -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            "error-oauth-complete-1002 Token subject does not match requested subject"
        )

    @staticmethod
    def unexpected(msg: str = "") -> "AuthorizationFlowError":
        return AuthorizationFlowError(
            f"error-oauth-1999 Unexpected authorization error: {msg}"
        )


class NotFoundError(OAuthClientException):
    """A pending authorization request or session does not exist."""

    @staticmethod
    def request_not_found() -> "NotFoundError":
        return NotFoundError("error-store-1000 Invalid request: no matching state")

    @staticmethod
    def session_not_found() -> "NotFoundError":
        return NotFoundError("error-store-1001 No session found")


class ScopeMismatchError(OAuthClientException):
    """The authorization server granted a scope other than the one requested."""

    def __init__(self, requested: str, granted: Optional[str]) -> None:
        super().__init__(
            f"error-oauth-complete-1003 Incorrect scope from token request: "
            f"requested {requested!r}, granted {granted!r}"
        )
        self.requested = requested
        self.granted = granted


class RefreshError(OAuthClientException):
    """The refresh token exchange failed; the user must log in again."""

    @staticmethod
    def rejected(status: int) -> "RefreshError":
        return RefreshError(f"error-refresh-1000 Invalid token response: {status}")

    @staticmethod
    def unexpected(msg: str = "") -> "RefreshError":
        return RefreshError(f"error-refresh-1999 Unexpected refresh error: {msg}")


class RequestError(OAuthClientException):
    """A resource server call failed.

    Carries the HTTP status and the error code and message the server returned
    in its XRPC error body, when it returned one.
    """

    def __init__(
        self, status: int, error: Optional[str] = None, message: Optional[str] = None
    ) -> None:
        super().__init__(
            f"error-xrpc-1000 Request failed with status {status}: {error} - {message}"
        )
        self.status = status
        self.error = error
        self.message = message

    @staticmethod
    def transport(msg: str = "") -> "RequestError":
        return RequestError(0, "TransportError", msg)
