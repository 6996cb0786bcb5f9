from __future__ import annotations

from typing import Optional


class OAuthError(Exception):
    """Base class for protocol errors surfaced to OAuth2/OIDC clients.

    Each subclass carries the RFC 6749 / OIDC ``error`` value in
    ``error_code`` and the HTTP status used when the error is rendered as a
    JSON body. Errors raised after the authorization endpoint has validated a
    redirect URI carry a redirect context and are rendered as a redirect to
    the client instead:
    - invalid_request (400)
    - unauthorized_client (400) / invalid_client (401)
    - invalid_grant (400) / invalid_token (401)
    - invalid_scope (400)
    - access_denied, login_required (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.redirect_uri: Optional[str] = None
        self.response_mode: Optional[str] = None
        self.state: Optional[str] = None

    def with_redirect(
        self, redirect_uri: str, response_mode: str, state: Optional[str]
    ) -> "OAuthError":
        """Attach a validated redirect target so the error is returned to the client."""
        self.redirect_uri = redirect_uri
        self.response_mode = response_mode
        self.state = state
        return self

    @property
    def redirectable(self) -> bool:
        return self.redirect_uri is not None


class InvalidRequestError(OAuthError):
    """Request is missing a parameter or is otherwise malformed (400)."""
    status_code = 400
    error_code = "invalid_request"


class UnsupportedResponseTypeError(InvalidRequestError):
    error_code = "unsupported_response_type"


class UnsupportedGrantTypeError(InvalidRequestError):
    error_code = "unsupported_grant_type"


class UnauthorizedClientError(OAuthError):
    """Client is not permitted to use this flow (400)."""
    status_code = 400
    error_code = "unauthorized_client"


class InvalidClientError(UnauthorizedClientError):
    """Client authentication failed (401)."""
    status_code = 401
    error_code = "invalid_client"


class InvalidGrantError(OAuthError):
    """Code or refresh token is invalid, expired, consumed or revoked (400)."""
    status_code = 400
    error_code = "invalid_grant"


class InvalidTokenError(InvalidGrantError):
    """Presented token failed validation (401 at resource endpoints)."""
    status_code = 401
    error_code = "invalid_token"

    def __init__(self, message: str, *, reason: str = "invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason
        self.detail.setdefault("reason", reason)


class InvalidScopeError(OAuthError):
    status_code = 400
    error_code = "invalid_scope"


class AccessDeniedError(OAuthError):
    status_code = 400
    error_code = "access_denied"


class LoginRequiredError(OAuthError):
    status_code = 400
    error_code = "login_required"


class ConsentRequiredError(OAuthError):
    status_code = 400
    error_code = "consent_required"


class ServerError(OAuthError):
    """Internal failure: key material unavailable, store failure, bad principal data (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "OAuthError",
    "InvalidRequestError",
    "UnsupportedResponseTypeError",
    "UnsupportedGrantTypeError",
    "UnauthorizedClientError",
    "InvalidClientError",
    "InvalidGrantError",
    "InvalidTokenError",
    "InvalidScopeError",
    "AccessDeniedError",
    "LoginRequiredError",
    "ConsentRequiredError",
    "ServerError",
]
