"""Error hierarchy.

Gateway errors map onto an HTTP status and an Anthropic-style error `type`.
OAuth errors are raised by the credential manager and surface through the CLI.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base exception for errors returned to the downstream caller."""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(ProxyError):
    """401 - Missing/invalid inbound key, or no usable upstream credential."""

    status_code = 401
    error_type = "authentication_error"


class InvalidRequestError(ProxyError):
    """400 - Body is not JSON or does not fit the Messages request shape."""

    status_code = 400
    error_type = "invalid_request_error"


class UpstreamError(ProxyError):
    """502 - Transport failure talking to Codex, or an unusable upstream payload.

    `upstream_status` and `upstream_body` are kept for logging only; they are
    never sent to the caller.
    """

    status_code = 502
    error_type = "api_error"

    def __init__(
        self,
        message: str,
        upstream_status: int | None = None,
        upstream_body: str | None = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class OAuthError(Exception):
    """Base exception for the Codex OAuth flow."""


class AuthorizationDeniedError(OAuthError):
    """The authorization server redirected back with an `error` parameter."""


class StateMismatchError(OAuthError):
    """Callback `state` differs from the one we issued (possible CSRF)."""


class MissingCodeError(OAuthError):
    """Callback carried no authorization code."""


class AuthorizationTimeoutError(OAuthError):
    """No callback arrived within the authorization window."""


class TokenEndpointError(OAuthError):
    def __init__(self, message: str, status_code: int, body: str):
        super().__init__(f"{message}: {status_code} - {body}")
        self.status_code = status_code
        self.body = body


class TokenExchangeError(TokenEndpointError):
    pass


class TokenRefreshError(TokenEndpointError):
    pass
