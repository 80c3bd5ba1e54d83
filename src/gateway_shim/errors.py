"""Exceptions raised by gateway_shim.

Most failure modes in the shim are recovered locally (malformed bodies are
forwarded unmodified, missing credentials fall back to defaults). Only the
ones a caller has to see live here.
"""


class ShimError(Exception):
    """Base class for gateway_shim errors."""


class TokenRefreshError(ShimError):
    """Exchanging a refresh token for a new access token failed.

    Fatal for the current call and never retried: a stale refresh token
    will not start working on the next attempt.
    """

    def __init__(self, status_code: int | None, message: str | None = None):
        self.status_code = status_code
        super().__init__(message or f"Token refresh failed: {status_code}")


class LoginError(ShimError):
    """The OAuth login flow could not turn an authorization code into a credential."""

    def __init__(self, status_code: int | None, message: str | None = None):
        self.status_code = status_code
        super().__init__(message or f"OAuth login failed: {status_code}")
