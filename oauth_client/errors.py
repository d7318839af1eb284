"""
Errors raised by the OAuth client.
retryable separates transport trouble (try again) from grants the provider rejected (log in again).
"""


class OAuthClientError(Exception):
    """Base class for every error the client raises."""

    retryable = False


class ConfigMissing(OAuthClientError):
    """Required client credentials are absent. Fatal at startup."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")


class NetworkFailure(OAuthClientError):
    """The token endpoint could not be reached or answered with a transient status."""

    retryable = True

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class MalformedResponse(NetworkFailure):
    """Token endpoint answered 2xx but the body is not a usable token response."""


class InvalidGrant(OAuthClientError):
    """Provider rejected the authorization code or refresh token."""

    def __init__(self, status: int, error: str | None = None, description: str | None = None):
        self.status = status
        self.error = error
        self.description = description
        detail = description or error or "token request rejected"
        super().__init__(f"{detail} (HTTP {status})")


class StateMismatch(OAuthClientError):
    """Callback state does not match the pending authorization request."""


class AuthorizationDenied(OAuthClientError):
    """Provider redirected back with an error instead of a code (e.g. access_denied)."""

    def __init__(self, error: str, description: str | None = None):
        self.error = error
        self.description = description
        super().__init__(description or error)


class StorageKeyInvalid(OAuthClientError):
    """The storage key file exists but does not hold a usable key. Fatal at startup."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Storage key file {path} does not contain a valid key")
