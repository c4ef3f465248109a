"""
Exception types raised by the SMART authorization engine.

Every rejection the host server has to turn into an HTTP response derives from
AuthError, which carries the status code to return. The host catches AuthError
once and does not need to know which layer produced it:

    AuthError                       base, 401 by default
      UnauthorizedError             an authorization decision said "no"
        InvalidTokenError           token undecodable, wrong aud/iss, or unverifiable
        InsufficientPermissionError scopes do not cover the request (403)
        IdentityFormatError         fhirUser claim does not match its grammar
        ResourceFormatError         resource reference does not match its grammar

Two errors sit outside that tree on purpose:

- NotAScopeError is a ValueError. Scope aggregation catches it and skips the
  offending scope ("openid", "profile", vendor scopes), so it never reaches
  the host server.
- ConfigurationError is fatal and raised while constructing the handler.
"""


class AuthError(Exception):
    """
    Base class for every authorization failure.

    Attributes:
        message: Human-readable error description (logged server-side)
        status_code: HTTP status code the host server should return
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class UnauthorizedError(AuthError):
    """The request is rejected. Terminal for the request, never retried."""


class InvalidTokenError(UnauthorizedError):
    """The access token could not be decoded, trusted or verified."""


class InsufficientPermissionError(UnauthorizedError):
    """None of the granted scopes authorize the requested operation."""

    def __init__(self, message: str, status_code: int = 403):
        super().__init__(message, status_code)


class IdentityFormatError(UnauthorizedError):
    """The requester's identity (fhirUser) is not a valid actor reference."""


class ResourceFormatError(UnauthorizedError):
    """A resource reference (e.g. the launch context) is malformed."""


class NotAScopeError(ValueError):
    """Raised by the scope parser for strings that are not SMART scopes."""

    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"Not a SMART scope: {scope!r}")


class ConfigurationError(Exception):
    """The handler was constructed with a configuration it cannot honour."""
