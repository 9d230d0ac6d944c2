# =============================================================================
# Pipeline Errors
# =============================================================================
# Every per-request error is resolved to an HTTP response at the ingress
# boundary. ConfigurationInvalid is the only fatal one and is raised while the
# configuration snapshot is being built.
# =============================================================================

from typing import Any, Optional


class EventgateError(Exception):
    """Base class for pipeline errors."""
    status_code = 500

    def __init__(self, message: str = "", detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConfigurationInvalid(EventgateError):
    """Malformed rule, predicate, grant or route definition."""


class FilterBlocked(EventgateError):
    """Request rejected by the access filter before authorization."""
    status_code = 403

    def __init__(self, rule_name: str, message: str = "Forbidden"):
        super().__init__(message, {"rule": rule_name})
        self.rule_name = rule_name


class AuthDenied(EventgateError):
    """Caller identity could not be established or was rejected."""

    def __init__(self, decision: Any, credentials_presented: bool = True):
        super().__init__(getattr(decision, "reason", "Unauthorized"))
        self.decision = decision
        self.credentials_presented = credentials_presented

    @property
    def status_code(self) -> int:
        return 403 if self.credentials_presented else 401


class MalformedRequest(EventgateError):
    """Request body or shape cannot be turned into an event."""
    status_code = 400


class RouteNotFound(EventgateError):
    """No consumer is bound to the requested method and path."""
    status_code = 404


class PermissionDenied(EventgateError):
    """Consumer has no grant for the rule/source that selected it."""
    status_code = 403


class ConsumerInvocationFailed(EventgateError):
    """Consumer host refused or failed the invocation."""
    status_code = 502


class DirectoryUnavailable(EventgateError):
    """Identity directory could not be reached; never cached."""
    status_code = 503


class MethodNotAllowed(EventgateError):
    """Surface does not accept the request method."""
    status_code = 405
