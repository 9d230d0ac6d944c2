# =============================================================================
# Runtime Package - Request Normalization and Shared Plumbing
# =============================================================================
# Leaf modules only; config and dispatch are imported from their modules
# directly since they depend on the filter, auth and bus packages.
# =============================================================================

from eventgate.runtime.deps import Deps, create_deps, get_deps
from eventgate.runtime.envelope import Event, Request, Surface
from eventgate.runtime.errors import (
    AuthDenied,
    ConfigurationInvalid,
    ConsumerInvocationFailed,
    DirectoryUnavailable,
    EventgateError,
    FilterBlocked,
    MalformedRequest,
    MethodNotAllowed,
    PermissionDenied,
    RouteNotFound,
)
from eventgate.runtime.parse_event import detect_payload_format, parse_event

__all__ = [
    "Deps",
    "create_deps",
    "get_deps",
    "Event",
    "Request",
    "Surface",
    "AuthDenied",
    "ConfigurationInvalid",
    "ConsumerInvocationFailed",
    "DirectoryUnavailable",
    "EventgateError",
    "FilterBlocked",
    "MalformedRequest",
    "MethodNotAllowed",
    "PermissionDenied",
    "RouteNotFound",
    "detect_payload_format",
    "parse_event",
]
