# =============================================================================
# Event Parser - API Gateway to Request
# =============================================================================
# Detects the API Gateway payload format and normalizes it into a Request.
# Supports: REST API (v1) and HTTP API (v2) proxy integrations.
# =============================================================================

import base64
import logging
import uuid
from typing import Any, Dict

from eventgate.runtime.envelope import Request, Surface
from eventgate.runtime.errors import MalformedRequest

logger = logging.getLogger(__name__)


class PayloadFormat:
    """API Gateway payload format identifiers."""
    REST_V1 = "1.0"
    HTTP_V2 = "2.0"
    UNKNOWN = "unknown"


def detect_payload_format(event: Dict[str, Any]) -> str:
    """
    Detect the API Gateway payload format of a Lambda event.

    Returns one of: 1.0, 2.0, unknown
    """
    if not event or not isinstance(event, dict):
        return PayloadFormat.UNKNOWN

    if event.get("version") == "2.0" or "http" in (event.get("requestContext") or {}):
        return PayloadFormat.HTTP_V2

    if "httpMethod" in event or "httpMethod" in (event.get("requestContext") or {}):
        return PayloadFormat.REST_V1

    return PayloadFormat.UNKNOWN


def _decode_body(event: Dict[str, Any]) -> bytes:
    body = event.get("body")
    if body is None:
        return b""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body)
        except (ValueError, TypeError) as e:
            raise MalformedRequest(f"Invalid base64 body: {e}")
    if isinstance(body, bytes):
        return body
    return str(body).encode("utf-8")


def _strip_stage(path: str, stage: str) -> str:
    """Remove a leading /{stage} segment from a path."""
    if stage and stage != "$default":
        prefix = f"/{stage}"
        if path == prefix:
            return "/"
        if path.startswith(prefix + "/"):
            return path[len(prefix):]
    return path or "/"


def _parse_rest_v1(event: Dict[str, Any], surface: str) -> Request:
    request_context = event.get("requestContext", {}) or {}
    identity = request_context.get("identity", {}) or {}
    resource_path = event.get("path") or "/"

    return Request(
        method=event.get("httpMethod") or request_context.get("httpMethod", ""),
        path=request_context.get("path") or resource_path,
        route_path=resource_path,
        headers=event.get("headers") or {},
        query=event.get("queryStringParameters") or {},
        body=_decode_body(event),
        source_ip=identity.get("sourceIp", ""),
        request_id=request_context.get("requestId") or str(uuid.uuid4()),
        surface=surface,
        raw_event=event,
    )


def _parse_http_v2(event: Dict[str, Any], surface: str) -> Request:
    request_context = event.get("requestContext", {}) or {}
    http = request_context.get("http", {}) or {}
    raw_path = event.get("rawPath") or http.get("path") or "/"

    return Request(
        method=http.get("method", ""),
        path=raw_path,
        route_path=_strip_stage(raw_path, request_context.get("stage", "")),
        headers=event.get("headers") or {},
        query=event.get("queryStringParameters") or {},
        body=_decode_body(event),
        source_ip=http.get("sourceIp", ""),
        request_id=request_context.get("requestId") or str(uuid.uuid4()),
        surface=surface,
        raw_event=event,
    )


def parse_event(event: Dict[str, Any], surface: str = Surface.DIRECT) -> Request:
    """
    Parse an API Gateway proxy event into a Request.

    Raises:
        MalformedRequest: the event is not an API Gateway proxy payload
    """
    payload_format = detect_payload_format(event)
    logger.debug(f"Detected payload format: {payload_format}")

    if payload_format == PayloadFormat.HTTP_V2:
        return _parse_http_v2(event, surface)

    if payload_format == PayloadFormat.REST_V1:
        return _parse_rest_v1(event, surface)

    raise MalformedRequest("Unsupported event: not an API Gateway proxy payload")
