#!/usr/bin/env python3
"""
Test suite for the runtime layer.

Tests:
- Request and Event containers
- API Gateway event parsing (REST v1, HTTP v2)
- Dependency injection container
- Error status mapping

Run with: pytest tests/test_runtime.py -v
Or: python tests/test_runtime.py
"""
import base64
import json
import os
import sys
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set required environment variables BEFORE imports
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("EVENTGATE_ACCOUNT_ID", "123456789012")


def _http_v2_event(**overrides):
    event = {
        "version": "2.0",
        "rawPath": "/prod/events",
        "headers": {
            "Host": "api.example.com",
            "CloudFront-Viewer-Country": "de",
            "Content-Type": "application/json",
        },
        "queryStringParameters": {"trace": "1"},
        "body": json.dumps({"Detail": {"x": 1}}),
        "isBase64Encoded": False,
        "requestContext": {
            "requestId": "req-v2",
            "stage": "prod",
            "http": {"method": "post", "path": "/prod/events", "sourceIp": "10.0.0.1"},
        },
    }
    event.update(overrides)
    return event


def _rest_v1_event(**overrides):
    event = {
        "httpMethod": "POST",
        "path": "/reports",
        "headers": {"Host": "api.example.com"},
        "body": base64.b64encode(b'{"weekly": true}').decode("ascii"),
        "isBase64Encoded": True,
        "requestContext": {
            "path": "/prod/reports",
            "requestId": "req-v1",
            "identity": {"sourceIp": "192.0.2.44"},
        },
    }
    event.update(overrides)
    return event


# =============================================================================
# TEST: Request / Event
# =============================================================================

class TestEnvelope:
    """Tests for Request and Event containers."""

    def test_request_normalizes_fields(self):
        """Test Request upper-cases method and lower-cases header names."""
        from eventgate.runtime.envelope import Request, Surface

        request = Request(method="post", path="/", headers={"X-Amz-Date": "20260101T000000Z"}, body="{}")

        assert request.method == "POST"
        assert request.header("x-amz-date") == "20260101T000000Z"
        assert request.header("X-AMZ-DATE") == "20260101T000000Z"
        assert request.body == b"{}"
        assert request.route_path == "/"
        assert request.surface == Surface.DIRECT
        assert request.request_id
        print("✓ Request normalization works correctly")

    def test_request_json_body(self):
        """Test JSON body decoding."""
        from eventgate.runtime.envelope import Request

        assert Request(method="POST", path="/", body=b'{"a": 1}').json_body() == {"a": 1}
        with pytest.raises(ValueError):
            Request(method="POST", path="/", body=b"").json_body()
        with pytest.raises(ValueError):
            Request(method="POST", path="/", body=b"{nope").json_body()
        print("✓ Request.json_body() works correctly")

    def test_event_requires_account_and_source(self):
        """Test Event rejects missing primary match keys."""
        from eventgate.runtime.envelope import Event

        with pytest.raises(ValueError):
            Event.create(account="", source="university.apigw", detail_type="T", detail={})
        with pytest.raises(ValueError):
            Event.create(account="123456789012", source="", detail_type="T", detail={})
        print("✓ Event mandatory fields enforced")

    def test_event_owns_its_detail(self):
        """Test Event.create copies detail so later caller mutation is invisible."""
        from eventgate.runtime.envelope import Event

        detail = {"grades": [1, 2]}
        event = Event.create(account="123456789012", source="university.apigw", detail_type="T", detail=detail)
        detail["grades"].append(3)

        assert event.detail == {"grades": [1, 2]}
        with pytest.raises(Exception):
            event.source = "other"
        print("✓ Event is immutable and owns its detail")

    def test_event_to_dict(self):
        """Test EventBridge-shaped payload."""
        from eventgate.runtime.envelope import Event

        event = Event.create(
            account="123456789012",
            source="university.apigw",
            detail_type="GradePosted",
            detail={"x": 1},
            region="us-east-1",
            received_at=datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc),
        )
        data = event.to_dict()

        assert data["source"] == "university.apigw"
        assert data["account"] == "123456789012"
        assert data["detail-type"] == "GradePosted"
        assert data["detail"] == {"x": 1}
        assert data["time"] == "2026-03-01T12:00:00Z"
        assert data["id"] == event.id
        assert event.value_of("detail-type") == "GradePosted"
        assert event.value_of("region") is None
        print("✓ Event.to_dict() works correctly")


# =============================================================================
# TEST: Event Parser
# =============================================================================

class TestEventParser:
    """Tests for API Gateway event parsing."""

    def test_detect_formats(self):
        """Test payload format detection."""
        from eventgate.runtime.parse_event import PayloadFormat, detect_payload_format

        assert detect_payload_format(_http_v2_event()) == PayloadFormat.HTTP_V2
        assert detect_payload_format(_rest_v1_event()) == PayloadFormat.REST_V1
        assert detect_payload_format({"Records": []}) == PayloadFormat.UNKNOWN
        assert detect_payload_format({}) == PayloadFormat.UNKNOWN
        print("✓ Payload format detection works correctly")

    def test_parse_http_v2(self):
        """Test HTTP API event parsing strips the stage for routing only."""
        from eventgate.runtime.envelope import Surface
        from eventgate.runtime.parse_event import parse_event

        request = parse_event(_http_v2_event(), Surface.PROXY)

        assert request.method == "POST"
        assert request.path == "/prod/events"
        assert request.route_path == "/events"
        assert request.host == "api.example.com"
        assert request.country == "DE"
        assert request.source_ip == "10.0.0.1"
        assert request.request_id == "req-v2"
        assert request.query == {"trace": "1"}
        assert request.surface == Surface.PROXY
        assert request.json_body() == {"Detail": {"x": 1}}
        assert request.raw_event["rawPath"] == "/prod/events"
        print("✓ HTTP API (v2) parsing works correctly")

    def test_parse_http_v2_default_stage(self):
        """Test $default stage leaves the path alone."""
        from eventgate.runtime.parse_event import parse_event

        event = _http_v2_event(rawPath="/")
        event["requestContext"]["stage"] = "$default"
        request = parse_event(event)

        assert request.path == "/"
        assert request.route_path == "/"
        print("✓ $default stage handled correctly")

    def test_parse_rest_v1_base64(self):
        """Test REST API event parsing with a base64 body."""
        from eventgate.runtime.parse_event import parse_event

        request = parse_event(_rest_v1_event())

        assert request.method == "POST"
        assert request.path == "/prod/reports"
        assert request.route_path == "/reports"
        assert request.body == b'{"weekly": true}'
        assert request.source_ip == "192.0.2.44"
        assert request.request_id == "req-v1"
        print("✓ REST API (v1) parsing works correctly")

    def test_parse_invalid_base64(self):
        """Test undecodable body is a malformed request."""
        from eventgate.runtime.errors import MalformedRequest
        from eventgate.runtime.parse_event import parse_event

        with pytest.raises(MalformedRequest):
            parse_event(_rest_v1_event(body="abc"))
        print("✓ Invalid base64 rejected")

    def test_parse_unknown_event(self):
        """Test non API Gateway payloads are rejected."""
        from eventgate.runtime.errors import MalformedRequest
        from eventgate.runtime.parse_event import parse_event

        with pytest.raises(MalformedRequest):
            parse_event({"detail-type": "Scheduled Event"})
        print("✓ Unknown event rejected")

    def test_null_request_context(self):
        """Test a null requestContext is treated as absent."""
        from eventgate.runtime.errors import MalformedRequest
        from eventgate.runtime.parse_event import PayloadFormat, detect_payload_format, parse_event

        assert detect_payload_format({"requestContext": None}) == PayloadFormat.UNKNOWN
        with pytest.raises(MalformedRequest):
            parse_event({"requestContext": None, "body": "{}"})

        event = _http_v2_event()
        event["requestContext"] = None
        request = parse_event(event)
        assert request.path == "/prod/events"
        assert request.method == ""
        print("✓ Null requestContext handled")


# =============================================================================
# TEST: Dependency Injection
# =============================================================================

class TestDeps:
    """Tests for dependency injection container."""

    def test_deps_creation(self):
        """Test Deps creation."""
        from eventgate.runtime.deps import create_deps

        deps = create_deps(region="eu-west-1")

        assert deps.region == "eu-west-1"
        print("✓ Deps creation works correctly")

    def test_deps_config(self):
        """Test Deps config property."""
        from eventgate.runtime.deps import create_deps

        config = create_deps().config

        assert "AUDIT_TABLE_NAME" in config
        assert "AUTHORIZER_RESULT_TTL" in config
        assert isinstance(config["DISPATCH_MAX_WORKERS"], int)
        print("✓ Deps.config works correctly")

    def test_deps_config_bad_integer(self):
        """Test non-integer settings fall back to defaults."""
        from eventgate.runtime.deps import create_deps

        with patch.dict(os.environ, {"DISPATCH_MAX_WORKERS": "lots", "AUDIT_RETENTION_DAYS": "90"}):
            config = create_deps().config

        assert config["DISPATCH_MAX_WORKERS"] == 8
        assert config["AUDIT_RETENTION_DAYS"] == 90
        print("✓ Integer settings parsed with fallback")

    def test_deps_clients_are_lazy(self):
        """Test no AWS client is built until first access."""
        from eventgate.runtime.deps import create_deps

        with patch("eventgate.runtime.deps.boto3") as boto:
            deps = create_deps(region="us-east-1")
            _ = deps.config
            boto.client.assert_not_called()

            _ = deps.lambda_client
            _ = deps.lambda_client
            boto.client.assert_called_once_with("lambda", region_name="us-east-1")
        print("✓ Deps clients are lazy and cached")

    def test_get_deps_singleton(self):
        """Test global deps singleton."""
        from eventgate.runtime.deps import get_deps

        assert get_deps() is get_deps()
        print("✓ get_deps() returns singleton")


# =============================================================================
# TEST: Errors
# =============================================================================

class TestErrors:
    """Tests for error status mapping."""

    def test_status_codes(self):
        """Test each error resolves to its HTTP status."""
        from eventgate.auth.decision import AuthDecision
        from eventgate.runtime.errors import (
            AuthDenied,
            ConsumerInvocationFailed,
            FilterBlocked,
            MalformedRequest,
            MethodNotAllowed,
            PermissionDenied,
            RouteNotFound,
        )

        assert FilterBlocked("block-admin").status_code == 403
        assert FilterBlocked("block-admin").rule_name == "block-admin"
        assert AuthDenied(AuthDecision.deny("missing"), credentials_presented=False).status_code == 401
        assert AuthDenied(AuthDecision.deny("bad signature")).status_code == 403
        assert AuthDenied(AuthDecision.deny("bad signature")).message == "bad signature"
        assert MalformedRequest("x").status_code == 400
        assert RouteNotFound("x").status_code == 404
        assert MethodNotAllowed("x").status_code == 405
        assert PermissionDenied("x").status_code == 403
        assert ConsumerInvocationFailed("x").status_code == 502
        print("✓ Error status codes map correctly")


# =============================================================================
# RUN ALL TESTS
# =============================================================================

def run_all_tests():
    """Run all tests and report results."""
    print("\n" + "=" * 70)
    print("RUNTIME TEST SUITE")
    print("=" * 70 + "\n")

    test_classes = [
        ("Envelope Tests", TestEnvelope),
        ("Event Parser Tests", TestEventParser),
        ("Deps Tests", TestDeps),
        ("Error Tests", TestErrors),
    ]

    passed = 0
    failed = 0

    for name, test_class in test_classes:
        print(f"\n{'=' * 60}")
        print(f"Running: {name}")
        print("=" * 60)

        instance = test_class()
        for method_name in dir(instance):
            if method_name.startswith("test_"):
                try:
                    getattr(instance, method_name)()
                    passed += 1
                except Exception as e:
                    print(f"✗ {method_name}: {e}")
                    failed += 1

    print("\n" + "=" * 70)
    print(f"RESULTS: {passed} passed, {failed} failed")
    print("=" * 70)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
