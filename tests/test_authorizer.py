#!/usr/bin/env python3
"""
Tests for the authorizer.

Tests:
- SigV4 signature verification (valid, tampered, expired, wrong scope)
- Token-pool validation with TTL cache and single-flight
- Cognito directory error mapping
- Surface to strategy binding

Run with: pytest tests/test_authorizer.py -v
"""
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

ACCESS_KEY = "AKIDEXAMPLE"
SECRET_KEY = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"
PRINCIPAL = "arn:aws:iam::123456789012:user/ingest"
REGION = "us-east-1"
HOST = "api.example.com"


def _signature_authorizer(**kwargs):
    from eventgate.auth.signature import SignatureAuthorizer, SigningPrincipal

    return SignatureAuthorizer({ACCESS_KEY: SigningPrincipal(ACCESS_KEY, SECRET_KEY, PRINCIPAL)},
                               region=REGION, **kwargs)


def _signed_request(body=b'{"Detail": {"x": 1}}', path="/prod/events", method="POST",
                    access_key=ACCESS_KEY, secret=SECRET_KEY, region=REGION, query=None):
    from eventgate.auth.signature import sign_request
    from eventgate.runtime.envelope import Request

    headers = sign_request(method, HOST, path, body, access_key, secret, region, query=query)
    return Request(method=method, path=path, headers=headers, body=body, query=query or {})


class FakeDirectory:
    """In-memory identity directory that counts lookups."""

    def __init__(self, users=None, delay=0.0):
        self.users = users or {}
        self.delay = delay
        self.fail = False
        self.calls = 0
        self._lock = threading.Lock()

    def lookup(self, token):
        from eventgate.runtime.errors import DirectoryUnavailable

        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise DirectoryUnavailable("user pool unreachable")
        return self.users.get(token)


def _token_request(token="tok-1", header="Authorization"):
    from eventgate.runtime.envelope import Request, Surface

    headers = {header: f"Bearer {token}"} if token else {}
    return Request(method="POST", path="/reports", headers=headers, surface=Surface.PROXY)


USERS = {
    "tok-1": {"username": "u-1", "email": "ada@example.edu", "custom:role": "staff"},
    "tok-2": {"username": "u-2", "email": "grace@example.edu"},
}


# =============================================================================
# TEST: Signature Strategy
# =============================================================================

class TestSignatureAuthorizer:
    """Tests for SigV4 verification."""

    def test_valid_signature(self):
        """Test a correctly signed request is allowed."""
        decision = _signature_authorizer().authorize(_signed_request())

        assert decision.allow
        assert decision.principal == PRINCIPAL
        assert decision.strategy == "signature"
        print("✓ Valid signature accepted")

    def test_valid_signature_with_query(self):
        """Test query parameters are part of the verified request."""
        decision = _signature_authorizer().authorize(_signed_request(query={"b": "2", "a": "x y"}))

        assert decision.allow
        print("✓ Signed query string accepted")

    def test_missing_header(self):
        """Test absent credentials are reported as not presented."""
        from eventgate.runtime.envelope import Request

        decision = _signature_authorizer().authorize(Request(method="POST", path="/", headers={"host": HOST}))

        assert not decision.allow
        assert not decision.credentials_presented
        print("✓ Missing Authorization header denied")

    def test_malformed_header(self):
        """Test a non-SigV4 Authorization header is rejected."""
        from eventgate.runtime.envelope import Request

        request = Request(method="POST", path="/", headers={"host": HOST, "authorization": "Bearer abc"})
        decision = _signature_authorizer().authorize(request)

        assert not decision.allow
        assert decision.credentials_presented
        print("✓ Malformed Authorization header denied")

    def test_tampered_body(self):
        """Test a body changed after signing is rejected."""
        from eventgate.runtime.envelope import Request

        signed = _signed_request()
        tampered = Request(method="POST", path=signed.path, headers=signed.headers, body=b'{"Detail": {"x": 2}}')
        decision = _signature_authorizer().authorize(tampered)

        assert not decision.allow
        assert decision.reason == "Signature mismatch"
        print("✓ Tampered body denied")

    def test_tampered_path(self):
        """Test a path changed after signing is rejected."""
        from eventgate.runtime.envelope import Request

        signed = _signed_request()
        moved = Request(method="POST", path="/prod/admin", headers=signed.headers, body=signed.body)

        assert not _signature_authorizer().authorize(moved).allow
        print("✓ Tampered path denied")

    def test_wrong_secret(self):
        """Test a signature made with another secret is rejected."""
        decision = _signature_authorizer().authorize(_signed_request(secret="not-the-secret"))

        assert not decision.allow
        assert decision.principal == PRINCIPAL
        print("✓ Wrong secret denied")

    def test_unknown_access_key(self):
        """Test an access key with no configured principal is rejected."""
        decision = _signature_authorizer().authorize(_signed_request(access_key="AKIDOTHER"))

        assert not decision.allow
        assert decision.reason == "Unknown access key"
        print("✓ Unknown access key denied")

    def test_wrong_region_scope(self):
        """Test a signature scoped to another region is rejected."""
        decision = _signature_authorizer().authorize(_signed_request(region="eu-west-1"))

        assert not decision.allow
        print("✓ Foreign credential scope denied")

    def test_clock_skew(self):
        """Test a request outside the replay window is rejected."""
        authorizer = _signature_authorizer(max_skew_seconds=300)
        request = _signed_request()

        later = datetime.now(timezone.utc) + timedelta(seconds=900)
        decision = authorizer.authorize(request, now=later)

        assert not decision.allow
        assert "skew" in decision.reason
        assert authorizer.authorize(request, now=datetime.now(timezone.utc) + timedelta(seconds=60)).allow
        print("✓ Clock skew enforced")

    def test_content_sha_mismatch(self):
        """Test a content hash header that does not match the body is rejected."""
        from eventgate.runtime.envelope import Request

        signed = _signed_request()
        headers = dict(signed.headers, **{"x-amz-content-sha256": "0" * 64})
        decision = _signature_authorizer().authorize(
            Request(method="POST", path=signed.path, headers=headers, body=signed.body)
        )

        assert not decision.allow
        print("✓ Content hash mismatch denied")

    def test_parse_authorization(self):
        """Test Authorization header parsing."""
        from eventgate.auth.signature import parse_authorization

        parsed = parse_authorization(
            "AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20260101/us-east-1/execute-api/aws4_request, "
            "SignedHeaders=host;x-amz-date, Signature=ABCDEF0123"
        )

        assert parsed.access_key_id == "AKIDEXAMPLE"
        assert parsed.date == "20260101"
        assert parsed.service == "execute-api"
        assert parsed.signed_headers == ("host", "x-amz-date")
        assert parsed.signature == "abcdef0123"
        assert parse_authorization("AWS4-HMAC-SHA256 Credential=AKID/2026/us-east-1, Signature=ab") is None
        print("✓ Authorization header parsing works correctly")


# =============================================================================
# TEST: Token-Pool Strategy
# =============================================================================

class TestTokenPoolAuthorizer:
    """Tests for bearer tokens validated against a user pool."""

    def _authorizer(self, directory, clock=None, **kwargs):
        from eventgate.auth.cache import DecisionCache
        from eventgate.auth.token_pool import TokenPoolAuthorizer

        cache = DecisionCache(ttl_seconds=300, clock=clock) if clock else DecisionCache(ttl_seconds=300)
        return TokenPoolAuthorizer(directory, cache=cache, **kwargs)

    def test_valid_token(self):
        """Test a registered token is allowed with the configured username attribute."""
        decision = self._authorizer(FakeDirectory(USERS)).authorize(_token_request())

        assert decision.allow
        assert decision.principal == "ada@example.edu"
        assert decision.strategy == "token_pool"
        assert decision.expires_at is not None
        print("✓ Valid token accepted")

    def test_missing_token(self):
        """Test no token means credentials not presented."""
        directory = FakeDirectory(USERS)
        decision = self._authorizer(directory).authorize(_token_request(token=None))

        assert not decision.allow
        assert not decision.credentials_presented
        assert directory.calls == 0
        print("✓ Missing token denied without lookup")

    def test_required_attributes(self):
        """Test identities missing required attributes are denied."""
        authorizer = self._authorizer(FakeDirectory(USERS), required_attributes=["custom:role"])

        assert authorizer.authorize(_token_request("tok-1")).allow
        assert not authorizer.authorize(_token_request("tok-2")).allow
        print("✓ Required attributes enforced")

    def test_decision_cached(self):
        """Test repeated requests with one token hit the directory once."""
        directory = FakeDirectory(USERS)
        authorizer = self._authorizer(directory)

        for _ in range(5):
            assert authorizer.authorize(_token_request()).allow

        assert directory.calls == 1
        print("✓ Decisions cached per token")

    def test_deny_cached(self):
        """Test an invalid token's deny is cached too."""
        directory = FakeDirectory(USERS)
        authorizer = self._authorizer(directory)

        assert not authorizer.authorize(_token_request("forged")).allow
        assert not authorizer.authorize(_token_request("forged")).allow
        assert directory.calls == 1
        print("✓ Deny decisions cached")

    def test_ttl_expiry(self):
        """Test a cached decision is revalidated once the TTL passes."""
        now = [1000.0]
        directory = FakeDirectory(USERS)
        authorizer = self._authorizer(directory, clock=lambda: now[0])

        authorizer.authorize(_token_request())
        now[0] += 299
        authorizer.authorize(_token_request())
        assert directory.calls == 1

        now[0] += 2
        authorizer.authorize(_token_request())
        assert directory.calls == 2
        print("✓ Cached decisions expire after TTL")

    def test_single_flight(self):
        """Test concurrent first requests for one token share a single lookup."""
        directory = FakeDirectory(USERS, delay=0.2)
        authorizer = self._authorizer(directory)
        barrier = threading.Barrier(10)

        def call():
            barrier.wait()
            return authorizer.authorize(_token_request())

        with ThreadPoolExecutor(max_workers=10) as pool:
            decisions = list(pool.map(lambda _: call(), range(10)))

        assert all(d.allow for d in decisions)
        assert directory.calls == 1
        print("✓ Single-flight validation works correctly")

    def test_distinct_tokens_isolated(self):
        """Test different tokens are validated and cached separately."""
        directory = FakeDirectory(USERS)
        authorizer = self._authorizer(directory)

        assert authorizer.authorize(_token_request("tok-1")).principal == "ada@example.edu"
        assert authorizer.authorize(_token_request("tok-2")).principal == "grace@example.edu"
        assert directory.calls == 2
        print("✓ Tokens cached independently")

    def test_directory_outage_not_cached(self):
        """Test a directory outage denies without caching the failure."""
        directory = FakeDirectory(USERS)
        directory.fail = True
        authorizer = self._authorizer(directory)

        assert not authorizer.authorize(_token_request()).allow
        assert not authorizer.authorize(_token_request()).allow
        assert directory.calls == 2

        directory.fail = False
        assert authorizer.authorize(_token_request()).allow
        print("✓ Directory outages are not cached")

    def test_custom_header(self):
        """Test the token header is configurable."""
        authorizer = self._authorizer(FakeDirectory(USERS), header="X-Api-Token")

        assert authorizer.authorize(_token_request(header="x-api-token")).allow
        assert not authorizer.authorize(_token_request()).allow
        print("✓ Custom token header works correctly")


# =============================================================================
# TEST: Decision Cache
# =============================================================================

class TestDecisionCache:
    """Tests for the bounded TTL cache."""

    def test_fingerprint_keys(self):
        """Test keys are digests, never the raw credential."""
        from eventgate.auth.cache import fingerprint

        key = fingerprint("tok-1")
        assert key != "tok-1"
        assert len(key) == 64
        assert fingerprint("tok-1") == key
        print("✓ Fingerprints are stable digests")

    def test_eviction(self):
        """Test the oldest entry is evicted beyond max_entries."""
        from eventgate.auth.cache import DecisionCache
        from eventgate.auth.decision import AuthDecision

        cache = DecisionCache(max_entries=2)
        for key in ("a", "b", "c"):
            cache.get_or_load(key, lambda: AuthDecision(allow=True, principal="p"))

        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c") is not None
        print("✓ Cache bounded by max_entries")

    def test_loader_error_not_cached(self):
        """Test a failing loader propagates and leaves nothing behind."""
        from eventgate.auth.cache import DecisionCache
        from eventgate.auth.decision import AuthDecision

        cache = DecisionCache()

        def boom():
            raise RuntimeError("directory exploded")

        with pytest.raises(RuntimeError):
            cache.get_or_load("k", boom)
        assert len(cache) == 0
        assert cache.get_or_load("k", lambda: AuthDecision(allow=True)).allow
        print("✓ Loader errors are not cached")


# =============================================================================
# TEST: Cognito Directory
# =============================================================================

class TestCognitoDirectory:
    """Tests for the cognito-idp backed directory."""

    def test_lookup(self):
        """Test GetUser attributes are flattened."""
        from eventgate.auth.token_pool import CognitoDirectory

        deps = MagicMock()
        deps.cognito_idp.get_user.return_value = {
            "Username": "u-1",
            "UserAttributes": [{"Name": "email", "Value": "ada@example.edu"}],
        }

        attributes = CognitoDirectory(deps).lookup("tok-1")

        assert attributes == {"email": "ada@example.edu", "username": "u-1"}
        deps.cognito_idp.get_user.assert_called_once_with(AccessToken="tok-1")
        print("✓ Cognito lookup works correctly")

    def test_invalid_token(self):
        """Test NotAuthorizedException means an invalid token."""
        from eventgate.auth.token_pool import CognitoDirectory

        deps = MagicMock()
        deps.cognito_idp.get_user.side_effect = ClientError(
            {"Error": {"Code": "NotAuthorizedException", "Message": "Access Token has expired"}}, "GetUser"
        )

        assert CognitoDirectory(deps).lookup("expired") is None
        print("✓ Invalid tokens map to None")

    def test_outage(self):
        """Test other errors mean the directory is unavailable."""
        from eventgate.auth.token_pool import CognitoDirectory
        from eventgate.runtime.errors import DirectoryUnavailable

        deps = MagicMock()
        deps.cognito_idp.get_user.side_effect = ClientError(
            {"Error": {"Code": "InternalErrorException", "Message": "boom"}}, "GetUser"
        )

        with pytest.raises(DirectoryUnavailable):
            CognitoDirectory(deps).lookup("tok-1")

        deps.cognito_idp.get_user.side_effect = EndpointConnectionError(
            endpoint_url="https://cognito-idp.us-east-1.amazonaws.com"
        )
        with pytest.raises(DirectoryUnavailable):
            CognitoDirectory(deps).lookup("tok-1")

        deps.cognito_idp.get_user.side_effect = ReadTimeoutError(
            endpoint_url="https://cognito-idp.us-east-1.amazonaws.com"
        )
        with pytest.raises(DirectoryUnavailable):
            CognitoDirectory(deps).lookup("tok-1")
        print("✓ Directory outages raise DirectoryUnavailable")


# =============================================================================
# TEST: Surface Binding
# =============================================================================

class TestAuthorizer:
    """Tests for strategy selection per surface."""

    def _auth_config(self, surfaces=None):
        raw = {
            "signature": {"principals": [
                {"accessKeyId": ACCESS_KEY, "secretAccessKey": SECRET_KEY, "principal": PRINCIPAL},
            ]},
            "tokenPool": {"usernameAttribute": "email"},
        }
        if surfaces is not None:
            raw["surfaces"] = surfaces
        return raw

    def test_default_surfaces(self):
        """Test both surfaces default to the signature strategy."""
        from eventgate.auth.authorizer import parse_authorizer
        from eventgate.auth.signature import SignatureAuthorizer

        authorizer = parse_authorizer(self._auth_config(), MagicMock(), REGION, 300)

        assert isinstance(authorizer.strategy_for("direct"), SignatureAuthorizer)
        assert authorizer.strategy_for("proxy") is authorizer.strategy_for("direct")
        print("✓ Default surface binding works correctly")

    def test_proxy_token_pool(self):
        """Test the proxy surface can use the token pool."""
        from eventgate.auth.authorizer import parse_authorizer
        from eventgate.auth.token_pool import TokenPoolAuthorizer

        deps = MagicMock()
        authorizer = parse_authorizer(
            self._auth_config({"direct": "signature", "proxy": "token_pool"}), deps, REGION, 120,
        )
        strategy = authorizer.strategy_for("proxy")

        assert isinstance(strategy, TokenPoolAuthorizer)
        assert strategy.cache.ttl_seconds == 120
        deps.cognito_idp.get_user.assert_not_called()
        print("✓ Proxy surface bound to token pool")

    def test_direct_requires_signature(self):
        """Test the direct surface cannot use the token pool."""
        from eventgate.auth.authorizer import parse_authorizer
        from eventgate.runtime.errors import ConfigurationInvalid

        with pytest.raises(ConfigurationInvalid):
            parse_authorizer(self._auth_config({"direct": "token_pool"}), MagicMock(), REGION, 300)
        print("✓ Direct surface requires signature")

    def test_invalid_configs(self):
        """Test malformed auth sections fail to load."""
        from eventgate.auth.authorizer import parse_authorizer
        from eventgate.runtime.errors import ConfigurationInvalid

        with pytest.raises(ConfigurationInvalid):
            parse_authorizer({"signature": {"principals": []}}, MagicMock(), REGION, 300)
        with pytest.raises(ConfigurationInvalid):
            parse_authorizer(self._auth_config({"proxy": "magic"}), MagicMock(), REGION, 300)
        with pytest.raises(ConfigurationInvalid):
            parse_authorizer(self._auth_config({"admin": "signature"}), MagicMock(), REGION, 300)
        with pytest.raises(ConfigurationInvalid):
            parse_authorizer(None, MagicMock(), REGION, 300)
        print("✓ Malformed auth configuration rejected")

    def test_unbound_surface_denies(self):
        """Test a surface without a strategy denies everything."""
        from eventgate.auth.authorizer import Authorizer
        from eventgate.runtime.envelope import Request, Surface

        authorizer = Authorizer({"direct": _signature_authorizer()})
        decision = authorizer.authorize(Request(method="POST", path="/", surface=Surface.PROXY))

        assert not decision.allow
        print("✓ Unbound surface denies")
