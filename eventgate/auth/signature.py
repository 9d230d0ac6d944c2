# =============================================================================
# Signature Authorizer (IAM-style SigV4)
# =============================================================================
# Verifies an AWS Signature Version 4 request signature against the secret of
# a fixed, configured principal. Stateless; nothing is cached.
#
# Checks, in order:
# - Authorization header present and well-formed
# - Access key belongs to a configured principal
# - Credential scope matches the configured region/service
# - X-Amz-Date within the allowed clock skew (replay window)
# - X-Amz-Content-SHA256, when signed, matches the body
# - Recomputed signature matches (timing-safe comparison)
# =============================================================================

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import quote, urlencode

from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from eventgate.auth.decision import AuthDecision, AuthStrategy
from eventgate.runtime.envelope import Request

logger = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
DEFAULT_MAX_SKEW_SECONDS = 300

_AUTH_HEADER_RE = re.compile(
    r"^AWS4-HMAC-SHA256\s+"
    r"Credential=(?P<credential>[^,\s]+),\s*"
    r"SignedHeaders=(?P<signed_headers>[^,\s]+),\s*"
    r"Signature=(?P<signature>[0-9a-fA-F]+)\s*$"
)


@dataclass(frozen=True)
class SigningPrincipal:
    access_key_id: str
    secret_access_key: str
    principal: str


@dataclass(frozen=True)
class ParsedAuthorization:
    access_key_id: str
    date: str
    region: str
    service: str
    signed_headers: Tuple[str, ...]
    signature: str


def parse_authorization(header: str) -> Optional[ParsedAuthorization]:
    """Parse a SigV4 Authorization header; None when malformed."""
    match = _AUTH_HEADER_RE.match(header.strip())
    if not match:
        return None
    scope = match.group("credential").split("/")
    if len(scope) != 5 or scope[4] != "aws4_request":
        return None
    signed_headers = tuple(h for h in match.group("signed_headers").lower().split(";") if h)
    return ParsedAuthorization(
        access_key_id=scope[0],
        date=scope[1],
        region=scope[2],
        service=scope[3],
        signed_headers=signed_headers,
        signature=match.group("signature").lower(),
    )


class SignatureAuthorizer(AuthStrategy):
    name = "signature"

    def __init__(self, principals: Dict[str, SigningPrincipal], region: str,
                 service: str = "execute-api", max_skew_seconds: int = DEFAULT_MAX_SKEW_SECONDS,
                 scheme: str = "https"):
        self.principals = dict(principals)
        self.region = region
        self.service = service
        self.max_skew_seconds = max_skew_seconds
        self.scheme = scheme

    def _deny(self, reason: str, presented: bool = True, principal: str = "") -> AuthDecision:
        logger.warning(f"Signature rejected: {reason}")
        return AuthDecision.deny(reason, strategy=self.name, credentials_presented=presented,
                                 principal=principal)

    def _validate_timestamp(self, amz_date: str, now: datetime) -> Optional[str]:
        try:
            signed_at = datetime.strptime(amz_date, AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            return "Invalid X-Amz-Date"
        skew = abs((now - signed_at).total_seconds())
        if skew > self.max_skew_seconds:
            return f"Request timestamp outside allowed skew ({int(skew)}s > {self.max_skew_seconds}s)"
        return None

    def _canonical_url(self, request: Request) -> str:
        url = f"{self.scheme}://{request.host}{request.path or '/'}"
        if request.query:
            url += "?" + urlencode(sorted(request.query.items()), quote_via=quote, safe="-_.~")
        return url

    def expected_signature(self, request: Request, parsed: ParsedAuthorization,
                           principal: SigningPrincipal, amz_date: str) -> str:
        """Recompute the SigV4 signature over the headers the caller signed."""
        headers = {name: request.header(name) for name in parsed.signed_headers}
        aws_request = AWSRequest(
            method=request.method,
            url=self._canonical_url(request),
            data=request.body,
            headers=headers,
        )
        aws_request.context["timestamp"] = amz_date

        signer = SigV4Auth(
            Credentials(principal.access_key_id, principal.secret_access_key),
            self.service,
            self.region,
        )
        canonical_request = signer.canonical_request(aws_request)
        string_to_sign = signer.string_to_sign(aws_request, canonical_request)
        return signer.signature(string_to_sign, aws_request)

    def authorize(self, request: Request, now: Optional[datetime] = None) -> AuthDecision:
        header = request.header("authorization")
        if not header:
            return self._deny("Missing Authorization header", presented=False)

        parsed = parse_authorization(header)
        if parsed is None:
            return self._deny(f"Malformed Authorization header; expected {ALGORITHM}")

        principal = self.principals.get(parsed.access_key_id)
        if principal is None:
            return self._deny("Unknown access key")

        if parsed.region != self.region or parsed.service != self.service:
            return self._deny("Credential scope does not match this endpoint", principal=principal.principal)

        if "host" not in parsed.signed_headers or "x-amz-date" not in parsed.signed_headers:
            return self._deny("host and x-amz-date must be signed", principal=principal.principal)

        missing = [h for h in parsed.signed_headers if h not in request.headers]
        if missing:
            return self._deny(f"Signed headers missing from request: {missing}", principal=principal.principal)

        amz_date = request.header("x-amz-date")
        if not amz_date.startswith(parsed.date):
            return self._deny("Credential date does not match X-Amz-Date", principal=principal.principal)
        ts_error = self._validate_timestamp(amz_date, now or datetime.now(timezone.utc))
        if ts_error:
            return self._deny(ts_error, principal=principal.principal)

        content_sha = request.header("x-amz-content-sha256")
        if content_sha and content_sha.lower() != hashlib.sha256(request.body).hexdigest():
            return self._deny("X-Amz-Content-SHA256 does not match body", principal=principal.principal)

        expected = self.expected_signature(request, parsed, principal, amz_date)
        if not hmac.compare_digest(expected, parsed.signature):
            return self._deny("Signature mismatch", principal=principal.principal)

        logger.info(f"Signature verified for principal={principal.principal}")
        return AuthDecision(allow=True, principal=principal.principal, reason="Signature valid",
                            strategy=self.name)


def sign_request(method: str, host: str, path: str, body: bytes, access_key_id: str,
                 secret_access_key: str, region: str, service: str = "execute-api",
                 query: Optional[Dict[str, str]] = None, scheme: str = "https") -> Dict[str, str]:
    """Client side: headers (host, x-amz-date, authorization) for a signed call."""
    url = f"{scheme}://{host}{path or '/'}"
    if query:
        url += "?" + urlencode(sorted(query.items()), quote_via=quote, safe="-_.~")
    aws_request = AWSRequest(method=method.upper(), url=url, data=body, headers={"host": host})
    SigV4Auth(Credentials(access_key_id, secret_access_key), service, region).add_auth(aws_request)
    return {name.lower(): value for name, value in aws_request.headers.items()}
