# =============================================================================
# Token-Pool Authorizer
# =============================================================================
# Extracts a bearer token from a designated header and validates it against a
# directory of registered identities (a Cognito user pool in production).
# Decisions are cached per token fingerprint for authorizer_result_ttl
# seconds, with single-flight validation per key.
# =============================================================================

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from eventgate.auth.cache import DecisionCache, fingerprint
from eventgate.auth.decision import AuthDecision, AuthStrategy
from eventgate.runtime.envelope import Request
from eventgate.runtime.errors import DirectoryUnavailable

logger = logging.getLogger(__name__)

# Cognito error codes meaning "this token is not valid"
INVALID_TOKEN_ERRORS = (
    "NotAuthorizedException",
    "UserNotFoundException",
    "UserNotConfirmedException",
    "PasswordResetRequiredException",
)


class Directory:
    """Identity directory; returns the user's attributes for a valid token."""

    def lookup(self, token: str) -> Optional[Dict[str, str]]:
        """Attributes (including 'username') for a valid token, None if invalid.

        Raises DirectoryUnavailable when the directory cannot answer.
        """
        raise NotImplementedError


class CognitoDirectory(Directory):
    """Validates access tokens with cognito-idp GetUser through the Deps client."""

    def __init__(self, deps):
        self._deps = deps

    def lookup(self, token: str) -> Optional[Dict[str, str]]:
        try:
            response = self._deps.cognito_idp.get_user(AccessToken=token)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in INVALID_TOKEN_ERRORS:
                logger.info(f"Token rejected by user pool: {code}")
                return None
            raise DirectoryUnavailable(f"User pool lookup failed: {code or e}")
        except BotoCoreError as e:
            raise DirectoryUnavailable(f"User pool unreachable: {e}")

        attributes = {a["Name"]: a["Value"] for a in response.get("UserAttributes", [])}
        attributes["username"] = response.get("Username", "")
        return attributes


class TokenPoolAuthorizer(AuthStrategy):
    name = "token_pool"

    def __init__(self, directory: Directory, header: str = "authorization",
                 username_attribute: str = "email", required_attributes: Sequence[str] = (),
                 cache: Optional[DecisionCache] = None):
        self.directory = directory
        self.header = header.lower()
        self.username_attribute = username_attribute
        self.required_attributes = tuple(required_attributes)
        self.cache = cache or DecisionCache()

    def extract_token(self, request: Request) -> str:
        raw = request.header(self.header).strip()
        if raw.lower().startswith("bearer "):
            raw = raw[len("bearer "):].strip()
        return raw

    def _validate(self, token: str) -> AuthDecision:
        attributes = self.directory.lookup(token)
        if attributes is None:
            return AuthDecision.deny("Invalid or expired token", strategy=self.name)

        principal = attributes.get(self.username_attribute) or ""
        if not principal:
            return AuthDecision.deny(f"Identity has no '{self.username_attribute}' attribute",
                                     strategy=self.name)

        missing = [a for a in self.required_attributes if not attributes.get(a)]
        if missing:
            return AuthDecision.deny(f"Identity missing required attributes: {missing}",
                                     strategy=self.name, principal=principal)

        return AuthDecision(
            allow=True,
            principal=principal,
            reason="Token valid",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.cache.ttl_seconds),
            strategy=self.name,
        )

    def authorize(self, request: Request) -> AuthDecision:
        token = self.extract_token(request)
        if not token:
            return AuthDecision.deny(f"Missing token in '{self.header}' header", strategy=self.name,
                                     credentials_presented=False)
        try:
            return self.cache.get_or_load(fingerprint(token), lambda: self._validate(token))
        except DirectoryUnavailable as e:
            logger.error(f"Token validation unavailable: {e.message}")
            return AuthDecision.deny("Identity directory unavailable", strategy=self.name)
