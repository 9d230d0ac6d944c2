# =============================================================================
# Authorizer Package
# =============================================================================
# Two strategies, selected per ingress surface:
# - signature: SigV4 request signatures against a fixed principal
# - token_pool: bearer tokens validated against a user pool, cached with TTL
# =============================================================================

from eventgate.auth.authorizer import Authorizer, parse_authorizer
from eventgate.auth.cache import DecisionCache, fingerprint
from eventgate.auth.decision import AuthDecision, AuthStrategy
from eventgate.auth.signature import SignatureAuthorizer, SigningPrincipal, sign_request
from eventgate.auth.token_pool import CognitoDirectory, Directory, TokenPoolAuthorizer

__all__ = [
    "Authorizer",
    "parse_authorizer",
    "DecisionCache",
    "fingerprint",
    "AuthDecision",
    "AuthStrategy",
    "SignatureAuthorizer",
    "SigningPrincipal",
    "sign_request",
    "CognitoDirectory",
    "Directory",
    "TokenPoolAuthorizer",
]
