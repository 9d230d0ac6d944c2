# =============================================================================
# Authorizer
# =============================================================================
# Selects the authorization strategy bound to each ingress surface. A surface
# without a configured strategy denies every request.
# =============================================================================

import logging
from typing import Any, Dict, Mapping

from eventgate.auth.cache import DecisionCache
from eventgate.auth.decision import AuthDecision, AuthStrategy
from eventgate.auth.signature import DEFAULT_MAX_SKEW_SECONDS, SignatureAuthorizer, SigningPrincipal
from eventgate.auth.token_pool import CognitoDirectory, TokenPoolAuthorizer
from eventgate.runtime.deps import Deps
from eventgate.runtime.envelope import Request, Surface
from eventgate.runtime.errors import ConfigurationInvalid

logger = logging.getLogger(__name__)


class Authorizer:
    def __init__(self, strategies: Mapping[str, AuthStrategy]):
        self.strategies = dict(strategies)

    def strategy_for(self, surface: str) -> AuthStrategy:
        return self.strategies.get(surface)

    def authorize(self, request: Request) -> AuthDecision:
        strategy = self.strategy_for(request.surface)
        if strategy is None:
            logger.error(f"No authorization strategy bound to surface '{request.surface}'")
            return AuthDecision.deny("No authorization strategy for surface")
        decision = strategy.authorize(request)
        if decision.allow:
            logger.info(f"Authorized principal={decision.principal} via {strategy.name}")
        else:
            logger.info(f"Denied via {strategy.name}: {decision.reason}")
        return decision


# =============================================================================
# CONFIGURATION
# =============================================================================

def _parse_signature(raw: Any, default_region: str) -> SignatureAuthorizer:
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("auth.signature must be an object")
    principals: Dict[str, SigningPrincipal] = {}
    for entry in raw.get("principals", []) or []:
        if not isinstance(entry, dict):
            raise ConfigurationInvalid("auth.signature.principals entries must be objects")
        key_id = entry.get("accessKeyId")
        secret = entry.get("secretAccessKey")
        principal = entry.get("principal")
        if not key_id or not secret or not principal:
            raise ConfigurationInvalid("Signing principals require accessKeyId, secretAccessKey and principal")
        principals[key_id] = SigningPrincipal(key_id, secret, principal)
    if not principals:
        raise ConfigurationInvalid("auth.signature requires at least one principal")
    max_skew = raw.get("maxSkewSeconds", DEFAULT_MAX_SKEW_SECONDS)
    if not isinstance(max_skew, int) or max_skew <= 0:
        raise ConfigurationInvalid("auth.signature.maxSkewSeconds must be a positive integer")
    return SignatureAuthorizer(
        principals,
        region=raw.get("region") or default_region,
        service=raw.get("service", "execute-api"),
        max_skew_seconds=max_skew,
    )


def _parse_token_pool(raw: Any, deps: Deps, ttl_seconds: int) -> TokenPoolAuthorizer:
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("auth.tokenPool must be an object")
    required = raw.get("requiredAttributes", [])
    if not isinstance(required, list) or not all(isinstance(a, str) for a in required):
        raise ConfigurationInvalid("auth.tokenPool.requiredAttributes must be a list of names")
    ttl = raw.get("resultTtlSeconds", ttl_seconds)
    if not isinstance(ttl, int) or ttl < 0:
        raise ConfigurationInvalid("auth.tokenPool.resultTtlSeconds must be a non-negative integer")
    directory = raw.get("directory", "cognito")
    if directory != "cognito":
        raise ConfigurationInvalid(f"Unknown token directory '{directory}'")
    return TokenPoolAuthorizer(
        CognitoDirectory(deps),
        header=raw.get("header", "Authorization"),
        username_attribute=raw.get("usernameAttribute", "email"),
        required_attributes=required,
        cache=DecisionCache(ttl_seconds=ttl),
    )


def parse_authorizer(raw: Any, deps: Deps, region: str, ttl_seconds: int) -> Authorizer:
    """
    Build the Authorizer from the 'auth' section.

    Example:
        {"surfaces": {"direct": "signature", "proxy": "token_pool"},
         "signature": {"principals": [{"accessKeyId": "...", "secretAccessKey": "...", "principal": "arn:..."}]},
         "tokenPool": {"usernameAttribute": "email", "requiredAttributes": ["email"]}}
    """
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("'auth' section must be an object")

    surfaces = raw.get("surfaces") or {Surface.DIRECT: "signature", Surface.PROXY: "signature"}
    if not isinstance(surfaces, dict):
        raise ConfigurationInvalid("auth.surfaces must be an object")

    # the direct bus surface is always signature-authenticated
    if surfaces.get(Surface.DIRECT, "signature") != "signature":
        raise ConfigurationInvalid("The direct bus surface only supports the signature strategy")

    built: Dict[str, AuthStrategy] = {}
    strategies: Dict[str, AuthStrategy] = {}
    for surface, strategy_name in surfaces.items():
        if surface not in (Surface.DIRECT, Surface.PROXY):
            raise ConfigurationInvalid(f"Unknown surface '{surface}' in auth.surfaces")
        if strategy_name not in built:
            if strategy_name == "signature":
                built[strategy_name] = _parse_signature(raw.get("signature"), region)
            elif strategy_name == "token_pool":
                built[strategy_name] = _parse_token_pool(raw.get("tokenPool"), deps, ttl_seconds)
            else:
                raise ConfigurationInvalid(f"Unknown auth strategy '{strategy_name}'")
        strategies[surface] = built[strategy_name]

    return Authorizer(strategies)
