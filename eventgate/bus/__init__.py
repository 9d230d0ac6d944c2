# =============================================================================
# Event Bus Package
# =============================================================================

from eventgate.bus.patterns import EventPattern, MatchPredicate, PredicateKind, parse_pattern
from eventgate.bus.router import EventRouter, Rule, RouteTarget, parse_rule

__all__ = [
    "EventPattern",
    "MatchPredicate",
    "PredicateKind",
    "parse_pattern",
    "EventRouter",
    "Rule",
    "RouteTarget",
    "parse_rule",
]
