# =============================================================================
# Access Filter Package
# =============================================================================

from eventgate.filters.managed import MANAGED_GROUPS, ManagedRuleGroup, ManagedSubRule
from eventgate.filters.statements import Statement, parse_statement
from eventgate.filters.waf import (
    AccessFilter,
    FilterDecision,
    FilterOutcome,
    FilterRule,
    VisibilityRecorder,
    parse_access_filter,
    parse_filter_rule,
)

__all__ = [
    "MANAGED_GROUPS",
    "ManagedRuleGroup",
    "ManagedSubRule",
    "Statement",
    "parse_statement",
    "AccessFilter",
    "FilterDecision",
    "FilterOutcome",
    "FilterRule",
    "VisibilityRecorder",
    "parse_access_filter",
    "parse_filter_rule",
]
