# =============================================================================
# Managed Rule Groups
# =============================================================================
# A managed group is a named bundle of sub-rules, each with its own native
# action. Rules referencing a group may override individual sub-rule actions
# by name (e.g. force SizeRestrictions_BODY from BLOCK to COUNT).
# =============================================================================

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from eventgate.filters.statements import (
    ByteMatch,
    OrStatement,
    SizeConstraint,
    Statement,
    parse_statement,
)
from eventgate.runtime.errors import ConfigurationInvalid

ACTIONS = ("ALLOW", "BLOCK", "COUNT")


@dataclass(frozen=True)
class ManagedSubRule:
    name: str
    action: str
    statement: Statement


@dataclass(frozen=True)
class ManagedRuleGroup:
    name: str
    rules: Tuple[ManagedSubRule, ...]

    def rule_names(self) -> Tuple[str, ...]:
        return tuple(r.name for r in self.rules)


# =============================================================================
# BUILT-IN CATALOG
# =============================================================================

def _common_rule_set() -> ManagedRuleGroup:
    return ManagedRuleGroup(
        name="AWSManagedRulesCommonRuleSet",
        rules=(
            ManagedSubRule("NoUserAgent_HEADER", "BLOCK",
                           SizeConstraint("header:user-agent", "EQ", 0)),
            ManagedSubRule("SizeRestrictions_QUERYSTRING", "BLOCK",
                           SizeConstraint("query", "GT", 2048)),
            ManagedSubRule("SizeRestrictions_BODY", "BLOCK",
                           SizeConstraint("body", "GT", 8192)),
            ManagedSubRule("GenericLFI_URIPATH", "BLOCK",
                           ByteMatch("uri_path", "CONTAINS", "../")),
            ManagedSubRule("CrossSiteScripting_BODY", "BLOCK",
                           OrStatement([
                               ByteMatch("body", "CONTAINS", "<script", "LOWERCASE"),
                               ByteMatch("body", "CONTAINS", "javascript:", "LOWERCASE"),
                           ])),
        ),
    )


def _known_bad_inputs_rule_set() -> ManagedRuleGroup:
    return ManagedRuleGroup(
        name="AWSManagedRulesKnownBadInputsRuleSet",
        rules=(
            ManagedSubRule("JavaDeserializationRCE_BODY", "BLOCK",
                           ByteMatch("body", "CONTAINS", "rO0AB")),
            ManagedSubRule("Log4JRCE_HEADER", "BLOCK",
                           OrStatement([
                               ByteMatch("header:user-agent", "CONTAINS", "${jndi:", "LOWERCASE"),
                               ByteMatch("header:referer", "CONTAINS", "${jndi:", "LOWERCASE"),
                           ])),
            ManagedSubRule("Host_localhost_HEADER", "BLOCK",
                           ByteMatch("header:host", "STARTS_WITH", "localhost", "LOWERCASE")),
        ),
    )


MANAGED_GROUPS = {
    "AWSManagedRulesCommonRuleSet": _common_rule_set,
    "AWSManagedRulesKnownBadInputsRuleSet": _known_bad_inputs_rule_set,
}


def _parse_sub_rule(raw: Any, group_name: str) -> ManagedSubRule:
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str) or not raw.get("name"):
        raise ConfigurationInvalid(f"Managed group '{group_name}' sub-rule requires a 'name'")
    action = raw.get("action")
    if action not in ACTIONS:
        raise ConfigurationInvalid(f"Sub-rule '{raw['name']}' has invalid action '{action}'. Valid: {list(ACTIONS)}")
    return ManagedSubRule(raw["name"], action, parse_statement(raw.get("statement")))


def parse_managed_group(raw: Any) -> ManagedRuleGroup:
    """
    Resolve a managed group reference.

    Either a catalog name:
        {"name": "AWSManagedRulesCommonRuleSet"}
    or an inline group:
        {"name": "CustomSet", "rules": [{"name": "...", "action": "BLOCK", "statement": {...}}]}
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        raise ConfigurationInvalid("managedGroup requires a 'name'")

    name = raw["name"]
    inline = raw.get("rules")
    if inline is None:
        factory = MANAGED_GROUPS.get(name)
        if factory is None:
            raise ConfigurationInvalid(f"Unknown managed group '{name}'. Known: {sorted(MANAGED_GROUPS)}")
        return factory()

    if not isinstance(inline, list) or not inline:
        raise ConfigurationInvalid(f"Managed group '{name}' 'rules' must be a non-empty list")
    sub_rules = [_parse_sub_rule(r, name) for r in inline]
    names = [r.name for r in sub_rules]
    if len(set(names)) != len(names):
        raise ConfigurationInvalid(f"Managed group '{name}' has duplicate sub-rule names")
    return ManagedRuleGroup(name=name, rules=tuple(sub_rules))


def apply_overrides(group: ManagedRuleGroup, overrides: Dict[str, str]) -> Dict[str, str]:
    """Effective action per sub-rule after overrides."""
    unknown = set(overrides) - set(group.rule_names())
    if unknown:
        raise ConfigurationInvalid(f"Overrides name unknown sub-rules of '{group.name}': {sorted(unknown)}")
    return {r.name: overrides.get(r.name, r.action) for r in group.rules}
