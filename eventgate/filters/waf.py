# =============================================================================
# Access Filter
# =============================================================================
# Ordered request-admission layer evaluated before authorization.
#
# - Rules run in ascending priority; the first decisive ALLOW/BLOCK wins
# - COUNT is recorded and evaluation continues past it
# - An optional scope-down statement gates a rule; outside scope it is skipped
# - Managed groups take their action from sub-rules, with per-name overrides
# - The default action is mandatory configuration
# =============================================================================

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from eventgate.filters.managed import ACTIONS, ManagedRuleGroup, apply_overrides, parse_managed_group
from eventgate.filters.statements import Statement, parse_statement
from eventgate.runtime.envelope import Request
from eventgate.runtime.errors import ConfigurationInvalid

logger = logging.getLogger(__name__)

DECISIVE_ACTIONS = ("ALLOW", "BLOCK")
_ACTION_COUNTERS = {"ALLOW": "Allowed", "BLOCK": "Blocked", "COUNT": "Counted"}


class FilterOutcome(str, Enum):
    ALLOW = "ALLOW"
    BLOCK = "BLOCK"
    COUNT_THEN_ALLOW = "COUNT_THEN_ALLOW"


@dataclass(frozen=True)
class FilterDecision:
    action: str
    terminating_rule: Optional[str] = None
    counted: Tuple[str, ...] = ()

    @property
    def outcome(self) -> FilterOutcome:
        if self.action == "BLOCK":
            return FilterOutcome.BLOCK
        if self.counted:
            return FilterOutcome.COUNT_THEN_ALLOW
        return FilterOutcome.ALLOW

    @property
    def blocked(self) -> bool:
        return self.action == "BLOCK"


@dataclass(frozen=True)
class FilterRule:
    name: str
    priority: int
    action: Optional[str] = None
    statement: Optional[Statement] = None
    group: Optional[ManagedRuleGroup] = None
    group_actions: Dict[str, str] = field(default_factory=dict)
    scope_down: Optional[Statement] = None
    visibility: bool = False
    metric_name: str = ""

    def in_scope(self, request: Request) -> bool:
        return self.scope_down is None or self.scope_down.matches(request)

    def evaluate(self, request: Request) -> Tuple[Optional[str], List[str]]:
        """
        Returns (decisive action or None, counted labels).
        """
        if not self.in_scope(request):
            return None, []

        if self.group is None:
            if not self.statement.matches(request):
                return None, []
            if self.action == "COUNT":
                return None, [self.name]
            return self.action, []

        counted: List[str] = []
        for sub_rule in self.group.rules:
            if not sub_rule.statement.matches(request):
                continue
            label = f"{self.name}/{sub_rule.name}"
            effective = self.group_actions[sub_rule.name]
            if self.action == "COUNT" or effective == "COUNT":
                counted.append(label)
                continue
            return effective, counted
        return None, counted


class VisibilityRecorder:
    """Per-rule evaluation counters, optionally flushed to CloudWatch."""

    def __init__(self):
        self._counts: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def record(self, metric_name: str, matched: bool, action: Optional[str]) -> None:
        with self._lock:
            counts = self._counts.setdefault(metric_name, {"Evaluated": 0, "Matched": 0})
            counts["Evaluated"] += 1
            if matched:
                counts["Matched"] += 1
            if action:
                key = _ACTION_COUNTERS[action]
                counts[key] = counts.get(key, 0) + 1
        logger.debug(f"filter metric={metric_name} matched={matched} action={action}")

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {name: dict(counts) for name, counts in self._counts.items()}

    def flush(self, cloudwatch, namespace: str) -> int:
        """Publish and reset counters; returns the number of datapoints sent."""
        with self._lock:
            counts, self._counts = self._counts, {}

        data = [
            {
                "MetricName": f"{kind}Requests",
                "Dimensions": [{"Name": "Rule", "Value": metric_name}],
                "Value": value,
                "Unit": "Count",
            }
            for metric_name, per_kind in counts.items()
            for kind, value in per_kind.items()
        ]
        for start in range(0, len(data), 20):
            try:
                cloudwatch.put_metric_data(Namespace=namespace, MetricData=data[start:start + 20])
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Failed to publish access filter metrics: {e}")
        return len(data)


class AccessFilter:
    """Evaluates the ordered FilterRule set against each request."""

    def __init__(self, rules: List[FilterRule], default_action: str,
                 visibility: Optional[VisibilityRecorder] = None):
        if default_action not in DECISIVE_ACTIONS:
            raise ConfigurationInvalid(f"Access filter default action must be one of {list(DECISIVE_ACTIONS)}")
        priorities = [r.priority for r in rules]
        if len(set(priorities)) != len(priorities):
            raise ConfigurationInvalid("Access filter rule priorities must be unique")
        self.rules = tuple(sorted(rules, key=lambda r: r.priority))
        self.default_action = default_action
        self.visibility = visibility or VisibilityRecorder()

    def evaluate(self, request: Request) -> FilterDecision:
        counted: List[str] = []
        for rule in self.rules:
            action, rule_counted = rule.evaluate(request)
            counted.extend(rule_counted)

            if rule.visibility:
                self.visibility.record(rule.metric_name, bool(action or rule_counted),
                                       action or ("COUNT" if rule_counted else None))

            if action in DECISIVE_ACTIONS:
                if counted:
                    logger.info(f"Access filter counted {counted} before {action} by '{rule.name}'")
                return FilterDecision(action=action, terminating_rule=rule.name, counted=tuple(counted))

        if counted:
            logger.info(f"Access filter counted {counted}; default action {self.default_action}")
        return FilterDecision(action=self.default_action, terminating_rule=None, counted=tuple(counted))


# =============================================================================
# CONFIGURATION
# =============================================================================

def parse_filter_rule(raw: Any) -> FilterRule:
    """
    Build a FilterRule.

    Example:
        {"name": "block-admin", "priority": 1, "action": "BLOCK",
         "statement": {"byteMatch": {"field": "uri_path", "positional": "STARTS_WITH", "search": "/admin"}},
         "scopeDown": {"geoMatch": {"countryCodes": ["US"]}},
         "visibility": {"metrics": true, "metricName": "BlockAdmin"}}

        {"name": "common", "priority": 2,
         "statement": {"managedGroup": {"name": "AWSManagedRulesCommonRuleSet"}},
         "overrides": [{"name": "SizeRestrictions_BODY", "action": "COUNT"}]}
    """
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("Filter rule must be an object")

    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise ConfigurationInvalid("Filter rule requires a string 'name'")

    priority = raw.get("priority")
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise ConfigurationInvalid(f"Filter rule '{name}' requires an integer 'priority'")

    statement_raw = raw.get("statement")
    if statement_raw is None:
        raise ConfigurationInvalid(f"Filter rule '{name}' requires a 'statement'")

    visibility_raw = raw.get("visibility") or {}
    if not isinstance(visibility_raw, dict):
        raise ConfigurationInvalid(f"Filter rule '{name}' 'visibility' must be an object")

    try:
        scope_down = parse_statement(raw["scopeDown"]) if raw.get("scopeDown") is not None else None
        action = raw.get("action")
        overrides_raw = raw.get("overrides") or []

        if isinstance(statement_raw, dict) and "managedGroup" in statement_raw:
            group = parse_managed_group(statement_raw["managedGroup"])
            if action not in (None, "COUNT"):
                raise ConfigurationInvalid("managed group rules accept only 'COUNT' as a rule-level action")
            overrides = {}
            for override in overrides_raw:
                if not isinstance(override, dict) or override.get("action") not in ACTIONS:
                    raise ConfigurationInvalid(f"invalid override {override!r}")
                overrides[override.get("name")] = override["action"]
            return FilterRule(
                name=name, priority=priority, action=action, group=group,
                group_actions=apply_overrides(group, overrides), scope_down=scope_down,
                visibility=bool(visibility_raw.get("metrics")),
                metric_name=visibility_raw.get("metricName") or name,
            )

        if action not in ACTIONS:
            raise ConfigurationInvalid(f"action must be one of {list(ACTIONS)}, got {action!r}")
        if overrides_raw:
            raise ConfigurationInvalid("overrides are only valid on managed group rules")
        return FilterRule(
            name=name, priority=priority, action=action, statement=parse_statement(statement_raw),
            scope_down=scope_down, visibility=bool(visibility_raw.get("metrics")),
            metric_name=visibility_raw.get("metricName") or name,
        )
    except ConfigurationInvalid as e:
        raise ConfigurationInvalid(f"Filter rule '{name}': {e.message}")


def parse_access_filter(raw: Any, visibility: Optional[VisibilityRecorder] = None) -> AccessFilter:
    """Build the AccessFilter from {"defaultAction": ..., "rules": [...]}."""
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("'filter' section must be an object")
    if "defaultAction" not in raw:
        raise ConfigurationInvalid("Access filter requires an explicit 'defaultAction'")
    rules = raw.get("rules", [])
    if not isinstance(rules, list):
        raise ConfigurationInvalid("Access filter 'rules' must be a list")
    parsed = [parse_filter_rule(r) for r in rules]
    names = [r.name for r in parsed]
    if len(set(names)) != len(names):
        raise ConfigurationInvalid("Access filter rule names must be unique")
    return AccessFilter(parsed, raw["defaultAction"], visibility=visibility)
