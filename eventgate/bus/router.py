# =============================================================================
# Event Bus Router
# =============================================================================
# Matches events against the static rule set. Every matching rule fires; the
# target lists are unioned. Pure in-memory computation, safe to call from any
# number of threads since the rule set is never mutated.
# =============================================================================

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from eventgate.bus.patterns import EventPattern, parse_pattern
from eventgate.runtime.consumers import ConsumerRef
from eventgate.runtime.envelope import Event
from eventgate.runtime.errors import ConfigurationInvalid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rule:
    name: str
    pattern: EventPattern
    targets: Tuple[str, ...]

    def matches(self, event: Event) -> bool:
        return self.pattern.matches(event)


@dataclass(frozen=True)
class RouteTarget:
    """A consumer selected for an event, with every rule that selected it."""
    consumer: ConsumerRef
    rules: Tuple[str, ...]


class EventRouter:
    """Routes events to consumers by attribute pattern."""

    def __init__(self, rules: Iterable[Rule], consumers: Mapping[str, ConsumerRef]):
        self._rules = tuple(rules)
        self._consumers = dict(consumers)
        for rule in self._rules:
            if rule.pattern.is_empty:
                logger.warning(f"Rule '{rule.name}' has an empty pattern and will never match")
            for target in rule.targets:
                if target not in self._consumers:
                    raise ConfigurationInvalid(f"Rule '{rule.name}' targets unknown consumer '{target}'")

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    def match(self, event: Event) -> List[RouteTarget]:
        """Union of targets of all rules matching the event, ordered by consumer id."""
        selected: Dict[str, List[str]] = {}
        for rule in self._rules:
            if not rule.matches(event):
                continue
            for target in rule.targets:
                selected.setdefault(target, []).append(rule.name)

        if not selected:
            logger.info(f"No rule matched event source={event.source} detail-type={event.detail_type}")
            return []

        return [
            RouteTarget(consumer=self._consumers[consumer_id], rules=tuple(sorted(set(rule_names))))
            for consumer_id, rule_names in sorted(selected.items())
        ]

    def route(self, event: Event) -> List[ConsumerRef]:
        return [target.consumer for target in self.match(event)]


def parse_rule(raw: Any) -> Rule:
    """
    Build a Rule from configuration.

    Example:
        {"name": "university-events", "pattern": {"source": ["university.apigw"]},
         "targets": ["grades"]}
    """
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("Rule definition must be an object")

    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise ConfigurationInvalid("Rule requires a string 'name'")

    targets = raw.get("targets")
    if not isinstance(targets, list) or not all(isinstance(t, str) and t for t in targets):
        raise ConfigurationInvalid(f"Rule '{name}' requires 'targets' as a list of consumer ids")

    try:
        pattern = parse_pattern(raw.get("pattern"))
    except ConfigurationInvalid as e:
        raise ConfigurationInvalid(f"Rule '{name}': {e.message}")

    return Rule(name=name, pattern=pattern, targets=tuple(dict.fromkeys(targets)))
