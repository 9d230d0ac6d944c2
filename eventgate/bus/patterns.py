# =============================================================================
# Event Patterns
# =============================================================================
# EventBridge-style patterns over (account, source, detail-type). Each field
# is a tagged MatchPredicate: EXACT, ANY_OF or WILDCARD (field absent).
# =============================================================================

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from eventgate.runtime.envelope import Event
from eventgate.runtime.errors import ConfigurationInvalid

PATTERN_FIELDS = ("account", "source", "detail-type")

# Accepted spellings in configuration
_FIELD_ALIASES = {
    "account": "account",
    "source": "source",
    "detail-type": "detail-type",
    "detailType": "detail-type",
}


class PredicateKind(str, Enum):
    EXACT = "exact"
    ANY_OF = "any_of"
    WILDCARD = "wildcard"


@dataclass(frozen=True)
class MatchPredicate:
    kind: PredicateKind
    values: Tuple[str, ...] = ()

    @classmethod
    def exact(cls, value: str) -> "MatchPredicate":
        return cls(PredicateKind.EXACT, (value,))

    @classmethod
    def any_of(cls, values) -> "MatchPredicate":
        return cls(PredicateKind.ANY_OF, tuple(values))

    @classmethod
    def wildcard(cls) -> "MatchPredicate":
        return cls(PredicateKind.WILDCARD)

    def matches(self, value: Optional[str]) -> bool:
        if self.kind == PredicateKind.WILDCARD:
            return True
        if self.kind == PredicateKind.EXACT:
            return bool(self.values) and value == self.values[0]
        if self.kind == PredicateKind.ANY_OF:
            return value in self.values
        return False


_WILDCARD = MatchPredicate.wildcard()


@dataclass(frozen=True)
class EventPattern:
    """
    Conjunction of field predicates.

    A pattern with no constrained field never matches.
    """
    fields: Tuple[Tuple[str, MatchPredicate], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not any(p.kind != PredicateKind.WILDCARD for _, p in self.fields)

    def predicate(self, name: str) -> MatchPredicate:
        for field_name, predicate in self.fields:
            if field_name == name:
                return predicate
        return _WILDCARD

    def matches(self, event: Event) -> bool:
        if self.is_empty:
            return False
        return all(predicate.matches(event.value_of(name)) for name, predicate in self.fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: list(predicate.values)
            for name, predicate in self.fields
            if predicate.kind != PredicateKind.WILDCARD
        }


def _parse_predicate(field_name: str, value: Any) -> MatchPredicate:
    if isinstance(value, str):
        if not value:
            raise ConfigurationInvalid(f"Pattern field '{field_name}' is an empty string")
        return MatchPredicate.exact(value)

    if isinstance(value, (list, tuple)):
        if not value:
            raise ConfigurationInvalid(f"Pattern field '{field_name}' has an empty value list")
        if not all(isinstance(v, str) and v for v in value):
            raise ConfigurationInvalid(f"Pattern field '{field_name}' values must be non-empty strings")
        if len(value) == 1:
            return MatchPredicate.exact(value[0])
        return MatchPredicate.any_of(dict.fromkeys(value))

    raise ConfigurationInvalid(
        f"Pattern field '{field_name}' must be a string or list of strings, got {type(value).__name__}"
    )


def parse_pattern(raw: Any) -> EventPattern:
    """
    Build an EventPattern from configuration.

    Example:
        {"account": ["123456789012"], "source": ["university.apigw"]}

    Raises:
        ConfigurationInvalid: unknown field or malformed value
    """
    if not isinstance(raw, dict):
        raise ConfigurationInvalid(f"Event pattern must be an object, got {type(raw).__name__}")

    parsed: Dict[str, MatchPredicate] = {}
    for key, value in raw.items():
        field_name = _FIELD_ALIASES.get(key)
        if field_name is None:
            raise ConfigurationInvalid(
                f"Unsupported pattern field '{key}'. Valid fields: {list(PATTERN_FIELDS)}"
            )
        if field_name in parsed:
            raise ConfigurationInvalid(f"Pattern field '{field_name}' given twice")
        parsed[field_name] = _parse_predicate(field_name, value)

    return EventPattern(fields=tuple((name, parsed[name]) for name in PATTERN_FIELDS if name in parsed))
