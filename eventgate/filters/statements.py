# =============================================================================
# Access Filter Statements
# =============================================================================
# Request predicates in the WAF style. Each statement is a small class with a
# matches(request) method; parse_statement() builds them from configuration
# and rejects anything malformed at load time.
# =============================================================================

import ipaddress
from typing import Any, Callable, Dict, List, Tuple
from urllib.parse import urlencode

from eventgate.runtime.envelope import Request
from eventgate.runtime.errors import ConfigurationInvalid

POSITIONAL_CONSTRAINTS = ("EXACTLY", "STARTS_WITH", "ENDS_WITH", "CONTAINS")
TEXT_TRANSFORMS = ("NONE", "LOWERCASE")
COMPARISONS: Dict[str, Callable[[int, int], bool]] = {
    "EQ": lambda a, b: a == b,
    "NE": lambda a, b: a != b,
    "LT": lambda a, b: a < b,
    "LE": lambda a, b: a <= b,
    "GT": lambda a, b: a > b,
    "GE": lambda a, b: a >= b,
}
_SIMPLE_FIELDS = ("method", "uri_path", "query", "body")


def _validate_field(field: Any) -> str:
    if not isinstance(field, str):
        raise ConfigurationInvalid(f"Statement field must be a string, got {type(field).__name__}")
    if field in _SIMPLE_FIELDS:
        return field
    if field.startswith("header:") and len(field) > len("header:"):
        return field.lower()
    raise ConfigurationInvalid(f"Unsupported statement field '{field}'. Use {list(_SIMPLE_FIELDS)} or 'header:<name>'")


def field_bytes(request: Request, field: str) -> bytes:
    """Raw bytes of a request component."""
    if field == "body":
        return request.body
    if field == "method":
        return request.method.encode("utf-8")
    if field == "uri_path":
        return request.route_path.encode("utf-8")
    if field == "query":
        return urlencode(sorted(request.query.items())).encode("utf-8")
    return request.header(field[len("header:"):]).encode("utf-8")


class Statement:
    kind = "statement"

    def matches(self, request: Request) -> bool:
        raise NotImplementedError


class MatchAll(Statement):
    kind = "matchAll"

    def matches(self, request: Request) -> bool:
        return True


class ByteMatch(Statement):
    kind = "byteMatch"

    def __init__(self, field: str, positional: str, search: str, transform: str = "NONE"):
        self.field = field
        self.positional = positional
        self.transform = transform
        self.search = search.lower() if transform == "LOWERCASE" else search

    def matches(self, request: Request) -> bool:
        value = field_bytes(request, self.field).decode("utf-8", errors="replace")
        if self.transform == "LOWERCASE":
            value = value.lower()
        if self.positional == "EXACTLY":
            return value == self.search
        if self.positional == "STARTS_WITH":
            return value.startswith(self.search)
        if self.positional == "ENDS_WITH":
            return value.endswith(self.search)
        return self.search in value


class GeoMatch(Statement):
    kind = "geoMatch"

    def __init__(self, country_codes: Tuple[str, ...]):
        self.country_codes = frozenset(country_codes)

    def matches(self, request: Request) -> bool:
        return request.country in self.country_codes


class IpSetMatch(Statement):
    kind = "ipSet"

    def __init__(self, networks):
        self.networks = tuple(networks)

    def matches(self, request: Request) -> bool:
        try:
            address = ipaddress.ip_address(request.source_ip)
        except ValueError:
            return False
        return any(address in network for network in self.networks if network.version == address.version)


class SizeConstraint(Statement):
    kind = "sizeConstraint"

    def __init__(self, field: str, comparison: str, size: int):
        self.field = field
        self.comparison = comparison
        self.size = size

    def matches(self, request: Request) -> bool:
        return COMPARISONS[self.comparison](len(field_bytes(request, self.field)), self.size)


class AndStatement(Statement):
    kind = "and"

    def __init__(self, statements: List[Statement]):
        self.statements = tuple(statements)

    def matches(self, request: Request) -> bool:
        return all(s.matches(request) for s in self.statements)


class OrStatement(Statement):
    kind = "or"

    def __init__(self, statements: List[Statement]):
        self.statements = tuple(statements)

    def matches(self, request: Request) -> bool:
        return any(s.matches(request) for s in self.statements)


class NotStatement(Statement):
    kind = "not"

    def __init__(self, statement: Statement):
        self.statement = statement

    def matches(self, request: Request) -> bool:
        return not self.statement.matches(request)


# =============================================================================
# PARSING
# =============================================================================

def _require(body: Dict[str, Any], key: str, kind: str) -> Any:
    if key not in body:
        raise ConfigurationInvalid(f"{kind} statement requires '{key}'")
    return body[key]


def _parse_byte_match(body: Dict[str, Any]) -> Statement:
    field = _validate_field(_require(body, "field", "byteMatch"))
    positional = body.get("positional", "CONTAINS")
    if positional not in POSITIONAL_CONSTRAINTS:
        raise ConfigurationInvalid(f"Invalid positional constraint '{positional}'. Valid: {list(POSITIONAL_CONSTRAINTS)}")
    search = _require(body, "search", "byteMatch")
    if not isinstance(search, str) or (not search and positional != "EXACTLY"):
        raise ConfigurationInvalid("byteMatch 'search' must be a non-empty string")
    transform = body.get("transform", "NONE")
    if transform not in TEXT_TRANSFORMS:
        raise ConfigurationInvalid(f"Invalid text transform '{transform}'. Valid: {list(TEXT_TRANSFORMS)}")
    return ByteMatch(field, positional, search, transform)


def _parse_geo_match(body: Dict[str, Any]) -> Statement:
    codes = _require(body, "countryCodes", "geoMatch")
    if not isinstance(codes, list) or not codes or not all(isinstance(c, str) and len(c) == 2 for c in codes):
        raise ConfigurationInvalid("geoMatch 'countryCodes' must be a non-empty list of ISO alpha-2 codes")
    return GeoMatch(tuple(c.upper() for c in codes))


def _parse_ip_set(body: Dict[str, Any]) -> Statement:
    addresses = _require(body, "addresses", "ipSet")
    if not isinstance(addresses, list) or not addresses:
        raise ConfigurationInvalid("ipSet 'addresses' must be a non-empty list of CIDR blocks")
    try:
        networks = [ipaddress.ip_network(a, strict=False) for a in addresses]
    except (TypeError, ValueError) as e:
        raise ConfigurationInvalid(f"ipSet contains an invalid address: {e}")
    return IpSetMatch(networks)


def _parse_size_constraint(body: Dict[str, Any]) -> Statement:
    field = _validate_field(_require(body, "field", "sizeConstraint"))
    comparison = _require(body, "comparison", "sizeConstraint")
    if comparison not in COMPARISONS:
        raise ConfigurationInvalid(f"Invalid comparison '{comparison}'. Valid: {list(COMPARISONS)}")
    size = _require(body, "size", "sizeConstraint")
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        raise ConfigurationInvalid("sizeConstraint 'size' must be a non-negative integer")
    return SizeConstraint(field, comparison, size)


def _parse_list(body: Any, kind: str) -> List[Statement]:
    if not isinstance(body, list) or len(body) < 2:
        raise ConfigurationInvalid(f"'{kind}' requires a list of at least two statements")
    return [parse_statement(s) for s in body]


def parse_statement(raw: Any) -> Statement:
    """
    Build a Statement from a single-key object.

    Example:
        {"byteMatch": {"field": "uri_path", "positional": "STARTS_WITH", "search": "/admin"}}

    Managed groups are not statements; they are handled by the rule parser.
    """
    if not isinstance(raw, dict) or len(raw) != 1:
        raise ConfigurationInvalid(f"Statement must be an object with exactly one key, got {raw!r}")

    (kind, body), = raw.items()

    if kind == "matchAll":
        return MatchAll()
    if kind == "and":
        return AndStatement(_parse_list(body, kind))
    if kind == "or":
        return OrStatement(_parse_list(body, kind))
    if kind == "not":
        return NotStatement(parse_statement(body))

    if not isinstance(body, dict):
        raise ConfigurationInvalid(f"'{kind}' statement body must be an object")

    if kind == "byteMatch":
        return _parse_byte_match(body)
    if kind == "geoMatch":
        return _parse_geo_match(body)
    if kind == "ipSet":
        return _parse_ip_set(body)
    if kind == "sizeConstraint":
        return _parse_size_constraint(body)

    raise ConfigurationInvalid(f"Unknown statement type '{kind}'")
