# =============================================================================
# Configuration Snapshot
# =============================================================================
# The whole routing/filtering/permission configuration is loaded once at
# start-up into an immutable PipelineConfig and shared read-only by every
# request. Anything malformed raises ConfigurationInvalid here, never at
# request time.
#
# Sources (first match wins):
# - EVENTGATE_CONFIG_PATH: path to a JSON document
# - EVENTGATE_CONFIG_JSON: inline JSON document
# =============================================================================

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from eventgate.auth.authorizer import Authorizer, parse_authorizer
from eventgate.bus.router import EventRouter, Rule, parse_rule
from eventgate.filters.waf import AccessFilter, parse_access_filter
from eventgate.runtime.consumers import ConsumerRef, parse_consumer
from eventgate.runtime.deps import Deps, create_deps
from eventgate.runtime.errors import ConfigurationInvalid

logger = logging.getLogger(__name__)

DEFAULT_DETAIL_TYPE_FIELD = "DetailType"
DEFAULT_DETAIL_TYPE = "DetailType"
_ROUTE_SEGMENT_RE = re.compile(r"^\{[A-Za-z0-9_]+\+?\}$")


@dataclass(frozen=True)
class DirectSurfaceConfig:
    """How the direct bus surface builds events."""
    source: str
    detail_type_field: Optional[str] = DEFAULT_DETAIL_TYPE_FIELD
    detail_type_default: str = DEFAULT_DETAIL_TYPE

    def resolve_detail_type(self, body: Mapping[str, Any]) -> str:
        if self.detail_type_field:
            value = body.get(self.detail_type_field)
            if isinstance(value, str) and value:
                return value
        return self.detail_type_default


@dataclass(frozen=True)
class ProxyRoute:
    method: str
    path: str
    consumer_id: str

    def matches(self, method: str, path: str) -> bool:
        if self.method not in ("ANY", method.upper()):
            return False
        return match_path(self.path, path)


def match_path(template: str, path: str) -> bool:
    """Match '/reports/{id}' or '/files/{proxy+}' style templates."""
    expected = [s for s in template.strip("/").split("/") if s]
    actual = [s for s in path.strip("/").split("/") if s]
    for i, segment in enumerate(expected):
        if segment.startswith("{") and segment.endswith("+}"):
            return len(actual) > i
        if i >= len(actual):
            return False
        if segment.startswith("{") and segment.endswith("}"):
            continue
        if segment != actual[i]:
            return False
    return len(actual) == len(expected)


@dataclass(frozen=True)
class PipelineConfig:
    account_id: str
    region: str
    access_filter: AccessFilter
    authorizer: Authorizer
    direct: DirectSurfaceConfig
    consumers: Mapping[str, ConsumerRef]
    rules: Tuple[Rule, ...]
    router: EventRouter
    routes: Tuple[ProxyRoute, ...] = ()
    audit_table_name: str = ""
    audit_retention_days: int = 60
    dispatch_max_workers: int = 8
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def route_for(self, method: str, path: str) -> Optional[ConsumerRef]:
        for route in self.routes:
            if route.matches(method, path):
                return self.consumers[route.consumer_id]
        return None


# =============================================================================
# PARSING
# =============================================================================

def _parse_direct(raw: Any) -> DirectSurfaceConfig:
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("'direct' section must be an object")
    source = raw.get("source")
    if not isinstance(source, str) or not source:
        raise ConfigurationInvalid("direct.source is required")

    detail_type = raw.get("detailType", {"bodyField": DEFAULT_DETAIL_TYPE_FIELD})
    if isinstance(detail_type, str):
        if not detail_type:
            raise ConfigurationInvalid("direct.detailType must not be empty")
        return DirectSurfaceConfig(source=source, detail_type_field=None, detail_type_default=detail_type)
    if not isinstance(detail_type, dict):
        raise ConfigurationInvalid("direct.detailType must be a string or an object")

    static = detail_type.get("static")
    if static is not None:
        if not isinstance(static, str) or not static:
            raise ConfigurationInvalid("direct.detailType.static must be a non-empty string")
        return DirectSurfaceConfig(source=source, detail_type_field=None, detail_type_default=static)

    body_field = detail_type.get("bodyField", DEFAULT_DETAIL_TYPE_FIELD)
    default = detail_type.get("default", DEFAULT_DETAIL_TYPE)
    if not isinstance(body_field, str) or not body_field or not isinstance(default, str) or not default:
        raise ConfigurationInvalid("direct.detailType.bodyField and default must be non-empty strings")
    return DirectSurfaceConfig(source=source, detail_type_field=body_field, detail_type_default=default)


def _parse_route(raw: Any, consumers: Mapping[str, ConsumerRef]) -> ProxyRoute:
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("Route definition must be an object")
    method = str(raw.get("method", "POST")).upper()
    path = raw.get("path")
    consumer_id = raw.get("consumer")
    if not isinstance(path, str) or not path.startswith("/"):
        raise ConfigurationInvalid(f"Route path must start with '/', got {path!r}")
    for segment in path.strip("/").split("/"):
        if "{" in segment and not _ROUTE_SEGMENT_RE.match(segment):
            raise ConfigurationInvalid(f"Route path '{path}' has a malformed parameter segment '{segment}'")
    if consumer_id not in consumers:
        raise ConfigurationInvalid(f"Route {method} {path} is bound to unknown consumer {consumer_id!r}")
    return ProxyRoute(method=method, path=path, consumer_id=consumer_id)


def _positive_int(value: Any, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigurationInvalid(f"{name} must be a positive integer")
    return value


def load_config(raw: Any, deps: Optional[Deps] = None) -> PipelineConfig:
    """Validate a configuration document and build the snapshot."""
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("Configuration document must be a JSON object")

    deps = deps or create_deps()
    env = deps.config

    account_id = raw.get("accountId") or env["ACCOUNT_ID"]
    if not account_id:
        raise ConfigurationInvalid("accountId is required (or set EVENTGATE_ACCOUNT_ID)")
    region = raw.get("region") or deps.region

    consumers: Dict[str, ConsumerRef] = {}
    for entry in raw.get("consumers", []) or []:
        consumer = parse_consumer(entry, deps)
        if consumer.id in consumers:
            raise ConfigurationInvalid(f"Duplicate consumer id '{consumer.id}'")
        consumers[consumer.id] = consumer

    rules = tuple(parse_rule(r) for r in raw.get("rules", []) or [])
    names = [r.name for r in rules]
    if len(set(names)) != len(names):
        raise ConfigurationInvalid("Rule names must be unique")

    # grants must name a rule that exists and targets the consumer
    for consumer in consumers.values():
        for grant in consumer.grants:
            rule = next((r for r in rules if r.name == grant.rule), None)
            if rule is None:
                raise ConfigurationInvalid(f"Consumer '{consumer.id}' grant names unknown rule '{grant.rule}'")
            if consumer.id not in rule.targets:
                raise ConfigurationInvalid(
                    f"Consumer '{consumer.id}' grant names rule '{grant.rule}' which does not target it"
                )

    if "filter" not in raw:
        raise ConfigurationInvalid("'filter' section with an explicit defaultAction is required")

    audit = raw.get("audit", {}) or {}
    if not isinstance(audit, dict):
        raise ConfigurationInvalid("'audit' section must be an object")

    config = PipelineConfig(
        account_id=str(account_id),
        region=region,
        access_filter=parse_access_filter(raw["filter"]),
        authorizer=parse_authorizer(raw.get("auth"), deps, region, env["AUTHORIZER_RESULT_TTL"]),
        direct=_parse_direct(raw.get("direct")),
        consumers=consumers,
        rules=rules,
        router=EventRouter(rules, consumers),
        routes=tuple(_parse_route(r, consumers) for r in raw.get("routes", []) or []),
        audit_table_name=audit.get("tableName") or env["AUDIT_TABLE_NAME"],
        audit_retention_days=_positive_int(audit.get("retentionDays", env["AUDIT_RETENTION_DAYS"]),
                                           "audit.retentionDays"),
        dispatch_max_workers=_positive_int(raw.get("dispatchMaxWorkers", env["DISPATCH_MAX_WORKERS"]),
                                           "dispatchMaxWorkers"),
        raw=raw,
    )
    logger.info(
        f"Loaded configuration: {len(config.access_filter.rules)} filter rules, "
        f"{len(config.rules)} bus rules, {len(config.consumers)} consumers, {len(config.routes)} routes"
    )
    return config


def load_config_from_env(deps: Optional[Deps] = None) -> PipelineConfig:
    """Load the snapshot from EVENTGATE_CONFIG_PATH or EVENTGATE_CONFIG_JSON."""
    path = os.environ.get("EVENTGATE_CONFIG_PATH", "")
    inline = os.environ.get("EVENTGATE_CONFIG_JSON", "")

    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except OSError as e:
            raise ConfigurationInvalid(f"Cannot read configuration file {path}: {e}")
        except json.JSONDecodeError as e:
            raise ConfigurationInvalid(f"Configuration file {path} is not valid JSON: {e}")
    elif inline:
        try:
            raw = json.loads(inline)
        except json.JSONDecodeError as e:
            raise ConfigurationInvalid(f"EVENTGATE_CONFIG_JSON is not valid JSON: {e}")
    else:
        raise ConfigurationInvalid("Set EVENTGATE_CONFIG_PATH or EVENTGATE_CONFIG_JSON")

    return load_config(raw, deps)
