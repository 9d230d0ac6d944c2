# =============================================================================
# Envelope - Request and Event Containers
# =============================================================================
# Inbound calls are normalized into a Request; admitted direct-bus requests
# become an immutable Event, the unit the bus routes and consumers receive.
# =============================================================================

import copy
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


COUNTRY_HEADER = "cloudfront-viewer-country"


class Surface:
    """Ingress surface identifiers."""
    DIRECT = "direct"
    PROXY = "proxy"


@dataclass
class Request:
    """
    Normalized inbound HTTP call.

    Attributes:
        method: HTTP method, upper-cased
        path: Path as the client sent it (includes the stage, used for signatures)
        route_path: Path with the stage stripped (used for proxy routing)
        headers: Headers with lower-cased names
        query: Query string parameters
        body: Raw body bytes
        source_ip: Caller network address
        request_id: Unique identifier for this call
        surface: Ingress surface the call arrived on
        raw_event: Original API Gateway event, forwarded verbatim by the proxy
    """
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    source_ip: str = ""
    query: Dict[str, str] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    surface: str = Surface.DIRECT
    route_path: str = ""
    raw_event: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.method = (self.method or "").upper()
        self.headers = {str(k).lower(): str(v) for k, v in (self.headers or {}).items()}
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if not self.route_path:
            self.route_path = self.path

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)

    @property
    def country(self) -> str:
        return self.header(COUNTRY_HEADER).upper()

    @property
    def host(self) -> str:
        return self.header("host")

    def json_body(self) -> Any:
        """Decode the body as JSON; raises ValueError on malformed input."""
        if not self.body:
            raise ValueError("empty body")
        return json.loads(self.body.decode("utf-8"))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """
    Normalized unit of routable work.

    account and source are mandatory; they are the primary match keys.
    """
    account: str
    source: str
    detail_type: str
    detail: Any
    received_at: datetime = field(default_factory=_utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    region: str = ""

    def __post_init__(self):
        if not self.account:
            raise ValueError("event account is required")
        if not self.source:
            raise ValueError("event source is required")

    @classmethod
    def create(
        cls,
        account: str,
        source: str,
        detail_type: str,
        detail: Any,
        region: str = "",
        received_at: Optional[datetime] = None,
    ) -> "Event":
        """Build an event holding its own copy of detail."""
        return cls(
            account=account,
            source=source,
            detail_type=detail_type,
            detail=copy.deepcopy(detail),
            received_at=received_at or _utc_now(),
            region=region,
        )

    def value_of(self, name: str) -> Optional[str]:
        """Value of a routable field by pattern key."""
        if name == "account":
            return self.account
        if name == "source":
            return self.source
        if name == "detail-type":
            return self.detail_type
        return None

    def to_dict(self) -> Dict[str, Any]:
        """EventBridge-shaped payload delivered to consumers."""
        return {
            "version": "0",
            "id": self.id,
            "detail-type": self.detail_type,
            "source": self.source,
            "account": self.account,
            "time": self.received_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "region": self.region,
            "resources": [],
            "detail": copy.deepcopy(self.detail),
        }
