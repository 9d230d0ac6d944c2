# =============================================================================
# Ingress Pipeline
# =============================================================================
# Wires the stages together for both ingress surfaces:
#
#   direct bus:  filter -> authorize -> build Event -> route -> dispatch (background)
#   proxy:       filter -> authorize -> route lookup -> synchronous consumer call
#
# Every per-request error is resolved to an HTTP response here. Each stage
# transition is appended to the audit sink.
# =============================================================================

import json
import logging
from typing import Any, Dict, Optional

from eventgate.audit.sink import AuditSink, DynamoAuditSink, MemoryAuditSink, Outcome, Stage
from eventgate.auth.decision import AuthDecision
from eventgate.filters.waf import FilterDecision
from eventgate.runtime.config import PipelineConfig, load_config_from_env
from eventgate.runtime.deps import Deps, get_deps
from eventgate.runtime.dispatch import Dispatcher
from eventgate.runtime.envelope import Event, Request, Surface
from eventgate.runtime.errors import (
    AuthDenied,
    ConsumerInvocationFailed,
    EventgateError,
    FilterBlocked,
    MalformedRequest,
    MethodNotAllowed,
    RouteNotFound,
)
from eventgate.runtime.parse_event import parse_event

logger = logging.getLogger(__name__)


def api_response(data: Dict[str, Any], status_code: int = 200) -> Dict[str, Any]:
    """Format response for API Gateway."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Headers": "Content-Type,Authorization,X-Amz-Date,X-Amz-Content-Sha256",
            "Access-Control-Allow-Methods": "POST,OPTIONS",
        },
        "body": json.dumps(data, ensure_ascii=False, default=str),
    }


def _error_body(error: EventgateError, request_id: str) -> Dict[str, Any]:
    # filter and auth rejections never say which check failed
    if isinstance(error, FilterBlocked):
        message = "Forbidden"
    elif isinstance(error, AuthDenied):
        message = "Forbidden" if error.credentials_presented else "Unauthorized"
    else:
        message = error.message or type(error).__name__
    return {"error": message, "requestId": request_id}


def consumer_response(result: Dict[str, Any]) -> Dict[str, Any]:
    """Pass a consumer's proxy response through with its status and body."""
    if "statusCode" not in result:
        return api_response(result, 200)
    response = {
        "statusCode": int(result["statusCode"]),
        "headers": dict(result.get("headers") or {}),
        "body": result.get("body", ""),
    }
    if not isinstance(response["body"], str):
        response["body"] = json.dumps(response["body"], ensure_ascii=False, default=str)
    if result.get("isBase64Encoded"):
        response["isBase64Encoded"] = True
    return response


class Pipeline:
    def __init__(self, config: PipelineConfig, audit: AuditSink, dispatcher: Dispatcher,
                 deps: Optional[Deps] = None):
        self.config = config
        self.audit = audit
        self.dispatcher = dispatcher
        self.deps = deps

    # ==========================================================================
    # Stages
    # ==========================================================================

    def admit(self, request: Request) -> FilterDecision:
        """Run the access filter; raises FilterBlocked on BLOCK."""
        decision = self.config.access_filter.evaluate(request)
        if decision.counted:
            self.audit.record(request.request_id, Stage.FILTER, Outcome.COUNTED, rules=list(decision.counted))
        if decision.blocked:
            logger.warning(f"Request {request.request_id} blocked by {decision.terminating_rule or 'default action'}")
            self.audit.record(request.request_id, Stage.FILTER, Outcome.BLOCKED,
                              rule=decision.terminating_rule or "", sourceIp=request.source_ip)
            raise FilterBlocked(decision.terminating_rule or "default")
        self.audit.record(request.request_id, Stage.FILTER, Outcome.ALLOWED, rule=decision.terminating_rule or "")
        return decision

    def authorize(self, request: Request) -> AuthDecision:
        """Establish caller identity; raises AuthDenied on deny."""
        decision = self.config.authorizer.authorize(request)
        if not decision.allow:
            self.audit.record(request.request_id, Stage.AUTHORIZE, Outcome.DENIED,
                              strategy=decision.strategy, reason=decision.reason)
            raise AuthDenied(decision, credentials_presented=decision.credentials_presented)
        self.audit.record(request.request_id, Stage.AUTHORIZE, Outcome.AUTHORIZED,
                          strategy=decision.strategy, principal=decision.principal)
        return decision

    def build_event(self, request: Request) -> Event:
        """Construct the Event from a direct bus body {"Detail": ...}."""
        try:
            body = request.json_body()
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedRequest(f"Request body is not valid JSON: {e}")
        if not isinstance(body, dict):
            raise MalformedRequest("Request body must be a JSON object")
        if "Detail" not in body:
            raise MalformedRequest("Request body requires a 'Detail' field")

        direct = self.config.direct
        return Event.create(
            account=self.config.account_id,
            source=direct.source,
            detail_type=direct.resolve_detail_type(body),
            detail=body["Detail"],
            region=self.config.region,
        )

    # ==========================================================================
    # Surfaces
    # ==========================================================================

    def handle_direct(self, request: Request) -> Dict[str, Any]:
        """Direct bus surface; the acknowledgement never reflects dispatch outcome."""
        if request.method != "POST":
            raise MethodNotAllowed(f"Direct bus surface accepts POST only, got {request.method}")
        self.admit(request)
        self.authorize(request)
        event = self.build_event(request)

        targets = self.config.router.match(event)
        if targets:
            self.audit.record(request.request_id, Stage.ROUTE, Outcome.MATCHED, eventId=event.id,
                              consumers=[t.consumer.id for t in targets])
            self.dispatcher.submit(event, targets, request.request_id)
        else:
            self.audit.record(request.request_id, Stage.ROUTE, Outcome.NO_RULE_MATCHED, eventId=event.id,
                              source=event.source, detailType=event.detail_type)

        return api_response({"message": "accepted", "requestId": request.request_id}, 200)

    def handle_proxy(self, request: Request) -> Dict[str, Any]:
        """Proxied compute surface; returns the bound consumer's response verbatim."""
        self.admit(request)
        self.authorize(request)

        consumer = self.config.route_for(request.method, request.route_path)
        if consumer is None:
            raise RouteNotFound(f"No route for {request.method} {request.route_path}")

        try:
            result = consumer.call(request.raw_event)
        except ConsumerInvocationFailed as e:
            logger.error(f"Proxy consumer {consumer.id} failed: {e.message}")
            self.audit.record(request.request_id, Stage.INVOKE, Outcome.FAILED, consumer=consumer.id,
                              error=e.message)
            raise
        response = consumer_response(result)
        self.audit.record(request.request_id, Stage.INVOKE, Outcome.SUCCEEDED, consumer=consumer.id,
                          statusCode=response["statusCode"])
        return response

    def handle(self, event: Dict[str, Any], surface: str) -> Dict[str, Any]:
        """Parse an API Gateway event and run it through a surface."""
        try:
            request = parse_event(event, surface)
        except MalformedRequest as e:
            logger.warning(f"Unparseable event: {e.message}")
            return api_response({"error": e.message}, e.status_code)

        logger.info(f"{surface} {request.method} {request.route_path} requestId={request.request_id}")
        try:
            if surface == Surface.DIRECT:
                return self.handle_direct(request)
            return self.handle_proxy(request)
        except EventgateError as e:
            logger.info(f"Request {request.request_id} rejected with {e.status_code}: {type(e).__name__}")
            return api_response(_error_body(e, request.request_id), e.status_code)
        except Exception as e:
            logger.exception(f"Unhandled error for request {request.request_id}: {e}")
            return api_response({"error": "Internal error", "requestId": request.request_id}, 500)

    def flush_metrics(self) -> int:
        """Publish access filter visibility counters, if any were recorded."""
        visibility = self.config.access_filter.visibility
        if self.deps is None or not visibility.snapshot():
            return 0
        return visibility.flush(self.deps.cloudwatch, self.deps.config["METRICS_NAMESPACE"])


# =============================================================================
# CONSTRUCTION
# =============================================================================

def build_pipeline(config: PipelineConfig, deps: Optional[Deps] = None,
                   audit: Optional[AuditSink] = None, dispatcher: Optional[Dispatcher] = None) -> Pipeline:
    """Assemble a Pipeline; audit goes to DynamoDB when a table is configured."""
    if audit is None:
        if config.audit_table_name and deps is not None:
            audit = DynamoAuditSink(
                deps.dynamodb.Table(config.audit_table_name),
                pk_name=deps.config["AUDIT_PK_NAME"],
                retention_days=config.audit_retention_days,
            )
        else:
            audit = MemoryAuditSink(retention_days=config.audit_retention_days)
    dispatcher = dispatcher or Dispatcher(audit=audit, max_workers=config.dispatch_max_workers)
    return Pipeline(config, audit, dispatcher, deps=deps)


_global_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """Get or build the process-wide Pipeline from the environment."""
    global _global_pipeline
    if _global_pipeline is None:
        deps = get_deps()
        _global_pipeline = build_pipeline(load_config_from_env(deps), deps)
    return _global_pipeline


def reset_pipeline() -> None:
    global _global_pipeline
    if _global_pipeline is not None:
        _global_pipeline.dispatcher.shutdown(wait=False)
    _global_pipeline = None
