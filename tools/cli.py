#!/usr/bin/env python3
# =============================================================================
# CLI Tool for the Event Gateway
# =============================================================================
# Developer/admin tooling for local testing. Runs the same pipeline as the
# Lambda handlers against a configuration file.
#
# Usage:
#   python tools/cli.py check-config --config gateway.json
#   python tools/cli.py route --config gateway.json --source university.apigw
#   python tools/cli.py direct --config gateway.json --detail '{"x": 1}' --sign
#   python tools/cli.py proxy --config gateway.json --path /reports --body '{}' --sign
# =============================================================================

import argparse
import base64
import json
import logging
import os
import sys
import uuid

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from eventgate.app.pipeline import build_pipeline
from eventgate.auth.signature import SignatureAuthorizer, sign_request
from eventgate.runtime.config import PipelineConfig, load_config
from eventgate.runtime.deps import create_deps
from eventgate.runtime.envelope import Event, Surface
from eventgate.runtime.errors import ConfigurationInvalid


def _load(args) -> PipelineConfig:
    with open(args.config, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return load_config(raw, create_deps(region=args.region))


def _output(data, pretty: bool) -> None:
    if pretty:
        print(json.dumps(data, indent=2, ensure_ascii=False, default=str))
    else:
        print(json.dumps(data, ensure_ascii=False, default=str))


def _http_event(method: str, host: str, path: str, body: bytes, headers: dict) -> dict:
    """API Gateway HTTP API (v2) event for a local call."""
    return {
        "version": "2.0",
        "rawPath": path,
        "headers": {"host": host, "content-type": "application/json", "user-agent": "eventgate-cli", **headers},
        "body": base64.b64encode(body).decode("ascii"),
        "isBase64Encoded": True,
        "requestContext": {
            "requestId": str(uuid.uuid4()),
            "stage": "$default",
            "http": {"method": method, "path": path, "sourceIp": "127.0.0.1"},
        },
    }


def _signed_headers(config: PipelineConfig, surface: str, method: str, host: str, path: str,
                    body: bytes) -> dict:
    strategy = config.authorizer.strategy_for(surface)
    if not isinstance(strategy, SignatureAuthorizer):
        raise SystemExit(f"Surface '{surface}' is not signature-authenticated; pass --header instead")
    principal = next(iter(strategy.principals.values()))
    return sign_request(method, host, path, body, principal.access_key_id, principal.secret_access_key,
                        strategy.region, strategy.service)


def _run(args, config: PipelineConfig, surface: str, method: str, path: str, body: bytes) -> int:
    headers = dict(h.split(":", 1) for h in args.header or [])
    headers = {k.strip().lower(): v.strip() for k, v in headers.items()}
    if args.sign:
        headers.update(_signed_headers(config, surface, method, args.host, path, body))

    deps = create_deps(region=args.region)
    pipeline = build_pipeline(config, deps if args.audit_table else None)
    event = _http_event(method, args.host, path, body, headers)
    response = pipeline.handle(event, surface)
    pipeline.dispatcher.drain()
    pipeline.dispatcher.shutdown()

    result = {"response": response}
    if hasattr(pipeline.audit, "records"):
        result["audit"] = [r.to_dict() for r in pipeline.audit.records()]
    _output(result, args.pretty)
    return 1 if response["statusCode"] >= 400 else 0


def cmd_check_config(args) -> int:
    config = _load(args)
    _output({
        "accountId": config.account_id,
        "region": config.region,
        "filter": {
            "defaultAction": config.access_filter.default_action,
            "rules": [{"name": r.name, "priority": r.priority} for r in config.access_filter.rules],
        },
        "auth": {surface: s.name for surface, s in config.authorizer.strategies.items()},
        "consumers": sorted(config.consumers),
        "rules": [{"name": r.name, "pattern": r.pattern.to_dict(), "targets": list(r.targets)}
                  for r in config.rules],
        "routes": [{"method": r.method, "path": r.path, "consumer": r.consumer_id} for r in config.routes],
    }, args.pretty)
    return 0


def cmd_route(args) -> int:
    config = _load(args)
    event = Event.create(
        account=args.account or config.account_id,
        source=args.source or config.direct.source,
        detail_type=args.detail_type or config.direct.detail_type_default,
        detail={},
    )
    targets = config.router.match(event)
    _output([
        {
            "consumer": t.consumer.id,
            "rules": list(t.rules),
            "permitted": t.consumer.is_permitted(t.rules, event.source),
        }
        for t in targets
    ], args.pretty)
    return 0


def cmd_direct(args) -> int:
    config = _load(args)
    payload = {"Detail": json.loads(args.detail)}
    if args.detail_type:
        payload["DetailType"] = args.detail_type
    body = json.dumps(payload).encode("utf-8")
    return _run(args, config, Surface.DIRECT, "POST", args.path, body)


def cmd_proxy(args) -> int:
    config = _load(args)
    return _run(args, config, Surface.PROXY, args.method.upper(), args.path, args.body.encode("utf-8"))


def main():
    parser = argparse.ArgumentParser(
        description="Event Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s check-config --config gateway.json
  %(prog)s route --config gateway.json --source university.apigw
  %(prog)s direct --config gateway.json --detail '{"x": 1}' --sign
  %(prog)s proxy --config gateway.json --path /reports --body '{}' --sign
        """
    )
    parser.add_argument("--pretty", "-p", action="store_true", help="Pretty print output")
    parser.add_argument("--region", "-r", default=os.environ.get("AWS_REGION", "us-east-1"), help="AWS region")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log pipeline activity to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_config(p):
        p.add_argument("--config", "-c", required=True, help="Gateway configuration JSON file")

    p = subparsers.add_parser("check-config", help="Validate a configuration file")
    add_config(p)
    p.set_defaults(func=cmd_check_config)

    p = subparsers.add_parser("route", help="Show which consumers an event would reach")
    add_config(p)
    p.add_argument("--source", help="Event source (defaults to the direct surface source)")
    p.add_argument("--detail-type", help="Event detail-type")
    p.add_argument("--account", help="Event account (defaults to the configured account)")
    p.set_defaults(func=cmd_route)

    for name, func, help_text in (
        ("direct", cmd_direct, "Send an event through the direct bus surface"),
        ("proxy", cmd_proxy, "Call a consumer through the proxied compute surface"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        add_config(p)
        p.add_argument("--host", default="gateway.local", help="Host header")
        p.add_argument("--header", "-H", action="append", help="Extra header 'Name: value'")
        p.add_argument("--sign", action="store_true", help="Sign with the first configured principal")
        p.add_argument("--audit-table", action="store_true", help="Write audit records to DynamoDB")
        p.set_defaults(func=func)
        if name == "direct":
            p.add_argument("--detail", default="{}", help="JSON value for Detail")
            p.add_argument("--detail-type", help="DetailType field in the body")
            p.add_argument("--path", default="/", help="Request path")
        else:
            p.add_argument("--method", default="POST", help="HTTP method")
            p.add_argument("--path", required=True, help="Resource path")
            p.add_argument("--body", default="", help="Request body")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, stream=sys.stderr)

    try:
        sys.exit(args.func(args))
    except ConfigurationInvalid as e:
        print(f"Invalid configuration: {e.message}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
